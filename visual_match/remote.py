"""
Remote system of record for product embeddings.

The remote side is a set of stored procedures reachable through a
generic query channel (an async callable taking a query string and
returning result rows). Every response is validated once into
Ok/Err; an Err surfaces as SyncError, which the repository always
catches.

Vector transport encoding:
    The query channel rejects some literal characters, so vectors are
    sent as text with substitutes: 'd' for '[', 'f' for ']' and 'm'
    for a minus sign. Each component is written with PRECISION fixed
    decimals, e.g. [0.40549105, -0.32347154] -> 'd0.40549,m0.32347f'.
    The remote side decodes it. This is lossy and one-way: the local
    copy keeps full precision, the remote copy does not, and vectors
    pulled back by a sync will not equal the ones that were pushed.
"""

import os
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, List, Optional, Sequence

import httpx

from .errors import SyncError
from .results import Err, Ok, Result

logger = logging.getLogger(__name__)

PRECISION = int(os.environ.get("VISUAL_MATCH_TRANSPORT_PRECISION", "5"))
LIST_LIMIT = int(os.environ.get("VISUAL_MATCH_REMOTE_LIST_LIMIT", "1000"))
QUERY_URL = os.environ.get("VISUAL_MATCH_QUERY_URL", "http://localhost:3000/api/sql")
QUERY_APPLICATION = os.environ.get("VISUAL_MATCH_QUERY_APPLICATION", "fayclick")
QUERY_TIMEOUT = float(os.environ.get("VISUAL_MATCH_QUERY_TIMEOUT", "10"))

QueryFunction = Callable[[str], Awaitable[Any]]


def encode_vector_for_transport(vector: Sequence[float],
                                precision: int = None) -> str:
    """Encode a vector as 'd<c1>,<c2>,...f' with 'm' for negative components."""
    precision = PRECISION if precision is None else precision
    parts = []
    for value in vector:
        text = f"{abs(float(value)):.{precision}f}"
        parts.append(f"m{text}" if value < 0 else text)
    return f"d{','.join(parts)}f"


def decode_transport_vector(text: str) -> List[float]:
    """Inverse of encode_vector_for_transport (up to the lost precision)."""
    if not (text.startswith("d") and text.endswith("f")):
        raise ValueError(f"Not a transport-encoded vector: {text[:20]!r}")
    body = text[1:-1]
    if not body:
        return []
    values = []
    for part in body.split(","):
        if part.startswith("m"):
            values.append(-float(part[1:]))
        else:
            values.append(float(part))
    return values


@dataclass(frozen=True)
class RemoteEmbedding:
    """One row of the remote tenant embedding set, already validated."""

    remote_id: Optional[int]
    product_id: int
    vector: tuple
    image_hash: str
    confidence: float
    created_at: datetime


class HttpQueryChannel:
    """
    Query channel over HTTP: POSTs {"application", "query"} and returns rows.

    Accepts {"status": "success", "data": {"rows": [...]}}, the legacy
    {"status": "success", "datas": [...]} shape, or a bare list.
    """

    def __init__(self, url: str = None, application: str = None,
                 timeout: float = None,
                 transport: httpx.AsyncBaseTransport = None):
        self.url = url or QUERY_URL
        self.application = application or QUERY_APPLICATION
        self.timeout = QUERY_TIMEOUT if timeout is None else timeout
        self._transport = transport

    async def __call__(self, query: str) -> list:
        async with httpx.AsyncClient(timeout=self.timeout,
                                     transport=self._transport) as client:
            response = await client.post(
                self.url,
                json={"application": self.application, "query": query},
            )

        if response.status_code != 200:
            raise SyncError("http", f"HTTP {response.status_code}: {response.text[:200]}")

        try:
            payload = response.json()
        except ValueError as e:
            raise SyncError("malformed", f"Response is not JSON: {e}") from e

        if isinstance(payload, list):
            return payload
        if isinstance(payload, dict) and payload.get("status") == "success":
            data = payload.get("data")
            if isinstance(data, dict) and isinstance(data.get("rows"), list):
                return data["rows"]
            if isinstance(payload.get("datas"), list):
                return payload["datas"]
            if isinstance(data, list):
                return data
            return []

        message = None
        if isinstance(payload, dict):
            message = payload.get("detail") or payload.get("error") or payload.get("message")
        raise SyncError("remote", message or "Unrecognized response format")


def _unwrap_function_result(rows: Any, function_name: str) -> Result:
    """Extract the JSON object a stored function returned as its single column."""
    if isinstance(rows, dict):
        value = rows.get(function_name, rows)
    elif isinstance(rows, list) and rows:
        first = rows[0]
        value = first.get(function_name) if isinstance(first, dict) else None
    else:
        return Err("malformed", f"{function_name} returned no rows")

    if isinstance(value, str):
        try:
            value = json.loads(value)
        except ValueError:
            return Err("malformed", f"{function_name} returned invalid JSON")

    if not isinstance(value, dict):
        return Err("malformed", f"{function_name} returned {type(value).__name__}")
    if not value.get("success"):
        return Err("remote", str(value.get("message") or f"{function_name} reported failure"))
    return Ok(value)


def _parse_timestamp(value: Any) -> datetime:
    if isinstance(value, str) and value:
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
            return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
        except ValueError:
            pass
    return datetime.now(timezone.utc)


def parse_remote_embedding(row: Any) -> Result:
    """Validate one remote embedding row into Ok(RemoteEmbedding) or Err."""
    if not isinstance(row, dict):
        return Err("malformed", "embedding row is not an object")

    product_id = row.get("id_produit")
    if isinstance(product_id, bool) or not isinstance(product_id, int):
        return Err("malformed", f"invalid product id {product_id!r}")

    vector = row.get("embedding")
    if isinstance(vector, str):
        try:
            vector = decode_transport_vector(vector) if vector.startswith("d") else json.loads(vector)
        except ValueError:
            return Err("malformed", f"undecodable embedding for product {product_id}")
    if (not isinstance(vector, list) or not vector
            or not all(isinstance(v, (int, float)) and not isinstance(v, bool) for v in vector)):
        return Err("malformed", f"invalid embedding for product {product_id}")

    image_hash = row.get("image_hash")
    if not isinstance(image_hash, str) or not image_hash:
        return Err("malformed", f"missing image hash for product {product_id}")

    confidence = row.get("confidence_score")
    if not isinstance(confidence, (int, float)) or not 0 < confidence <= 1:
        confidence = 1.0

    remote_id = row.get("id")
    return Ok(RemoteEmbedding(
        remote_id=remote_id if isinstance(remote_id, int) else None,
        product_id=product_id,
        vector=tuple(float(v) for v in vector),
        image_hash=image_hash,
        confidence=float(confidence),
        created_at=_parse_timestamp(row.get("date_creation")),
    ))


class RemoteEmbeddingStore:
    """
    Stored-procedure calls against the remote system of record.

    Every method raises SyncError on any failure, including failures
    of the query function itself.
    """

    def __init__(self, query: QueryFunction, precision: int = None,
                 list_limit: int = None):
        self._query = query
        self.precision = PRECISION if precision is None else precision
        self.list_limit = list_limit or LIST_LIMIT

    async def _call(self, sql: str, function_name: str) -> dict:
        try:
            rows = await self._query(sql)
        except SyncError:
            raise
        except Exception as e:
            raise SyncError("transport", f"{function_name}: {e}") from e

        result = _unwrap_function_result(rows, function_name)
        if isinstance(result, Err):
            raise SyncError(result.kind, result.message)
        return result.data

    async def save(self, product_id: int, tenant_id: int, vector: Sequence[float],
                   image_hash: str, confidence: float = 1.0,
                   dimensions: str = "224x224") -> None:
        encoded = encode_vector_for_transport(vector, self.precision)
        sql = (
            f"SELECT * FROM save_product_embedding("
            f"{int(product_id)}, {int(tenant_id)}, '{encoded}', "
            f"'{_quote(image_hash)}', NULL, '{_quote(dimensions)}', {float(confidence)})"
        )
        logger.debug(f"Pushing embedding for product {product_id} ({len(vector)}d)")
        await self._call(sql, "save_product_embedding")

    async def delete(self, product_id: int, tenant_id: int) -> None:
        sql = f"SELECT * FROM delete_product_embedding({int(product_id)}, {int(tenant_id)})"
        await self._call(sql, "delete_product_embedding")

    async def list_embeddings(self, tenant_id: int) -> List[RemoteEmbedding]:
        """Fetch the tenant's remote embedding set; malformed rows are skipped."""
        sql = f"SELECT * FROM get_product_embeddings({int(tenant_id)}, {int(self.list_limit)})"
        payload = await self._call(sql, "get_product_embeddings")

        data = payload.get("data")
        rows = data.get("embeddings") if isinstance(data, dict) else None
        if not isinstance(rows, list):
            raise SyncError("malformed", "get_product_embeddings returned no embedding list")

        embeddings = []
        for row in rows:
            parsed = parse_remote_embedding(row)
            if isinstance(parsed, Err):
                logger.warning(f"Skipping remote embedding row: {parsed.message}")
                continue
            embeddings.append(parsed.data)
        return embeddings


def _quote(value: str) -> str:
    return str(value).replace("'", "''")
