"""
Clients for the two hosted vision services.

EmbeddingClient turns a normalized image into a fixed-length vector.
LabelClient reads a product name off a photo; it is only used by bulk
import callers, never by the recognition state machine.

Neither client retries. Batch helpers run a fixed-size window of
concurrent calls to stay under the services' rate limits; this is plain
chunking, not a work queue.
"""

import os
import time
import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, List, Tuple

import httpx

from .errors import ProviderError
from .preprocessing import NormalizedImage
from .results import Err, Ok, Result

logger = logging.getLogger(__name__)

EMBED_URL = os.environ.get("VISUAL_MATCH_EMBED_URL", "http://localhost:3000/api/vision/clip")
LABEL_URL = os.environ.get("VISUAL_MATCH_LABEL_URL", "http://localhost:3000/api/vision/ocr")
API_TOKEN = os.environ.get("VISUAL_MATCH_API_TOKEN")
PROVIDER_TIMEOUT = float(os.environ.get("VISUAL_MATCH_PROVIDER_TIMEOUT", "30"))
# Dimensionality of the provider's vectors (CLIP ViT-B/32 = 512)
EMBEDDING_DIM = int(os.environ.get("VISUAL_MATCH_EMBEDDING_DIM", "512"))
EMBED_BATCH_WINDOW = int(os.environ.get("VISUAL_MATCH_EMBED_WINDOW", "5"))
LABEL_BATCH_WINDOW = int(os.environ.get("VISUAL_MATCH_LABEL_WINDOW", "3"))
DEFAULT_MODEL_ID = "clip-vit-base-patch32"


@dataclass(frozen=True)
class EmbeddingResponse:
    vector: Tuple[float, ...]
    model_id: str
    processing_time: float


class LabelConfidence(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


@dataclass(frozen=True)
class LabelResult:
    label: str
    confidence: LabelConfidence


def parse_embedding_payload(payload: Any, expected_dim: int) -> Result:
    """Validate an embedding response body into Ok((vector, model_id)) or Err."""
    if not isinstance(payload, dict):
        return Err("malformed", "response is not a JSON object")
    if payload.get("success") is False:
        return Err("remote", str(payload.get("error") or "provider reported failure"))

    embedding = payload.get("embedding")
    if not isinstance(embedding, list) or not embedding:
        return Err("malformed", "no embedding in response")
    if not all(isinstance(v, (int, float)) and not isinstance(v, bool) for v in embedding):
        return Err("malformed", "embedding contains non-numeric values")
    if expected_dim and len(embedding) != expected_dim:
        return Err("dimension", f"expected {expected_dim} components, got {len(embedding)}")

    model_id = payload.get("modelId") or payload.get("model") or DEFAULT_MODEL_ID
    return Ok((tuple(float(v) for v in embedding), str(model_id)))


def parse_label_payload(payload: Any) -> Result:
    """Validate a label-extraction response body into Ok(LabelResult) or Err."""
    if not isinstance(payload, dict):
        return Err("malformed", "response is not a JSON object")
    if payload.get("success") is False:
        return Err("remote", str(payload.get("error") or "label extraction failed"))

    label = payload.get("label") or payload.get("nomProduit")
    if not isinstance(label, str) or not label.strip():
        return Err("malformed", "no label in response")

    try:
        confidence = LabelConfidence(payload.get("confidence", "low"))
    except ValueError:
        confidence = LabelConfidence.LOW
    return Ok(LabelResult(label=label.strip(), confidence=confidence))


async def run_windowed(items: list, worker, window: int) -> list:
    """
    Run `worker` over items with at most `window` calls in flight.

    Items are processed in consecutive chunks; results keep input order.
    Every call of a chunk is awaited before the first exception of that
    chunk is raised; later chunks are not started.
    """
    window = max(1, int(window))
    results = []
    for start in range(0, len(items), window):
        chunk = items[start:start + window]
        outcomes = await asyncio.gather(*(worker(item) for item in chunk),
                                        return_exceptions=True)
        for outcome in outcomes:
            if isinstance(outcome, BaseException):
                raise outcome
        results.extend(outcomes)
    return results


class _VisionServiceClient:
    """Shared HTTP plumbing: one POST per image, errors mapped to ProviderError."""

    def __init__(self, url: str, api_token: str = None, timeout: float = None,
                 transport: httpx.AsyncBaseTransport = None):
        self.url = url
        self.api_token = api_token if api_token is not None else API_TOKEN
        self.timeout = PROVIDER_TIMEOUT if timeout is None else timeout
        self._transport = transport

    def _headers(self) -> dict:
        headers = {"Content-Type": "application/json"}
        if self.api_token:
            headers["Authorization"] = f"Bearer {self.api_token}"
        return headers

    async def _post_image(self, image: NormalizedImage) -> Any:
        try:
            async with httpx.AsyncClient(timeout=self.timeout,
                                         transport=self._transport) as client:
                response = await client.post(
                    self.url,
                    headers=self._headers(),
                    json={"imageBase64": image.base64, "mimeType": image.mime_type},
                )
        except httpx.TimeoutException as e:
            raise ProviderError("timeout", f"{self.url} timed out: {e}") from e
        except httpx.HTTPError as e:
            raise ProviderError("transport", f"{self.url} unreachable: {e}") from e

        if response.status_code != 200:
            raise ProviderError("http", f"HTTP {response.status_code}: {response.text[:200]}")

        try:
            return response.json()
        except ValueError as e:
            raise ProviderError("malformed", f"Response is not JSON: {e}") from e

    async def health_check(self) -> bool:
        """True if the service endpoint answers at all (405 counts)."""
        try:
            async with httpx.AsyncClient(timeout=self.timeout,
                                         transport=self._transport) as client:
                response = await client.options(self.url)
        except httpx.HTTPError as e:
            logger.warning(f"Health check failed for {self.url}: {e}")
            return False
        return response.status_code < 400 or response.status_code == 405


class EmbeddingClient(_VisionServiceClient):
    """Embedding provider: POST image -> {embedding: [...], modelId}."""

    def __init__(self, url: str = None, api_token: str = None,
                 timeout: float = None, expected_dim: int = None,
                 transport: httpx.AsyncBaseTransport = None):
        super().__init__(url or EMBED_URL, api_token, timeout, transport)
        self.expected_dim = EMBEDDING_DIM if expected_dim is None else expected_dim

    async def embed(self, image: NormalizedImage) -> EmbeddingResponse:
        """
        Get the embedding vector of a normalized image.

        Raises:
            ProviderError: On transport failure, non-200 status, or a
                response without a numeric vector of the expected size.
        """
        start = time.perf_counter()
        payload = await self._post_image(image)

        result = parse_embedding_payload(payload, self.expected_dim)
        if isinstance(result, Err):
            logger.error(f"Embedding provider returned {result.kind}: {result.message}")
            raise ProviderError(result.kind, result.message)

        vector, model_id = result.data
        elapsed = time.perf_counter() - start
        logger.debug(f"Embedding received: {len(vector)}d in {elapsed * 1000:.0f} ms")
        return EmbeddingResponse(vector=vector, model_id=model_id,
                                 processing_time=elapsed)

    async def embed_batch(self, images: List[NormalizedImage],
                          window: int = None) -> List[EmbeddingResponse]:
        return await run_windowed(images, self.embed, window or EMBED_BATCH_WINDOW)


class LabelClient(_VisionServiceClient):
    """Label extraction: POST image -> {label, confidence: high|medium|low}."""

    def __init__(self, url: str = None, api_token: str = None,
                 timeout: float = None,
                 transport: httpx.AsyncBaseTransport = None):
        super().__init__(url or LABEL_URL, api_token, timeout, transport)

    async def extract(self, image: NormalizedImage) -> LabelResult:
        payload = await self._post_image(image)
        result = parse_label_payload(payload)
        if isinstance(result, Err):
            raise ProviderError(result.kind, result.message)
        return result.data

    async def extract_batch(self, images: List[NormalizedImage],
                            window: int = None) -> List[LabelResult]:
        return await run_windowed(images, self.extract, window or LABEL_BATCH_WINDOW)
