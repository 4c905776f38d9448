"""
SQLite-backed local store for product embeddings.

Rows are partitioned by tenant and indexed by product and by the
(product, image hash) key. The store enforces no uniqueness itself:
the repository deletes the old row before inserting a replacement
inside one transaction.
"""

import os
import sqlite3
import logging
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Generator, List, Optional

import numpy as np

from .errors import LocalStoreError
from .models import EmbeddingSource, ProductEmbedding

logger = logging.getLogger(__name__)

DB_PATH = os.environ.get("VISUAL_MATCH_DB_PATH", "./data/visual_match.db")

_COLUMNS = ("id, product_id, tenant_id, vector, dimension, image_hash, "
            "thumbnail, created_at, source, confidence, synced_at")


def _encode_vector(vector) -> bytes:
    return np.asarray(vector, dtype=np.float64).tobytes()


def _decode_vector(blob: bytes, dimension: int) -> tuple:
    values = np.frombuffer(blob, dtype=np.float64)
    if values.shape[0] != dimension:
        raise LocalStoreError(
            f"Stored vector has {values.shape[0]} components, expected {dimension}"
        )
    return tuple(float(v) for v in values)


def _to_iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _from_iso(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _row_to_record(row: sqlite3.Row) -> ProductEmbedding:
    return ProductEmbedding(
        id=row["id"],
        product_id=row["product_id"],
        tenant_id=row["tenant_id"],
        vector=_decode_vector(row["vector"], row["dimension"]),
        image_hash=row["image_hash"],
        thumbnail=row["thumbnail"],
        created_at=_from_iso(row["created_at"]),
        source=EmbeddingSource(row["source"]),
        confidence=row["confidence"],
        synced_at=_from_iso(row["synced_at"]),
    )


class EmbeddingStore:
    """
    Local persistent store. Opens one connection per transaction so it
    can be used from worker threads.
    """

    def __init__(self, db_path: str = None):
        self.db_path = str(db_path or DB_PATH)
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self.init_db()

    @contextmanager
    def connect(self) -> Generator[sqlite3.Connection, None, None]:
        """Yield a connection; commit on success, roll back on error."""
        try:
            conn = sqlite3.connect(self.db_path)
        except sqlite3.Error as e:
            raise LocalStoreError(f"Could not open {self.db_path}: {e}") from e

        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise LocalStoreError(f"Local store operation failed: {e}") from e
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def init_db(self) -> None:
        """Create the table and its lookup indexes."""
        with self.connect() as conn:
            conn.execute('''
                CREATE TABLE IF NOT EXISTS product_embeddings (
                    id TEXT PRIMARY KEY,
                    product_id INTEGER NOT NULL,
                    tenant_id INTEGER NOT NULL,
                    vector BLOB NOT NULL,
                    dimension INTEGER NOT NULL,
                    image_hash TEXT NOT NULL,
                    thumbnail TEXT,
                    created_at TEXT NOT NULL,
                    source TEXT NOT NULL,
                    confidence REAL NOT NULL DEFAULT 1.0,
                    synced_at TEXT
                )
            ''')
            conn.execute('CREATE INDEX IF NOT EXISTS idx_embeddings_tenant '
                         'ON product_embeddings(tenant_id)')
            conn.execute('CREATE INDEX IF NOT EXISTS idx_embeddings_product '
                         'ON product_embeddings(tenant_id, product_id)')
            conn.execute('CREATE INDEX IF NOT EXISTS idx_embeddings_product_hash '
                         'ON product_embeddings(tenant_id, product_id, image_hash)')

    # -- statements, run on a caller-provided connection --------------

    def insert(self, conn: sqlite3.Connection, record: ProductEmbedding) -> None:
        conn.execute(
            f"INSERT INTO product_embeddings ({_COLUMNS}) "
            f"VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                record.id,
                record.product_id,
                record.tenant_id,
                _encode_vector(record.vector),
                record.dimension,
                record.image_hash,
                record.thumbnail,
                _to_iso(record.created_at),
                record.source.value,
                record.confidence,
                _to_iso(record.synced_at),
            ),
        )

    def delete_by_key(self, conn: sqlite3.Connection, tenant_id: int,
                      product_id: int, image_hash: str) -> int:
        cursor = conn.execute(
            "DELETE FROM product_embeddings "
            "WHERE tenant_id = ? AND product_id = ? AND image_hash = ?",
            (tenant_id, product_id, image_hash),
        )
        return cursor.rowcount

    def delete_by_product(self, conn: sqlite3.Connection, tenant_id: int,
                          product_id: int) -> int:
        cursor = conn.execute(
            "DELETE FROM product_embeddings WHERE tenant_id = ? AND product_id = ?",
            (tenant_id, product_id),
        )
        return cursor.rowcount

    def product_exists(self, conn: sqlite3.Connection, tenant_id: int,
                       product_id: int) -> bool:
        row = conn.execute(
            "SELECT 1 FROM product_embeddings "
            "WHERE tenant_id = ? AND product_id = ? LIMIT 1",
            (tenant_id, product_id),
        ).fetchone()
        return row is not None

    # -- single-transaction helpers -----------------------------------

    def get_by_product(self, tenant_id: int,
                       product_id: int) -> Optional[ProductEmbedding]:
        """Most recent record for a product, or None."""
        with self.connect() as conn:
            row = conn.execute(
                f"SELECT {_COLUMNS} FROM product_embeddings "
                f"WHERE tenant_id = ? AND product_id = ? "
                f"ORDER BY created_at DESC LIMIT 1",
                (tenant_id, product_id),
            ).fetchone()
        return _row_to_record(row) if row else None

    def get_by_key(self, tenant_id: int, product_id: int,
                   image_hash: str) -> List[ProductEmbedding]:
        with self.connect() as conn:
            rows = conn.execute(
                f"SELECT {_COLUMNS} FROM product_embeddings "
                f"WHERE tenant_id = ? AND product_id = ? AND image_hash = ?",
                (tenant_id, product_id, image_hash),
            ).fetchall()
        return [_row_to_record(r) for r in rows]

    def get_by_tenant(self, tenant_id: int) -> List[ProductEmbedding]:
        with self.connect() as conn:
            rows = conn.execute(
                f"SELECT {_COLUMNS} FROM product_embeddings "
                f"WHERE tenant_id = ? ORDER BY created_at, id",
                (tenant_id,),
            ).fetchall()
        return [_row_to_record(r) for r in rows]

    def mark_synced(self, record_id: str, synced_at: datetime) -> None:
        with self.connect() as conn:
            conn.execute(
                "UPDATE product_embeddings SET synced_at = ? WHERE id = ?",
                (_to_iso(synced_at), record_id),
            )

    def clear_tenant(self, tenant_id: int) -> int:
        with self.connect() as conn:
            cursor = conn.execute(
                "DELETE FROM product_embeddings WHERE tenant_id = ?", (tenant_id,)
            )
            return cursor.rowcount
