"""
Tenant-scoped, local-first repository of product embeddings.

Local writes must succeed or the call fails. Remote pushes and deletes
are attempted afterwards and any SyncError is logged and swallowed, so
the local result stands whatever the remote side does. Pulls from the
remote only import products that have no local record: local always
wins for products already present on this device.
"""

import asyncio
import logging
from dataclasses import replace
from typing import List, Optional, Sequence

from .errors import SyncError
from .models import EmbeddingSource, ProductEmbedding, utcnow
from .remote import RemoteEmbeddingStore
from .store import EmbeddingStore

logger = logging.getLogger(__name__)


class EmbeddingRepository:
    """CRUD over ProductEmbedding for one tenant."""

    def __init__(self, tenant_id: int, store: EmbeddingStore,
                 remote: Optional[RemoteEmbeddingStore] = None,
                 dimensions: str = "224x224"):
        self.tenant_id = int(tenant_id)
        self.store = store
        self.remote = remote
        self.dimensions = dimensions

    def _replace_local(self, record: ProductEmbedding) -> int:
        with self.store.connect() as conn:
            removed = self.store.delete_by_key(
                conn, self.tenant_id, record.product_id, record.image_hash
            )
            self.store.insert(conn, record)
        return removed

    async def save(self, product_id: int, vector: Sequence[float], image_hash: str,
                   thumbnail: str = None, confidence: float = 1.0,
                   source: EmbeddingSource = EmbeddingSource.PROVIDER_CALL,
                   push_to_remote: bool = True) -> ProductEmbedding:
        """
        Store an embedding, replacing any record with the same
        (product_id, image_hash), then push it to the remote.

        Returns:
            The stored record; `synced_at` is set only if the push succeeded.

        Raises:
            LocalStoreError: If the local write fails.
        """
        record = ProductEmbedding(
            product_id=int(product_id),
            tenant_id=self.tenant_id,
            vector=tuple(float(v) for v in vector),
            image_hash=image_hash,
            thumbnail=thumbnail,
            source=source,
            confidence=confidence,
        )

        removed = await asyncio.to_thread(self._replace_local, record)
        if removed:
            logger.info(f"Replaced {removed} record(s) for product {product_id} / {image_hash[:12]}")

        if push_to_remote and self.remote is not None:
            try:
                await self.remote.save(
                    record.product_id, self.tenant_id, record.vector,
                    record.image_hash, record.confidence, self.dimensions,
                )
            except SyncError as e:
                logger.warning(f"Remote push failed for product {product_id}, kept locally: {e}")
            else:
                synced_at = utcnow()
                await asyncio.to_thread(self.store.mark_synced, record.id, synced_at)
                record = replace(record, synced_at=synced_at)

        return record

    async def get_by_product(self, product_id: int) -> Optional[ProductEmbedding]:
        return await asyncio.to_thread(self.store.get_by_product, self.tenant_id, int(product_id))

    async def get_all(self) -> List[ProductEmbedding]:
        records = await asyncio.to_thread(self.store.get_by_tenant, self.tenant_id)
        logger.debug(f"Loaded {len(records)} embeddings for tenant {self.tenant_id}")
        return records

    async def has_embedding(self, product_id: int) -> bool:
        return await self.get_by_product(product_id) is not None

    async def count(self) -> int:
        return len(await self.get_all())

    def _delete_local(self, product_id: int) -> int:
        with self.store.connect() as conn:
            return self.store.delete_by_product(conn, self.tenant_id, product_id)

    async def delete(self, product_id: int, push_to_remote: bool = True) -> int:
        """
        Delete every local record of a product, then the remote copy.

        Returns:
            Number of local records removed.
        """
        removed = await asyncio.to_thread(self._delete_local, int(product_id))
        logger.info(f"Deleted {removed} local record(s) for product {product_id}")

        if push_to_remote and self.remote is not None:
            try:
                await self.remote.delete(int(product_id), self.tenant_id)
            except SyncError as e:
                logger.warning(f"Remote delete failed for product {product_id}: {e}")

        return removed

    def _import_missing(self, records: List[ProductEmbedding]) -> int:
        imported = 0
        with self.store.connect() as conn:
            for record in records:
                if self.store.product_exists(conn, self.tenant_id, record.product_id):
                    continue
                self.store.insert(conn, record)
                imported += 1
        return imported

    async def sync_from_remote(self) -> int:
        """
        Import remote embeddings for products with no local record.

        Returns:
            Count of newly imported records; 0 if the pull failed.
        """
        if self.remote is None:
            return 0

        try:
            remote_rows = await self.remote.list_embeddings(self.tenant_id)
        except SyncError as e:
            logger.warning(f"Remote pull failed for tenant {self.tenant_id}: {e}")
            return 0

        now = utcnow()
        candidates = []
        seen = set()
        for row in remote_rows:
            # One record per product; the remote list may repeat products
            if row.product_id in seen:
                continue
            seen.add(row.product_id)
            candidates.append(ProductEmbedding(
                product_id=row.product_id,
                tenant_id=self.tenant_id,
                vector=row.vector,
                image_hash=row.image_hash,
                created_at=row.created_at,
                source=EmbeddingSource.SYNC,
                confidence=row.confidence,
                synced_at=now,
            ))

        imported = await asyncio.to_thread(self._import_missing, candidates)
        logger.info(
            f"Sync from remote: {len(remote_rows)} remote, {imported} imported "
            f"for tenant {self.tenant_id}"
        )
        return imported

    async def clear_local(self) -> int:
        return await asyncio.to_thread(self.store.clear_tenant, self.tenant_id)

    def close(self) -> None:
        # Connections are per transaction; nothing is held open
        self.remote = None
