"""Persisted entity and its provenance tags."""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Tuple


class EmbeddingSource(str, Enum):
    PROVIDER_CALL = "provider-call"
    MANUAL = "manual"
    SYNC = "sync-from-remote"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class ProductEmbedding:
    """
    One stored image embedding for a product of a tenant.

    The vector is a tuple so it cannot be mutated after storage; a new
    image for the same product is a delete followed by a new record.
    `synced_at` is None until the remote system of record confirmed
    the push.
    """

    product_id: int
    tenant_id: int
    vector: Tuple[float, ...]
    image_hash: str
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    thumbnail: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    source: EmbeddingSource = EmbeddingSource.PROVIDER_CALL
    confidence: float = 1.0
    synced_at: Optional[datetime] = None

    def __post_init__(self):
        if not isinstance(self.vector, tuple):
            object.__setattr__(self, "vector", tuple(float(v) for v in self.vector))
        if not 0.0 <= self.confidence <= 1.0:
            raise ValueError(f"confidence must be in [0, 1], got {self.confidence}")

    @property
    def dimension(self) -> int:
        return len(self.vector)

    @property
    def is_synced(self) -> bool:
        return self.synced_at is not None
