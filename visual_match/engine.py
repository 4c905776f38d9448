"""
Recognition and enrollment engine.

Sequences the pipeline for one tenant session:
    recognition: normalize -> embed -> similarity search
    enrollment:  normalize -> embed -> duplicate check -> save -> refresh

The engine is an explicit, caller-owned object with the lifecycle
initialize(tenant_id) -> ready -> dispose(). Each action returns the
state it ended in as part of its result; `state` also holds the latest
one. A failed action leaves the engine in ERROR, a successful one in
MATCHED / NO_MATCH / ENROLLED, and the next action starts from IDLE.

"No match" and "could not attempt" are never merged: a recognition with
no candidate returns NO_MATCH, a recognition that could not run raises
and leaves ERROR.
"""

import time
import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Sequence

from .errors import (
    DuplicateConflictError, EngineBusyError, EngineNotReadyError,
    InvalidStateTransition, ProviderError,
)
from .index import CacheStats, SimilarityIndex, VisualMatch
from .models import EmbeddingSource, ProductEmbedding
from .preprocessing import ImageSource, NormalizedImage, normalize_image
from .provider import EmbeddingClient
from .remote import RemoteEmbeddingStore
from .repository import EmbeddingRepository
from .scoring import CONFIDENT, SUGGESTION, THRESHOLDS
from .store import EmbeddingStore

logger = logging.getLogger(__name__)

RECOGNITION_LIMIT = 5


class VisualState(str, Enum):
    IDLE = "idle"
    CAPTURING = "capturing"
    PROCESSING = "processing"
    MATCHED = "matched"
    NO_MATCH = "no_match"
    ENROLLING = "enrolling"
    ENROLLED = "enrolled"
    ERROR = "error"


TERMINAL_STATES = frozenset({
    VisualState.MATCHED, VisualState.NO_MATCH,
    VisualState.ENROLLED, VisualState.ERROR,
})

TRANSITIONS: Dict[VisualState, frozenset] = {
    VisualState.IDLE: frozenset({VisualState.CAPTURING, VisualState.ENROLLING}),
    VisualState.CAPTURING: frozenset({VisualState.PROCESSING, VisualState.ERROR}),
    VisualState.PROCESSING: frozenset({VisualState.MATCHED, VisualState.NO_MATCH,
                                       VisualState.ERROR}),
    VisualState.ENROLLING: frozenset({VisualState.ENROLLED, VisualState.ERROR}),
    VisualState.MATCHED: frozenset({VisualState.IDLE}),
    VisualState.NO_MATCH: frozenset({VisualState.IDLE}),
    VisualState.ENROLLED: frozenset({VisualState.IDLE}),
    VisualState.ERROR: frozenset({VisualState.IDLE}),
}


class EnrollmentOutcome(str, Enum):
    ENROLLED = "enrolled"
    # Provider failed and the caller accepted enrolling nothing
    NO_EMBEDDING = "no_embedding"


@dataclass(frozen=True)
class RecognitionResult:
    state: VisualState
    matches: List[VisualMatch]
    confidence: float
    vector: tuple
    image_hash: str
    processing_time: float

    @property
    def top_match(self) -> Optional[VisualMatch]:
        return self.matches[0] if self.matches else None

    @property
    def is_confident(self) -> bool:
        return self.confidence >= CONFIDENT


@dataclass(frozen=True)
class EnrollmentResult:
    state: VisualState
    outcome: EnrollmentOutcome
    product_id: int
    image_hash: str
    message: str
    record: Optional[ProductEmbedding] = None

    @property
    def has_embedding(self) -> bool:
        return self.outcome is EnrollmentOutcome.ENROLLED


@dataclass(frozen=True)
class EngineStats:
    tenant_id: int
    total_embeddings: int
    cache: CacheStats
    provider_healthy: bool
    state: VisualState = field(default=VisualState.IDLE)


class RecognitionEngine:
    """
    Visual product recognition and enrollment for one tenant session.

    Args:
        embedding_client: Embedding provider client.
        store: Local persistent store shared by tenants.
        remote: Remote system of record, or None for local only.
        max_cache_age: Similarity cache TTL in seconds.
        normalize_options: Overrides passed to normalize_image
            (target_size, quality, fmt).
    """

    THRESHOLDS = THRESHOLDS

    def __init__(self, embedding_client: EmbeddingClient,
                 store: EmbeddingStore,
                 remote: Optional[RemoteEmbeddingStore] = None,
                 max_cache_age: float = None,
                 normalize_options: dict = None):
        self.embedding_client = embedding_client
        self.store = store
        self.remote = remote
        self.max_cache_age = max_cache_age
        self.normalize_options = dict(normalize_options or {})

        self.tenant_id: Optional[int] = None
        self.repository: Optional[EmbeddingRepository] = None
        self.index: Optional[SimilarityIndex] = None
        self._state = VisualState.IDLE
        self._last_error: Optional[str] = None

    # -- lifecycle ----------------------------------------------------

    @property
    def ready(self) -> bool:
        return self.index is not None

    async def initialize(self, tenant_id: int) -> None:
        """Bind the engine to a tenant and warm the similarity cache."""
        if self.ready and self.tenant_id == tenant_id:
            return

        target_size = self.normalize_options.get("target_size")
        dimensions = f"{target_size}x{target_size}" if target_size else "224x224"

        repository = EmbeddingRepository(tenant_id, self.store, self.remote,
                                         dimensions=dimensions)
        index = SimilarityIndex(repository, max_cache_age=self.max_cache_age)
        await index.refresh()

        if self.repository is not None:
            self.repository.close()
        self.tenant_id = tenant_id
        self.repository = repository
        self.index = index
        self._state = VisualState.IDLE
        self._last_error = None
        logger.info(f"Recognition engine ready for tenant {tenant_id}")

    def dispose(self) -> None:
        if self.repository is not None:
            self.repository.close()
        self.repository = None
        self.index = None
        self.tenant_id = None
        self._state = VisualState.IDLE
        logger.info("Recognition engine disposed")

    def _ensure_ready(self) -> None:
        if not self.ready:
            raise EngineNotReadyError("Engine not initialized; call initialize(tenant_id) first")

    # -- state machine ------------------------------------------------

    @property
    def state(self) -> VisualState:
        return self._state

    @property
    def last_error(self) -> Optional[str]:
        return self._last_error

    def _transition(self, new_state: VisualState, error: str = None) -> VisualState:
        if new_state not in TRANSITIONS[self._state]:
            raise InvalidStateTransition(f"{self._state.value} -> {new_state.value}")
        logger.debug(f"State {self._state.value} -> {new_state.value}")
        self._state = new_state
        self._last_error = error
        return new_state

    def _begin(self, first_state: VisualState) -> None:
        self._ensure_ready()
        if self._state in TERMINAL_STATES:
            self._transition(VisualState.IDLE)
        elif self._state is not VisualState.IDLE:
            raise EngineBusyError(f"Engine busy ({self._state.value})")
        self._transition(first_state)

    def _fail(self, error: Exception) -> None:
        self._transition(VisualState.ERROR, str(error))

    def reset_state(self) -> VisualState:
        """Return a finished engine to IDLE."""
        if self._state in TERMINAL_STATES:
            self._transition(VisualState.IDLE)
        return self._state

    # -- pipeline steps -----------------------------------------------

    async def _normalize(self, image: ImageSource) -> NormalizedImage:
        return await asyncio.to_thread(normalize_image, image, **self.normalize_options)

    async def _embed(self, normalized: NormalizedImage) -> tuple:
        response = await self.embedding_client.embed(normalized)
        return response.vector

    # -- recognition --------------------------------------------------

    async def recognize(self, image: ImageSource) -> RecognitionResult:
        """
        Identify which enrolled product an image shows.

        Every candidate at or above SUGGESTION is returned; the result
        is MATCHED if there is at least one, NO_MATCH otherwise. The
        freshly computed vector is returned so the caller can enroll it
        without recomputing.

        Raises:
            DecodeError: The image could not be decoded (state ERROR).
            ProviderError: The embedding call failed (state ERROR).
        """
        self._begin(VisualState.CAPTURING)
        start = time.perf_counter()

        try:
            normalized = await self._normalize(image)
            self._transition(VisualState.PROCESSING)
            vector = await self._embed(normalized)
            match_result = await self.index.find_similar(
                vector, limit=RECOGNITION_LIMIT, min_similarity=SUGGESTION
            )
        except (Exception, asyncio.CancelledError) as e:
            logger.error(f"Recognition failed: {e!r}")
            self._fail(e)
            raise

        state = VisualState.MATCHED if match_result.matches else VisualState.NO_MATCH
        self._transition(state)

        top = match_result.top_match
        if top is not None:
            logger.info(
                f"Recognition: product {top.product_id} at {top.similarity:.3f} "
                f"({len(match_result.matches)} candidates)"
            )
        else:
            logger.info("Recognition: no candidate above suggestion threshold")

        return RecognitionResult(
            state=state,
            matches=match_result.matches,
            confidence=match_result.confidence,
            vector=vector,
            image_hash=normalized.hash,
            processing_time=time.perf_counter() - start,
        )

    # -- enrollment ---------------------------------------------------

    async def _check_duplicate(self, product_id: int, vector: Sequence[float]) -> None:
        duplicate = await self.index.find_duplicate(vector, exclude_product_ids=[product_id])
        if duplicate is not None:
            raise DuplicateConflictError(product_id, duplicate.product_id,
                                         duplicate.similarity)

    async def _store(self, product_id: int, vector: Sequence[float], image_hash: str,
                     thumbnail: Optional[str], confidence: float,
                     source: EmbeddingSource) -> EnrollmentResult:
        record = await self.repository.save(
            product_id, vector, image_hash,
            thumbnail=thumbnail, confidence=confidence, source=source,
        )
        # A just-enrolled product must be visible to the next query
        await self.index.refresh()

        state = self._transition(VisualState.ENROLLED)
        logger.info(f"Enrolled product {product_id} ({image_hash[:12]})")
        return EnrollmentResult(
            state=state,
            outcome=EnrollmentOutcome.ENROLLED,
            product_id=product_id,
            image_hash=image_hash,
            message="Image enrolled",
            record=record,
        )

    async def enroll(self, product_id: int, image: ImageSource,
                     skip_duplicate_check: bool = False,
                     thumbnail: str = None,
                     allow_missing_embedding: bool = False) -> EnrollmentResult:
        """
        Associate a new image with a product.

        Args:
            product_id: Product the image shows.
            image: Encoded bytes or decoded array.
            skip_duplicate_check: Do not look for the same picture under
                other products.
            thumbnail: Preview to store; defaults to the normalized image.
            allow_missing_embedding: Degraded mode. If the provider fails,
                return a NO_EMBEDDING outcome instead of raising.

        Raises:
            DecodeError: Image could not be decoded.
            ProviderError: Provider failed and degraded mode is off.
            DuplicateConflictError: A near-identical image already belongs
                to another product.
            LocalStoreError: Local write failed.
        """
        self._begin(VisualState.ENROLLING)
        return await self._enroll_image(product_id, image, skip_duplicate_check,
                                        thumbnail, allow_missing_embedding)

    async def _enroll_image(self, product_id: int, image: ImageSource,
                            skip_duplicate_check: bool, thumbnail: Optional[str],
                            allow_missing_embedding: bool,
                            replace_existing: bool = False) -> EnrollmentResult:
        try:
            normalized = await self._normalize(image)
            try:
                vector = await self._embed(normalized)
            except ProviderError as e:
                if not allow_missing_embedding:
                    raise
                logger.warning(f"No embedding for product {product_id}, continuing without: {e}")
                self._fail(e)
                return EnrollmentResult(
                    state=self._state,
                    outcome=EnrollmentOutcome.NO_EMBEDDING,
                    product_id=product_id,
                    image_hash=normalized.hash,
                    message=f"No embedding: {e}",
                )

            if replace_existing:
                # Old embeddings go only once the new vector is in hand
                removed = await self.repository.delete(product_id)
                logger.info(f"Replacing {removed} embedding(s) of product {product_id}")
            elif not skip_duplicate_check:
                await self._check_duplicate(product_id, vector)

            return await self._store(
                product_id, vector, normalized.hash,
                thumbnail or normalized.data_url, 1.0, EmbeddingSource.PROVIDER_CALL,
            )
        except (Exception, asyncio.CancelledError) as e:
            if self._state is not VisualState.ERROR:
                logger.error(f"Enrollment of product {product_id} failed: {e}")
                self._fail(e)
            raise

    async def enroll_vector(self, product_id: int, vector: Sequence[float],
                            image_hash: str, skip_duplicate_check: bool = False,
                            thumbnail: str = None, confidence: float = 1.0,
                            source: EmbeddingSource = EmbeddingSource.PROVIDER_CALL) -> EnrollmentResult:
        """
        Enroll an already computed vector, e.g. the one returned by
        recognize() for an unmatched photo.
        """
        self._begin(VisualState.ENROLLING)
        try:
            if not skip_duplicate_check:
                await self._check_duplicate(product_id, vector)
            return await self._store(product_id, vector, image_hash,
                                     thumbnail, confidence, source)
        except (Exception, asyncio.CancelledError) as e:
            logger.error(f"Enrollment of product {product_id} failed: {e}")
            self._fail(e)
            raise

    async def update_embedding(self, product_id: int, image: ImageSource,
                               thumbnail: str = None) -> EnrollmentResult:
        """
        Replace a product's embeddings with one computed from a new image.

        The existing embeddings are deleted only after the new image has
        been normalized and embedded; a busy engine, an undecodable image
        or a provider failure leaves them untouched.
        """
        self._begin(VisualState.ENROLLING)
        return await self._enroll_image(product_id, image, True, thumbnail, False,
                                        replace_existing=True)

    # -- maintenance --------------------------------------------------

    async def remove_embedding(self, product_id: int) -> int:
        self._ensure_ready()
        removed = await self.repository.delete(product_id)
        await self.index.refresh()
        return removed

    async def has_embedding(self, product_id: int) -> bool:
        self._ensure_ready()
        return await self.repository.has_embedding(product_id)

    async def get_embedding(self, product_id: int) -> Optional[ProductEmbedding]:
        self._ensure_ready()
        return await self.repository.get_by_product(product_id)

    async def sync_from_remote(self) -> int:
        """Pull remote-only products into the local store and the cache."""
        self._ensure_ready()
        imported = await self.repository.sync_from_remote()
        await self.index.refresh()
        return imported

    async def get_stats(self) -> EngineStats:
        self._ensure_ready()
        return EngineStats(
            tenant_id=self.tenant_id,
            total_embeddings=await self.repository.count(),
            cache=self.index.cache_stats(),
            provider_healthy=await self.embedding_client.health_check(),
            state=self._state,
        )
