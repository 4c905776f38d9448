"""
In-memory similarity index over the tenant's stored embeddings.

Holds a snapshot of the repository. The snapshot is reloaded lazily
when older than max_cache_age and eagerly by the engine after every
enrollment, removal or sync.

Search is exhaustive: cached vectors are unit-normalized and kept in a
FAISS IndexFlatIP per dimensionality, so inner product equals cosine
similarity. FAISS works in float32, so it only selects candidates;
their reported scores are recomputed from the float64 vectors with
cosine_similarity. No approximate index is used. Records whose
dimensionality differs from the query go through cosine_similarity,
which logs the mismatch and scores them 0.
"""

import os
import time
import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple

import faiss
import numpy as np

from .models import ProductEmbedding
from .repository import EmbeddingRepository
from .scoring import DUPLICATE, cosine_similarity, rank_matches

logger = logging.getLogger(__name__)

# Seconds before the cached snapshot is considered stale
CACHE_MAX_AGE = float(os.environ.get("VISUAL_MATCH_CACHE_MAX_AGE", "300"))
DEFAULT_LIMIT = 5
DEFAULT_MIN_SIMILARITY = 0.5
# Slack on float32 FAISS scores before the exact float64 rescore
FLOAT32_MARGIN = 1e-4


@dataclass(frozen=True)
class VisualMatch:
    product_id: int
    similarity: float
    record: ProductEmbedding


@dataclass(frozen=True)
class MatchResult:
    matches: List[VisualMatch] = field(default_factory=list)
    processing_time: float = 0.0

    @property
    def top_match(self) -> Optional[VisualMatch]:
        return self.matches[0] if self.matches else None

    @property
    def confidence(self) -> float:
        return self.matches[0].similarity if self.matches else 0.0


@dataclass(frozen=True)
class CacheStats:
    count: int
    last_refresh: Optional[float]
    is_stale: bool


def _unit_rows(vectors: List[Tuple[float, ...]]) -> np.ndarray:
    matrix = np.asarray(vectors, dtype=np.float32)
    norms = np.linalg.norm(matrix, axis=1, keepdims=True)
    norms[norms == 0] = 1.0
    return np.ascontiguousarray(matrix / norms)


class _DimensionGroup:
    """Flat inner-product index over the records sharing one dimensionality."""

    def __init__(self, dim: int, records: List[ProductEmbedding]):
        self.dim = dim
        self.records = records
        self.index = faiss.IndexFlatIP(dim)
        self.index.add(_unit_rows([r.vector for r in records]))

    def score(self, query: np.ndarray,
              floor: float = 0.0) -> List[Tuple[ProductEmbedding, float]]:
        """
        Candidates whose float32 score clears `floor` (less a rounding
        margin), rescored in float64 with cosine_similarity so threshold
        decisions match the stored precision.
        """
        norm = np.linalg.norm(query)
        if norm == 0:
            return [(r, 0.0) for r in self.records]

        q = (query / norm).astype(np.float32).reshape(1, -1)
        scores, positions = self.index.search(q, self.index.ntotal)

        scored = []
        for pos, score in zip(positions[0], scores[0]):
            if pos < 0 or score < floor - FLOAT32_MARGIN:
                continue
            record = self.records[pos]
            scored.append((record, cosine_similarity(query, record.vector)))
        return scored


class SimilarityIndex:
    """
    Cosine nearest-neighbor search over a cached repository snapshot.

    Args:
        repository: Source of the tenant's records.
        max_cache_age: Seconds before the snapshot is stale. 0 or less
            disables caching: every query reloads.
        clock: Monotonic time source, injectable for tests.
    """

    def __init__(self, repository: EmbeddingRepository,
                 max_cache_age: float = None,
                 clock: Callable[[], float] = time.monotonic):
        self.repository = repository
        self.max_cache_age = CACHE_MAX_AGE if max_cache_age is None else max_cache_age
        self._clock = clock
        self._records: List[ProductEmbedding] = []
        self._groups: Dict[int, _DimensionGroup] = {}
        self._last_refresh: Optional[float] = None

    async def refresh(self) -> None:
        """Reload the whole tenant record set and rebuild the flat indexes."""
        records = await self.repository.get_all()

        by_dim: Dict[int, List[ProductEmbedding]] = {}
        for record in records:
            by_dim.setdefault(record.dimension, []).append(record)

        self._records = records
        self._groups = {dim: _DimensionGroup(dim, group) for dim, group in by_dim.items()}
        self._last_refresh = self._clock()

        if len(self._groups) > 1:
            logger.warning(
                f"Cache holds mixed dimensionalities: {sorted(self._groups)}"
            )
        logger.info(f"Similarity cache refreshed: {len(records)} embeddings")

    def is_stale(self) -> bool:
        if self._last_refresh is None or self.max_cache_age <= 0:
            return True
        return self._clock() - self._last_refresh > self.max_cache_age

    def invalidate(self) -> None:
        """Force a reload on the next query."""
        self._last_refresh = None

    def cache_stats(self) -> CacheStats:
        return CacheStats(
            count=len(self._records),
            last_refresh=self._last_refresh,
            is_stale=self.is_stale(),
        )

    def _score_all(self, query: np.ndarray,
                   floor: float = 0.0) -> List[Tuple[ProductEmbedding, float]]:
        dim = query.shape[0]
        scored = []
        for group_dim, group in self._groups.items():
            if group_dim == dim:
                scored.extend(group.score(query, floor))
            else:
                scored.extend((r, cosine_similarity(query, r.vector)) for r in group.records)
        return scored

    def _search(self, query_vector: Sequence[float], limit: int,
                min_similarity: float,
                exclude_product_ids: Optional[Iterable[int]]) -> MatchResult:
        start = time.perf_counter()
        excluded = set(exclude_product_ids or ())
        query = np.asarray(query_vector, dtype=np.float64).ravel()

        matches = [
            VisualMatch(product_id=record.product_id, similarity=similarity, record=record)
            for record, similarity in self._score_all(query, min_similarity)
            if record.product_id not in excluded and similarity >= min_similarity
        ]
        matches = rank_matches(matches)[:max(0, limit)]

        return MatchResult(matches=matches, processing_time=time.perf_counter() - start)

    async def find_similar(self, query_vector: Sequence[float],
                           limit: int = DEFAULT_LIMIT,
                           min_similarity: float = DEFAULT_MIN_SIMILARITY,
                           exclude_product_ids: Optional[Iterable[int]] = None) -> MatchResult:
        """
        Rank cached records by cosine similarity to a query vector.

        Args:
            query_vector: Embedding to match.
            limit: Maximum number of matches returned.
            min_similarity: Matches below this score are dropped.
            exclude_product_ids: Products never returned.

        Returns:
            MatchResult sorted by descending similarity; confidence is
            the top similarity or 0 with no match.
        """
        if self.is_stale():
            await self.refresh()
        return self._search(query_vector, limit, min_similarity, exclude_product_ids)

    async def find_similar_batch(self, query_vectors: List[Sequence[float]],
                                 limit: int = DEFAULT_LIMIT,
                                 min_similarity: float = DEFAULT_MIN_SIMILARITY) -> List[MatchResult]:
        """Match several queries against one snapshot (refreshed at most once)."""
        if self.is_stale():
            await self.refresh()
        return [self._search(q, limit, min_similarity, None) for q in query_vectors]

    async def find_duplicate(self, query_vector: Sequence[float],
                             exclude_product_ids: Optional[Iterable[int]] = None,
                             threshold: float = None) -> Optional[VisualMatch]:
        """Best match at or above the duplicate threshold, if any."""
        result = await self.find_similar(
            query_vector,
            limit=1,
            min_similarity=DUPLICATE if threshold is None else threshold,
            exclude_product_ids=exclude_product_ids,
        )
        return result.top_match

    async def is_duplicate(self, query_vector: Sequence[float],
                           exclude_product_ids: Optional[Iterable[int]] = None) -> Optional[int]:
        """Product id already owning a near-identical vector, or None."""
        match = await self.find_duplicate(query_vector, exclude_product_ids)
        return match.product_id if match else None
