"""Tests for the cached similarity index."""

import numpy as np
import pytest

from conftest import run, unit
from visual_match.index import SimilarityIndex
from visual_match.repository import EmbeddingRepository
from visual_match.scoring import DUPLICATE, cosine_similarity


class CountingRepository(EmbeddingRepository):
    """Repository that counts full reloads."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.get_all_calls = 0

    async def get_all(self):
        self.get_all_calls += 1
        return await super().get_all()


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


@pytest.fixture
def repo(store):
    repository = CountingRepository(1, store)
    run(repository.save(1, unit(1.0, 0.0), "h1"))
    run(repository.save(2, unit(0.8, 0.2), "h2"))
    run(repository.save(3, unit(0.0, 1.0), "h3"))
    run(repository.save(4, unit(0.7, 0.7), "h4"))
    return repository


class TestFindSimilar:
    """Tests for ranked nearest-neighbor search."""

    def test_sorted_descending(self, repo):
        result = run(SimilarityIndex(repo).find_similar(unit(1.0, 0.0), min_similarity=0.0))
        scores = [m.similarity for m in result.matches]
        assert scores == sorted(scores, reverse=True)
        assert result.top_match.product_id == 1

    def test_self_similarity_is_one(self, repo):
        result = run(SimilarityIndex(repo).find_similar(unit(1.0, 0.0)))
        assert result.confidence == pytest.approx(1.0, abs=1e-5)

    def test_min_similarity_filters(self, repo):
        result = run(SimilarityIndex(repo).find_similar(unit(1.0, 0.0), min_similarity=0.8))
        assert {m.product_id for m in result.matches} == {1, 2}
        assert all(m.similarity >= 0.8 for m in result.matches)

    def test_limit(self, repo):
        result = run(SimilarityIndex(repo).find_similar(unit(1.0, 0.0), limit=2, min_similarity=0.0))
        assert len(result.matches) == 2

    def test_exclude_products(self, repo):
        result = run(SimilarityIndex(repo).find_similar(
            unit(1.0, 0.0), exclude_product_ids=[1]))
        assert result.top_match.product_id == 2

    def test_scores_match_cosine_similarity(self, repo):
        result = run(SimilarityIndex(repo).find_similar(unit(1.0, 0.0), min_similarity=0.0))
        by_product = {m.product_id: m.similarity for m in result.matches}
        assert by_product[4] == pytest.approx(np.sqrt(0.5), abs=1e-5)
        assert by_product[3] == pytest.approx(0.0, abs=1e-6)

    def test_empty_repository(self, store):
        result = run(SimilarityIndex(EmbeddingRepository(1, store)).find_similar(unit(1.0)))
        assert result.matches == []
        assert result.confidence == 0.0
        assert result.top_match is None

    def test_other_dimension_scores_zero(self, repo):
        run(repo.save(9, [1.0, 0.0, 0.0], "short"))
        index = SimilarityIndex(repo)
        result = run(index.find_similar(unit(1.0, 0.0), min_similarity=0.0, limit=10))
        by_product = {m.product_id: m.similarity for m in result.matches}
        assert by_product[9] == 0.0
        assert by_product[1] == pytest.approx(1.0, abs=1e-5)

    def test_batch_refreshes_once(self, repo):
        index = SimilarityIndex(repo, max_cache_age=60)
        results = run(index.find_similar_batch([unit(1.0), unit(0.0, 1.0)]))
        assert [r.top_match.product_id for r in results] == [1, 3]
        assert repo.get_all_calls == 1


class TestCache:
    """Tests for snapshot staleness."""

    def test_fresh_cache_not_reloaded(self, repo):
        index = SimilarityIndex(repo, max_cache_age=60)
        run(index.find_similar(unit(1.0)))
        run(index.find_similar(unit(1.0)))
        assert repo.get_all_calls == 1

    def test_zero_max_age_always_reloads(self, repo):
        index = SimilarityIndex(repo, max_cache_age=0)
        run(index.find_similar(unit(1.0)))
        run(index.find_similar(unit(1.0)))
        assert repo.get_all_calls == 2

    def test_reload_after_expiry(self, repo):
        clock = FakeClock()
        index = SimilarityIndex(repo, max_cache_age=60, clock=clock)
        run(index.find_similar(unit(1.0)))
        clock.now += 61
        assert index.is_stale()
        run(index.find_similar(unit(1.0)))
        assert repo.get_all_calls == 2

    def test_invalidate(self, repo):
        index = SimilarityIndex(repo, max_cache_age=60)
        run(index.refresh())
        assert not index.is_stale()
        index.invalidate()
        assert index.is_stale()

    def test_stale_snapshot_served_until_expiry(self, repo):
        index = SimilarityIndex(repo, max_cache_age=60)
        run(index.refresh())
        run(repo.save(5, unit(0.0, 0.0, 1.0), "h5"))
        result = run(index.find_similar(unit(0.0, 0.0, 1.0)))
        assert result.matches == []

    def test_cache_stats(self, repo):
        index = SimilarityIndex(repo, max_cache_age=60)
        assert index.cache_stats().is_stale
        run(index.refresh())
        stats = index.cache_stats()
        assert stats.count == 4
        assert stats.last_refresh is not None
        assert not stats.is_stale


class TestDuplicates:
    """Tests for duplicate detection."""

    def test_is_duplicate_returns_owner(self, repo):
        assert run(SimilarityIndex(repo).is_duplicate(unit(1.0, 0.0))) == 1

    def test_near_but_not_duplicate(self, repo):
        assert run(SimilarityIndex(repo).is_duplicate(unit(0.3, 1.0))) is None

    def test_excluded_product_not_reported(self, repo):
        assert run(SimilarityIndex(repo).is_duplicate(unit(1.0, 0.0), exclude_product_ids=[1])) is None

    def test_find_duplicate_reports_similarity(self, repo):
        match = run(SimilarityIndex(repo).find_duplicate(unit(1.0, 0.0)))
        assert match.product_id == 1
        assert match.similarity >= 0.98

    def test_threshold_decided_in_full_precision(self, store):
        rng = np.random.RandomState(0)
        hits = 0
        for tenant in range(1, 41):
            query = rng.randn(512)
            query /= np.linalg.norm(query)
            ortho = rng.randn(512)
            ortho -= ortho.dot(query) * query
            ortho /= np.linalg.norm(ortho)
            stored = (DUPLICATE * query + np.sqrt(1 - DUPLICATE ** 2) * ortho) * rng.uniform(0.5, 3.0)

            repository = EmbeddingRepository(tenant, store)
            run(repository.save(1, stored, "h"))
            expected = cosine_similarity(query, stored)
            match = run(SimilarityIndex(repository).find_duplicate(query))

            if expected >= DUPLICATE:
                hits += 1
                assert match is not None
                assert match.similarity == expected
            else:
                assert match is None
        assert hits > 0
