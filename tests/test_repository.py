"""Tests for the local store and the local-first embedding repository."""

import pytest

from conftest import run, unit
from visual_match.errors import LocalStoreError
from visual_match.models import EmbeddingSource, ProductEmbedding
from visual_match.repository import EmbeddingRepository


def _remote_row(product_id, vector=(0.1, 0.2), image_hash="remote-hash"):
    return {
        "id": 100 + product_id,
        "id_produit": product_id,
        "embedding": list(vector),
        "image_hash": image_hash,
        "confidence_score": 0.9,
        "date_creation": "2025-01-15T10:00:00Z",
    }


class TestProductEmbedding:
    """Tests for the stored entity."""

    def test_vector_frozen_as_tuple(self):
        record = ProductEmbedding(1, 1, [0.5, 0.5], "h")
        assert record.vector == (0.5, 0.5)
        assert record.dimension == 2
        assert not record.is_synced

    def test_confidence_out_of_range(self):
        with pytest.raises(ValueError):
            ProductEmbedding(1, 1, [0.5], "h", confidence=1.5)


class TestEmbeddingStore:
    """Tests for the SQLite store."""

    def test_vector_roundtrip_keeps_precision(self, store):
        record = ProductEmbedding(3, 1, [0.123456789012, -0.5], "h")
        with store.connect() as conn:
            store.insert(conn, record)
        loaded = store.get_by_product(1, 3)
        assert loaded.vector == record.vector
        assert loaded.created_at == record.created_at
        assert loaded.source is EmbeddingSource.PROVIDER_CALL

    def test_failed_transaction_rolls_back(self, store):
        record = ProductEmbedding(3, 1, [1.0], "h")
        with pytest.raises(LocalStoreError):
            with store.connect() as conn:
                store.insert(conn, record)
                store.insert(conn, record)
        assert store.get_by_tenant(1) == []

    def test_tenants_are_isolated(self, store):
        with store.connect() as conn:
            store.insert(conn, ProductEmbedding(1, 1, [1.0], "a"))
            store.insert(conn, ProductEmbedding(1, 2, [1.0], "a"))
        assert len(store.get_by_tenant(1)) == 1
        assert store.clear_tenant(2) == 1
        assert len(store.get_by_tenant(1)) == 1


class TestSave:
    """Tests for local-first saving with remote push."""

    def test_save_pushes_and_marks_synced(self, store, remote, fake_query):
        repo = EmbeddingRepository(1, store, remote)
        record = run(repo.save(5, unit(1.0), "hash-a"))

        assert record.is_synced
        assert len(fake_query.calls("save_product_embedding")) == 1
        assert store.get_by_product(1, 5).is_synced

    def test_same_product_and_hash_replaces(self, store):
        repo = EmbeddingRepository(1, store)
        run(repo.save(5, unit(1.0), "hash-a"))
        run(repo.save(5, unit(0.0, 1.0), "hash-a"))

        records = store.get_by_key(1, 5, "hash-a")
        assert len(records) == 1
        assert records[0].vector == unit(0.0, 1.0)

    def test_new_hash_adds_record(self, store):
        repo = EmbeddingRepository(1, store)
        run(repo.save(5, unit(1.0), "hash-a"))
        run(repo.save(5, unit(0.0, 1.0), "hash-b"))
        assert run(repo.count()) == 2

    def test_remote_failure_keeps_local_record(self, store, remote, fake_query):
        fake_query.fail = True
        repo = EmbeddingRepository(1, store, remote)

        record = run(repo.save(5, unit(1.0), "hash-a"))

        assert not record.is_synced
        assert run(repo.has_embedding(5))

    def test_remote_push_disabled(self, store, remote, fake_query):
        repo = EmbeddingRepository(1, store, remote)
        run(repo.save(5, unit(1.0), "hash-a", push_to_remote=False))
        assert fake_query.queries == []

    def test_save_without_remote(self, store):
        repo = EmbeddingRepository(1, store)
        record = run(repo.save(5, unit(1.0), "hash-a", source=EmbeddingSource.MANUAL))
        assert record.source is EmbeddingSource.MANUAL
        assert not record.is_synced


class TestDelete:
    """Tests for deletion."""

    def test_delete_removes_every_record_of_product(self, store, remote):
        repo = EmbeddingRepository(1, store, remote)
        run(repo.save(5, unit(1.0), "hash-a"))
        run(repo.save(5, unit(0.0, 1.0), "hash-b"))
        run(repo.save(6, unit(1.0), "hash-c"))

        assert run(repo.delete(5)) == 2
        assert not run(repo.has_embedding(5))
        assert run(repo.has_embedding(6))

    def test_delete_succeeds_when_remote_fails(self, store, remote, fake_query):
        repo = EmbeddingRepository(1, store, remote)
        run(repo.save(5, unit(1.0), "hash-a"))
        fake_query.fail = True

        assert run(repo.delete(5)) == 1
        assert run(repo.get_by_product(5)) is None
        assert len(fake_query.calls("delete_product_embedding")) == 1

    def test_delete_missing_product(self, store):
        repo = EmbeddingRepository(1, store)
        assert run(repo.delete(42)) == 0


class TestSyncFromRemote:
    """Tests for pulling the remote embedding set."""

    def test_imports_missing_products(self, store, remote, fake_query):
        fake_query.remote_rows = [_remote_row(10), _remote_row(11)]
        repo = EmbeddingRepository(1, store, remote)

        assert run(repo.sync_from_remote()) == 2
        record = run(repo.get_by_product(10))
        assert record.source is EmbeddingSource.SYNC
        assert record.is_synced
        assert record.confidence == pytest.approx(0.9)

    def test_local_records_never_overwritten(self, store, remote, fake_query):
        repo = EmbeddingRepository(1, store, remote)
        run(repo.save(10, unit(1.0), "local-hash", push_to_remote=False))
        fake_query.remote_rows = [_remote_row(10, image_hash="remote-hash"), _remote_row(11)]

        assert run(repo.sync_from_remote()) == 1
        local = run(repo.get_by_product(10))
        assert local.image_hash == "local-hash"
        assert local.vector == unit(1.0)

    def test_repeated_products_imported_once(self, store, remote, fake_query):
        fake_query.remote_rows = [_remote_row(10), _remote_row(10, image_hash="other")]
        repo = EmbeddingRepository(1, store, remote)
        assert run(repo.sync_from_remote()) == 1
        assert run(repo.count()) == 1

    def test_malformed_rows_skipped(self, store, remote, fake_query):
        fake_query.remote_rows = [_remote_row(10), {"id_produit": "x"}, "garbage"]
        repo = EmbeddingRepository(1, store, remote)
        assert run(repo.sync_from_remote()) == 1

    def test_pull_failure_imports_nothing(self, store, remote, fake_query):
        fake_query.fail = True
        repo = EmbeddingRepository(1, store, remote)
        assert run(repo.sync_from_remote()) == 0

    def test_no_remote_configured(self, store):
        assert run(EmbeddingRepository(1, store).sync_from_remote()) == 0

    def test_close_detaches_remote(self, store, remote, fake_query):
        repo = EmbeddingRepository(1, store, remote)
        repo.close()
        run(repo.save(5, unit(1.0), "hash-a"))
        assert fake_query.queries == []
