"""Tests for bulk product creation from photos."""

import pytest

from conftest import FakeEmbeddingClient, run, unit
from visual_match.catalog_import import (
    UNKNOWN_LABEL, PhotoDraft, analyze_directory, analyze_photos,
    enroll_drafts, scan_photo_directory,
)
from visual_match.engine import RecognitionEngine
from visual_match.errors import ProviderError
from visual_match.preprocessing import normalize_image
from visual_match.provider import LabelConfidence, LabelResult


class FakeLabelClient:
    def __init__(self, label="Savon Marseille", fail=False):
        self.label = label
        self.fail = fail

    async def extract(self, image):
        if self.fail:
            raise ProviderError("timeout", "label service timed out")
        return LabelResult(label=self.label, confidence=LabelConfidence.HIGH)


@pytest.fixture
def photos(red_square_bytes, blue_circle_bytes):
    return {"savon.png": red_square_bytes, "riz.png": blue_circle_bytes}


class TestAnalyzePhotos:
    """Tests for the analysis pass."""

    def test_label_and_vector(self, photos):
        embedder = FakeEmbeddingClient([unit(1.0), unit(1.0)])
        drafts = run(analyze_photos(photos, embedder, FakeLabelClient()))

        assert [d.name for d in drafts] == ["savon.png", "riz.png"]
        assert all(d.has_embedding for d in drafts)
        assert all(d.label.label == "Savon Marseille" for d in drafts)

    def test_embedding_failure_keeps_photo(self, photos):
        embedder = FakeEmbeddingClient()
        embedder.fail = True
        drafts = run(analyze_photos(photos, embedder, FakeLabelClient()))

        assert len(drafts) == 2
        assert not any(d.has_embedding for d in drafts)
        assert all("503" in d.embedding_error for d in drafts)
        assert all(d.image is not None for d in drafts)

    def test_label_failure_falls_back(self, photos):
        embedder = FakeEmbeddingClient([unit(1.0), unit(1.0)])
        drafts = run(analyze_photos(photos, embedder, FakeLabelClient(fail=True)))
        assert all(d.label.label == UNKNOWN_LABEL for d in drafts)
        assert all(d.label.confidence is LabelConfidence.LOW for d in drafts)
        assert all(d.has_embedding for d in drafts)

    def test_without_label_client(self, photos):
        embedder = FakeEmbeddingClient([unit(1.0), unit(1.0)])
        drafts = run(analyze_photos(photos, embedder))
        assert all(d.label.label == UNKNOWN_LABEL for d in drafts)

    def test_unreadable_photo(self, red_square_bytes):
        embedder = FakeEmbeddingClient([unit(1.0)])
        drafts = run(analyze_photos({"ok.png": red_square_bytes, "bad.png": b"junk"}, embedder))

        bad = drafts[1]
        assert bad.error
        assert bad.image is None
        assert drafts[0].error is None
        assert embedder.calls == 1

    def test_directory(self, tmp_path, photos):
        for name, data in photos.items():
            (tmp_path / name).write_bytes(data)
        (tmp_path / "notes.txt").write_text("not a photo")

        assert [p.name for p in scan_photo_directory(tmp_path)] == ["riz.png", "savon.png"]

        embedder = FakeEmbeddingClient([unit(1.0), unit(1.0)])
        drafts = run(analyze_directory(tmp_path, embedder, window=1))
        assert [d.name for d in drafts] == ["riz.png", "savon.png"]


class TestEnrollDrafts:
    """Tests for the enrollment pass."""

    def _draft(self, image_bytes, vector):
        image = normalize_image(image_bytes)
        label = LabelResult(label="x", confidence=LabelConfidence.LOW)
        return PhotoDraft(name="p.png", image=image, label=label, vector=vector)

    def test_enroll_drafts(self, store, red_square_bytes, blue_circle_bytes):
        engine = RecognitionEngine(FakeEmbeddingClient(), store)
        run(engine.initialize(1))

        assignments = {
            10: self._draft(red_square_bytes, unit(1.0, 0.0)),
            11: self._draft(blue_circle_bytes, unit(1.0, 0.0)),
            12: self._draft(blue_circle_bytes, None),
        }
        summary = run(enroll_drafts(engine, assignments))

        assert summary["enrolled"] == 1
        assert summary["skipped"] == 1
        assert summary["conflicts"] == {11: 10}
        assert summary["errors"] == 0
        assert run(engine.has_embedding(10))
        assert run(engine.get_embedding(10)).thumbnail.startswith("data:image/jpeg")

    def test_skip_duplicate_check(self, store, red_square_bytes, blue_circle_bytes):
        engine = RecognitionEngine(FakeEmbeddingClient(), store)
        run(engine.initialize(1))

        assignments = {
            10: self._draft(red_square_bytes, unit(1.0)),
            11: self._draft(blue_circle_bytes, unit(1.0)),
        }
        summary = run(enroll_drafts(engine, assignments, skip_duplicate_check=True))
        assert summary["enrolled"] == 2
