"""Shared test fixtures for visual match tests."""

import asyncio

import cv2
import numpy as np
import pytest

from visual_match.errors import ProviderError
from visual_match.provider import EmbeddingResponse
from visual_match.remote import RemoteEmbeddingStore
from visual_match.store import EmbeddingStore


def encode_png(image_rgb: np.ndarray) -> bytes:
    ok, buffer = cv2.imencode(".png", cv2.cvtColor(image_rgb, cv2.COLOR_RGB2BGR))
    assert ok
    return buffer.tobytes()


def unit(*values) -> tuple:
    """Pad values to a 512d vector."""
    vec = np.zeros(512)
    vec[:len(values)] = values
    return tuple(vec)


def run(coro):
    return asyncio.run(coro)


@pytest.fixture
def red_square_image():
    """Generate a 200x200 red square on white background."""
    img = np.ones((200, 200, 3), dtype=np.uint8) * 255
    img[40:160, 40:160] = [200, 30, 30]
    return img


@pytest.fixture
def wide_photo_bytes():
    """A 1000x400 photo with a blue box in the middle, PNG encoded."""
    img = np.ones((400, 1000, 3), dtype=np.uint8) * 255
    img[100:300, 400:600] = [30, 30, 200]
    cv2.circle(img, (100, 200), 50, (30, 180, 30), -1)
    return encode_png(img)


@pytest.fixture
def red_square_bytes(red_square_image):
    return encode_png(red_square_image)


@pytest.fixture
def blue_circle_bytes():
    img = np.ones((200, 200, 3), dtype=np.uint8) * 255
    cv2.circle(img, (100, 100), 60, (30, 30, 200), -1)
    return encode_png(img)


@pytest.fixture
def store(tmp_path):
    return EmbeddingStore(tmp_path / "embeddings.db")


class FakeQuery:
    """
    Stand-in for the remote query channel.

    Answers the three embedding procedures like the real backend and
    records every query. Set `fail` to make every call raise.
    """

    def __init__(self):
        self.queries = []
        self.fail = False
        self.remote_rows = []

    async def __call__(self, sql: str):
        self.queries.append(sql)
        if self.fail:
            raise ConnectionError("remote unreachable")
        if "save_product_embedding" in sql:
            return [{"save_product_embedding": {"success": True}}]
        if "delete_product_embedding" in sql:
            return [{"delete_product_embedding": {"success": True}}]
        if "get_product_embeddings" in sql:
            return [{"get_product_embeddings": {
                "success": True,
                "data": {"embeddings": self.remote_rows},
            }}]
        return []

    def calls(self, function_name: str) -> list:
        return [q for q in self.queries if function_name in q]


@pytest.fixture
def fake_query():
    return FakeQuery()


@pytest.fixture
def remote(fake_query):
    return RemoteEmbeddingStore(fake_query)


class FakeEmbeddingClient:
    """Returns queued vectors in order; raises ProviderError when told to."""

    def __init__(self, vectors=None):
        self.vectors = list(vectors or [])
        self.fail = False
        self.calls = 0

    async def embed(self, image):
        self.calls += 1
        if self.fail:
            raise ProviderError("http", "HTTP 503: quota exceeded")
        return EmbeddingResponse(vector=tuple(self.vectors.pop(0)),
                                 model_id="fake", processing_time=0.0)

    async def health_check(self):
        return not self.fail


@pytest.fixture
def fake_embedder():
    return FakeEmbeddingClient()
