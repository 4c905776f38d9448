"""
Similarity scoring for embedding vectors.

Cosine similarity is the only signal: embeddings from the provider put
visually similar images in the same direction. Scores are clamped to
[0, 1] so they can be read directly as a match confidence.

Thresholds are loaded from configuration so they can be recalibrated
for another embedding model without code changes. They come from field
use with CLIP ViT-B/32, not from a calibration dataset.
"""

import os
import logging
from typing import Dict, List, Sequence

import numpy as np

from .errors import DimensionMismatchError

logger = logging.getLogger(__name__)

# Auto-select the top match in recognition
CONFIDENT = float(os.environ.get("VISUAL_MATCH_CONFIDENT", "0.85"))
# Floor for showing a candidate at all
SUGGESTION = float(os.environ.get("VISUAL_MATCH_SUGGESTION", "0.60"))
# Blocks enrolling the same picture under another product
DUPLICATE = float(os.environ.get("VISUAL_MATCH_DUPLICATE", "0.98"))

THRESHOLDS: Dict[str, float] = {
    "CONFIDENT": CONFIDENT,
    "SUGGESTION": SUGGESTION,
    "DUPLICATE": DUPLICATE,
}


def as_vector(values: Sequence[float]) -> np.ndarray:
    return np.asarray(values, dtype=np.float64).ravel()


def check_dimensions(vec_a: np.ndarray, vec_b: np.ndarray) -> None:
    """Raise DimensionMismatchError if the vectors differ in length."""
    if vec_a.shape[0] != vec_b.shape[0]:
        raise DimensionMismatchError(vec_a.shape[0], vec_b.shape[0])


def cosine_similarity(vec_a: Sequence[float], vec_b: Sequence[float]) -> float:
    """
    Cosine similarity of two vectors, clamped to [0, 1].

    Unequal lengths and zero vectors score 0. A length mismatch is
    logged as an error and never raised, so one bad record cannot abort
    a scan over the whole catalog.
    """
    a = as_vector(vec_a)
    b = as_vector(vec_b)

    try:
        check_dimensions(a, b)
    except DimensionMismatchError as e:
        logger.error(f"Cosine similarity skipped: {e}")
        return 0.0

    magnitude = float(np.linalg.norm(a)) * float(np.linalg.norm(b))
    if magnitude == 0:
        return 0.0

    similarity = float(np.dot(a, b)) / magnitude
    return max(0.0, min(1.0, similarity))


def euclidean_distance(vec_a: Sequence[float], vec_b: Sequence[float]) -> float:
    """L2 distance, or infinity for vectors of different length."""
    a = as_vector(vec_a)
    b = as_vector(vec_b)
    if a.shape[0] != b.shape[0]:
        return float("inf")
    return float(np.linalg.norm(a - b))


def normalize_vector(values: Sequence[float]) -> np.ndarray:
    """L2-normalize a vector; zero vectors are returned unchanged."""
    vec = as_vector(values)
    norm = np.linalg.norm(vec)
    if norm == 0:
        return vec
    return vec / norm


def average_similarity(group_a: List[Sequence[float]],
                       group_b: List[Sequence[float]]) -> float:
    """Mean pairwise cosine similarity between two groups of vectors."""
    if not group_a or not group_b:
        return 0.0
    scores = [cosine_similarity(a, b) for a in group_a for b in group_b]
    return float(sum(scores) / len(scores))


def compute_centroid(vectors: List[Sequence[float]]) -> np.ndarray:
    """
    Normalized mean of a set of vectors.

    Useful as a representative embedding for a category of products.

    Raises:
        DimensionMismatchError: If the vectors do not share one length.
    """
    if not vectors:
        return np.zeros(0, dtype=np.float64)

    first = as_vector(vectors[0])
    for other in vectors[1:]:
        check_dimensions(first, as_vector(other))

    centroid = np.mean(np.vstack([as_vector(v) for v in vectors]), axis=0)
    return normalize_vector(centroid)


def rank_matches(matches: list) -> list:
    """
    Sort matches by similarity (descending), product id as tiebreaker.

    Args:
        matches: Objects with 'similarity' and 'product_id' attributes.

    Returns:
        New sorted list, best match first.
    """
    return sorted(matches, key=lambda m: (-m.similarity, m.product_id))
