"""
visual_match: visual product recognition for merchant catalogs.

Turns a product photo into a normalized embedding, stores embeddings
per tenant (local-first, with best-effort remote sync) and finds the
known product an image most resembles by cosine similarity.

Modules:
    engine          RecognitionEngine: recognition / enrollment state machine
    preprocessing   Image normalization and content hashing
    provider        Embedding and label-extraction service clients
    repository      Tenant-scoped, local-first embedding repository
    store           SQLite local store
    remote          Remote system of record and vector transport encoding
    index           Cached cosine similarity search
    scoring         Similarity functions and confidence thresholds
    catalog_import  Bulk product creation from photos
"""

from .engine import (
    EnrollmentOutcome, EnrollmentResult, RecognitionEngine,
    RecognitionResult, VisualState,
)
from .errors import (
    DecodeError, DimensionMismatchError, DuplicateConflictError,
    ProviderError, SyncError, VisualMatchError,
)
from .models import EmbeddingSource, ProductEmbedding
from .scoring import THRESHOLDS, cosine_similarity

__version__ = "1.0.0"

__all__ = [
    "DecodeError",
    "DimensionMismatchError",
    "DuplicateConflictError",
    "EmbeddingSource",
    "EnrollmentOutcome",
    "EnrollmentResult",
    "ProductEmbedding",
    "ProviderError",
    "RecognitionEngine",
    "RecognitionResult",
    "SyncError",
    "THRESHOLDS",
    "VisualMatchError",
    "VisualState",
    "cosine_similarity",
]
