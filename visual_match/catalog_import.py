"""
Bulk product creation from photos.

Processes a set of product photos in two passes:
    1. analyze_photos() normalizes each photo and runs label extraction
       and embedding concurrently. Reading a product name is the main
       goal here, so an embedding failure does not drop the photo: the
       draft keeps vector=None and records why (degraded mode).
    2. Once the caller has created products from the drafts,
       enroll_drafts() saves the vectors of drafts that have one.

Photos are handled in a fixed window of concurrent calls to respect the
providers' rate limits.
"""

import os
import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Union

from .engine import RecognitionEngine
from .errors import DecodeError, DuplicateConflictError, ProviderError, VisualMatchError
from .preprocessing import NormalizedImage, normalize_image
from .provider import EmbeddingClient, LabelClient, LabelConfidence, LabelResult, run_windowed

logger = logging.getLogger(__name__)

IMPORT_WINDOW = int(os.environ.get("VISUAL_MATCH_IMPORT_WINDOW", "3"))
PHOTO_EXTENSIONS = {'.jpg', '.jpeg', '.png', '.bmp', '.webp'}
UNKNOWN_LABEL = "Unidentified product"


@dataclass(frozen=True)
class PhotoDraft:
    """Everything learned about one photo before a product exists for it."""

    name: str
    image: Optional[NormalizedImage]
    label: LabelResult
    vector: Optional[tuple] = None
    embedding_error: Optional[str] = None
    error: Optional[str] = None

    @property
    def has_embedding(self) -> bool:
        return self.vector is not None


def scan_photo_directory(image_dir: Union[str, Path]) -> List[Path]:
    """Sorted list of image files directly inside a directory."""
    image_dir = Path(image_dir)
    return sorted(
        p for p in image_dir.iterdir()
        if p.is_file() and p.suffix.lower() in PHOTO_EXTENSIONS
    )


async def _analyze_one(name: str, data: bytes,
                       embedding_client: EmbeddingClient,
                       label_client: Optional[LabelClient]) -> PhotoDraft:
    unknown = LabelResult(label=UNKNOWN_LABEL, confidence=LabelConfidence.LOW)

    try:
        image = await asyncio.to_thread(normalize_image, data)
    except DecodeError as e:
        logger.warning(f"Could not read: {name}: {e}")
        return PhotoDraft(name=name, image=None, label=unknown, error=str(e))

    async def label_task():
        if label_client is None:
            return unknown
        try:
            return await label_client.extract(image)
        except ProviderError as e:
            logger.warning(f"Label extraction failed for {name}: {e}")
            return unknown

    async def embed_task():
        try:
            return (await embedding_client.embed(image)).vector, None
        except ProviderError as e:
            logger.warning(f"Embedding failed for {name}, keeping photo without vector: {e}")
            return None, str(e)

    label, (vector, embedding_error) = await asyncio.gather(label_task(), embed_task())
    return PhotoDraft(name=name, image=image, label=label, vector=vector,
                      embedding_error=embedding_error)


async def analyze_photos(sources: Dict[str, bytes],
                         embedding_client: EmbeddingClient,
                         label_client: Optional[LabelClient] = None,
                         window: int = None) -> List[PhotoDraft]:
    """
    Analyze photos for bulk product creation.

    Args:
        sources: Photo name -> encoded bytes.
        embedding_client: Embedding provider.
        label_client: Label provider, or None to skip naming.
        window: Photos analyzed concurrently.

    Returns:
        One draft per photo, in input order. Undecodable photos get a
        draft with `error` set and no image.
    """
    items = list(sources.items())

    async def worker(item):
        name, data = item
        return await _analyze_one(name, data, embedding_client, label_client)

    drafts = await run_windowed(items, worker, window or IMPORT_WINDOW)

    with_vector = sum(1 for d in drafts if d.has_embedding)
    logger.info(
        f"Analyzed {len(drafts)} photos: {with_vector} with embedding, "
        f"{sum(1 for d in drafts if d.error)} unreadable"
    )
    return drafts


async def analyze_directory(image_dir: Union[str, Path],
                            embedding_client: EmbeddingClient,
                            label_client: Optional[LabelClient] = None,
                            window: int = None) -> List[PhotoDraft]:
    """analyze_photos() over every image file of a directory."""
    paths = scan_photo_directory(image_dir)
    logger.info(f"Importing {len(paths)} photos from {image_dir}")
    sources = {p.name: p.read_bytes() for p in paths}
    return await analyze_photos(sources, embedding_client, label_client, window)


async def enroll_drafts(engine: RecognitionEngine,
                        assignments: Dict[int, PhotoDraft],
                        skip_duplicate_check: bool = False) -> dict:
    """
    Save the vectors of drafts that became products.

    Args:
        engine: Initialized engine of the tenant.
        assignments: Created product id -> its draft.
        skip_duplicate_check: Passed to enroll_vector().

    Returns:
        Dict with 'enrolled', 'skipped' (no vector), 'conflicts'
        (product id -> conflicting product id) and 'errors' counts.
    """
    enrolled = 0
    skipped = 0
    errors = 0
    conflicts: Dict[int, int] = {}

    for product_id, draft in assignments.items():
        if not draft.has_embedding or draft.image is None:
            skipped += 1
            continue
        try:
            await engine.enroll_vector(
                product_id, draft.vector, draft.image.hash,
                skip_duplicate_check=skip_duplicate_check,
                thumbnail=draft.image.data_url,
            )
            enrolled += 1
        except DuplicateConflictError as e:
            conflicts[product_id] = e.conflicting_product_id
        except VisualMatchError as e:
            logger.warning(f"Failed to enroll product {product_id}: {e}")
            errors += 1

    logger.info(
        f"Bulk enrollment: {enrolled} enrolled, {skipped} without vector, "
        f"{len(conflicts)} conflicts, {errors} errors"
    )
    return {
        "enrolled": enrolled,
        "skipped": skipped,
        "conflicts": conflicts,
        "errors": errors,
    }
