"""
Image normalization for embedding and duplicate detection.

Turns an arbitrary product photo into a fixed-size square image so the
embedding provider always sees the same framing, and hashes the encoded
result. The hash is computed on the normalized output, so byte-identical
submissions always collide and can be detected as re-submissions.

Pipeline:
    1. Decode (bytes or an already-decoded array)
    2. Convert to 8-bit, composite any alpha over opaque white
    3. Largest centered square crop
    4. Resize to TARGET_SIZE x TARGET_SIZE
    5. Encode (JPEG with quality, or PNG) and SHA-256 the bytes
"""

import os
import base64
import hashlib
import logging
from dataclasses import dataclass
from typing import List, Tuple, Union

import cv2
import numpy as np

from .errors import DecodeError

logger = logging.getLogger(__name__)

# Edge length expected by the embedding model (CLIP uses 224).
TARGET_SIZE = int(os.environ.get("VISUAL_MATCH_TARGET_SIZE", "224"))
JPEG_QUALITY = int(os.environ.get("VISUAL_MATCH_JPEG_QUALITY", "85"))
OUTPUT_FORMAT = os.environ.get("VISUAL_MATCH_IMAGE_FORMAT", "jpeg")

_MIME_TYPES = {"jpeg": "image/jpeg", "png": "image/png"}

ImageSource = Union[bytes, bytearray, np.ndarray]


@dataclass(frozen=True)
class NormalizedImage:
    """Encoded square image plus the metadata the pipeline needs."""

    encoded_bytes: bytes
    hash: str
    original_byte_size: int
    processed_byte_size: int
    dimensions: str
    mime_type: str

    @property
    def base64(self) -> str:
        return base64.b64encode(self.encoded_bytes).decode("ascii")

    @property
    def data_url(self) -> str:
        return f"data:{self.mime_type};base64,{self.base64}"


def to_uint8(image_np: np.ndarray) -> np.ndarray:
    """Ensure image is uint8, rescaling float [0, 1] and 16-bit input."""
    if image_np.dtype == np.uint8:
        return image_np
    if image_np.dtype == np.uint16:
        return (image_np / 257).astype(np.uint8)
    if np.issubdtype(image_np.dtype, np.floating) and image_np.max() <= 1.0:
        return (image_np * 255).round().astype(np.uint8)
    return np.clip(image_np, 0, 255).astype(np.uint8)


def decode_image(data: Union[bytes, bytearray]) -> np.ndarray:
    """
    Decode encoded image bytes into a BGR or BGRA uint8 array.

    Photos without alpha come back upright per their EXIF orientation,
    as a browser would display them.

    Raises:
        DecodeError: Empty, corrupt or unsupported input.
    """
    if not data:
        raise DecodeError("Empty image payload")

    buffer = np.frombuffer(bytes(data), dtype=np.uint8)
    try:
        image = cv2.imdecode(buffer, cv2.IMREAD_UNCHANGED)
        # IMREAD_UNCHANGED ignores EXIF orientation; keep it only for alpha
        if image is not None and not (image.ndim == 3 and image.shape[2] == 4):
            image = cv2.imdecode(buffer, cv2.IMREAD_COLOR)
    except cv2.error as e:
        raise DecodeError(f"Could not decode image: {e}") from e

    if image is None or image.size == 0:
        raise DecodeError("Could not decode image: unsupported or corrupt data")

    return to_uint8(image)


def composite_on_white(image_bgr: np.ndarray) -> np.ndarray:
    """
    Flatten an image to 3-channel BGR over an opaque white background.

    Grayscale input is expanded; a 4th channel is treated as alpha.
    """
    if image_bgr.ndim == 2:
        return cv2.cvtColor(image_bgr, cv2.COLOR_GRAY2BGR)

    channels = image_bgr.shape[2]
    if channels == 1:
        return cv2.cvtColor(image_bgr, cv2.COLOR_GRAY2BGR)
    if channels == 3:
        return image_bgr
    if channels != 4:
        raise DecodeError(f"Unsupported channel count: {channels}")

    color = image_bgr[:, :, :3].astype(np.float32)
    alpha = image_bgr[:, :, 3:4].astype(np.float32) / 255.0
    flattened = color * alpha + 255.0 * (1.0 - alpha)
    return np.clip(np.round(flattened), 0, 255).astype(np.uint8)


def extract_center_square(image_np: np.ndarray) -> np.ndarray:
    """Return the largest square patch centered in the image."""
    h, w = image_np.shape[:2]
    size = min(h, w)
    x1 = (w - size) // 2
    y1 = (h - size) // 2
    return image_np[y1:y1 + size, x1:x1 + size]


def _resize_square(square: np.ndarray, target_size: int) -> np.ndarray:
    # INTER_AREA when shrinking, INTER_CUBIC when enlarging
    if square.shape[0] >= target_size:
        interpolation = cv2.INTER_AREA
    else:
        interpolation = cv2.INTER_CUBIC
    return cv2.resize(square, (target_size, target_size),
                      interpolation=interpolation)


def _encode(image_bgr: np.ndarray, fmt: str, quality: int) -> bytes:
    if fmt == "jpeg":
        ok, encoded = cv2.imencode(
            ".jpg", image_bgr, [int(cv2.IMWRITE_JPEG_QUALITY), int(quality)]
        )
    elif fmt == "png":
        ok, encoded = cv2.imencode(".png", image_bgr)
    else:
        raise ValueError(f"Unsupported output format: {fmt}")

    if not ok:
        raise DecodeError(f"Could not encode normalized image as {fmt}")
    return encoded.tobytes()


def _load(source: ImageSource) -> Tuple[np.ndarray, int]:
    """Return (BGR/BGRA array, original byte size) for bytes or an RGB array."""
    if isinstance(source, np.ndarray):
        if source.size == 0:
            raise DecodeError("Empty image array")
        image = to_uint8(source)
        # Arrays follow the RGB convention of camera frames
        if image.ndim == 3 and image.shape[2] == 3:
            image = cv2.cvtColor(image, cv2.COLOR_RGB2BGR)
        elif image.ndim == 3 and image.shape[2] == 4:
            image = cv2.cvtColor(image, cv2.COLOR_RGBA2BGRA)
        return image, int(source.nbytes)

    if isinstance(source, (bytes, bytearray)):
        return decode_image(source), len(source)

    raise DecodeError(f"Unsupported image source type: {type(source).__name__}")


def normalize_image(source: ImageSource,
                    target_size: int = None,
                    quality: int = None,
                    fmt: str = None) -> NormalizedImage:
    """
    Normalize a product photo into a square, encoded, hashed image.

    Args:
        source: Encoded image bytes, or a decoded RGB/RGBA/grayscale array.
        target_size: Output edge length. Defaults to TARGET_SIZE.
        quality: JPEG quality 0-100. Defaults to JPEG_QUALITY.
        fmt: "jpeg" or "png". Defaults to OUTPUT_FORMAT.

    Returns:
        NormalizedImage with the encoded bytes and their SHA-256 hex digest.

    Raises:
        DecodeError: If the source cannot be decoded.
    """
    target_size = target_size or TARGET_SIZE
    quality = JPEG_QUALITY if quality is None else quality
    fmt = (fmt or OUTPUT_FORMAT).lower()
    if fmt == "jpg":
        fmt = "jpeg"
    if fmt not in _MIME_TYPES:
        raise ValueError(f"Unsupported output format: {fmt}")

    image, original_size = _load(source)
    flattened = composite_on_white(image)
    square = extract_center_square(flattened)
    resized = _resize_square(square, target_size)
    encoded = _encode(resized, fmt, quality)

    return NormalizedImage(
        encoded_bytes=encoded,
        hash=hashlib.sha256(encoded).hexdigest(),
        original_byte_size=original_size,
        processed_byte_size=len(encoded),
        dimensions=f"{target_size}x{target_size}",
        mime_type=_MIME_TYPES[fmt],
    )


def normalize_batch(sources: List[ImageSource], **options) -> List[NormalizedImage]:
    """Normalize several images; the first undecodable one raises."""
    return [normalize_image(source, **options) for source in sources]


def validate_image(source: ImageSource) -> bool:
    """True if the source decodes as an image."""
    try:
        _load(source)
        return True
    except DecodeError as e:
        logger.debug(f"Image validation failed: {e}")
        return False


def get_dimensions(source: ImageSource) -> Tuple[int, int]:
    """Return (width, height) of the source without normalizing it."""
    image, _ = _load(source)
    h, w = image.shape[:2]
    return w, h
