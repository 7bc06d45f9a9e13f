"""Raster image thumbnail renderer.

Decodes the source with Pillow, applies the EXIF orientation before any
size decision, and re-encodes a WebP bounded to 500x500. Output quality
comes from a file-size bucket table; small files are left alone.
"""

import asyncio
import io
import logging
from dataclasses import dataclass
from typing import Optional

from PIL import Image, UnidentifiedImageError

from card_enrichment.core.card import Card, CardType
from card_enrichment.core.exceptions import InvalidSourceError
from card_enrichment.core.http_client import fetch_bytes
from card_enrichment.renderables.base import BaseRenderer, Thumbnail, is_svg

logger = logging.getLogger(__name__)

MAX_THUMBNAIL_WIDTH = 500
MAX_THUMBNAIL_HEIGHT = 500

KB = 1024
MB = 1024 * 1024

# Files below this size are already thumbnail-sized
SKIP_THRESHOLD = 500 * KB

# (exclusive upper bound in bytes, WebP quality); last bucket is open-ended
QUALITY_BUCKETS: tuple[tuple[Optional[int], int], ...] = (
    (1 * MB, 80),
    (2 * MB, 70),
    (5 * MB, 65),
    (10 * MB, 60),
    (20 * MB, 60),
    (None, 50),
)

EXIF_ORIENTATION_TAG = 0x0112

# EXIF orientation -> transforms applied in order (Pillow rotations are counter-clockwise)
ORIENTATION_TRANSFORMS: dict[int, tuple[Image.Transpose, ...]] = {
    2: (Image.Transpose.FLIP_LEFT_RIGHT,),
    3: (Image.Transpose.ROTATE_180,),
    4: (Image.Transpose.FLIP_TOP_BOTTOM,),
    5: (Image.Transpose.FLIP_LEFT_RIGHT, Image.Transpose.ROTATE_90),
    6: (Image.Transpose.ROTATE_270,),
    7: (Image.Transpose.FLIP_LEFT_RIGHT, Image.Transpose.ROTATE_270),
    8: (Image.Transpose.ROTATE_90,),
}


@dataclass(frozen=True)
class OutputSettings:
    format: str
    mime_type: str
    quality: int


def get_output_settings(file_size: int) -> Optional[OutputSettings]:
    """Pick the thumbnail encoding for a source of `file_size` bytes.

    Returns:
        OutputSettings, or None when the file is small enough to skip.
    """
    if file_size < SKIP_THRESHOLD:
        return None
    for upper, quality in QUALITY_BUCKETS:
        if upper is None or file_size < upper:
            return OutputSettings(format="WEBP", mime_type="image/webp", quality=quality)
    raise AssertionError("unreachable: last bucket is open-ended")


def fit_within(
    width: int,
    height: int,
    max_width: int = MAX_THUMBNAIL_WIDTH,
    max_height: int = MAX_THUMBNAIL_HEIGHT,
) -> tuple[int, int]:
    """Target size preserving aspect ratio with neither side over the cap."""
    aspect = width / height
    if aspect > 1:
        target_w = min(width, max_width)
        target_h = round(target_w / aspect)
    else:
        target_h = min(height, max_height)
        target_w = round(target_h * aspect)

    if target_w > max_width:
        target_w = max_width
        target_h = round(target_w / aspect)
    if target_h > max_height:
        target_h = max_height
        target_w = round(target_h * aspect)

    return max(1, target_w), max(1, target_h)


def apply_orientation(image: Image.Image) -> Image.Image:
    """Rotate/flip according to the EXIF orientation tag."""
    try:
        orientation = image.getexif().get(EXIF_ORIENTATION_TAG, 1)
    except (AttributeError, OSError, ValueError):
        orientation = 1
    for transform in ORIENTATION_TRANSFORMS.get(orientation, ()):
        image = image.transpose(transform)
    return image


def encode_webp(image: Image.Image, quality: int) -> bytes:
    buffer = io.BytesIO()
    image.save(buffer, format="WEBP", quality=quality)
    return buffer.getvalue()


@dataclass
class ImageThumbnail:
    data: Optional[bytes]
    original_width: int
    original_height: int
    quality: Optional[int] = None


def make_thumbnail(source: bytes) -> ImageThumbnail:
    """Decode, orient and (when large enough) re-encode an image.

    Raises:
        InvalidSourceError: If Pillow cannot decode the bytes.
    """
    try:
        image = Image.open(io.BytesIO(source))
        image.load()
    except (UnidentifiedImageError, OSError) as e:
        raise InvalidSourceError(f"Cannot decode image: {e}")

    image = apply_orientation(image)
    width, height = image.size

    settings = get_output_settings(len(source))
    if settings is None:
        return ImageThumbnail(data=None, original_width=width, original_height=height)

    if image.mode not in ("RGB", "RGBA"):
        has_alpha = image.mode in ("LA", "PA") or "transparency" in image.info
        image = image.convert("RGBA" if has_alpha else "RGB")

    image = image.resize(fit_within(width, height), Image.Resampling.LANCZOS)
    return ImageThumbnail(
        data=encode_webp(image, settings.quality),
        original_width=width,
        original_height=height,
        quality=settings.quality,
    )


class ImageRenderer(BaseRenderer):
    """Thumbnails for raster image cards (SVG cards go to SvgRenderer)."""

    card_types = frozenset({CardType.IMAGE})
    name = "image_renderer"

    def accepts(self, card: Card) -> bool:
        return super().accepts(card) and not is_svg(card)

    async def generate(self, card: Card, source_url: str) -> Thumbnail:
        source, _ = await fetch_bytes(source_url)
        result = await asyncio.to_thread(make_thumbnail, source)
        if result.quality is not None:
            logger.debug(
                "Encoded %d byte source at quality %d",
                len(source),
                result.quality,
                extra={"card_id": card.id},
            )
        return Thumbnail(
            data=result.data,
            mime_type="image/webp",
            original_width=result.original_width,
            original_height=result.original_height,
        )
