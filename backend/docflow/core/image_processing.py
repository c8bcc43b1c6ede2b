"""Image preparation for vision-capable AI providers.

Scanned receipts and phone photos arrive rotated and far larger than any
vision model needs. They are auto-oriented from EXIF and downscaled before
being sent upstream.
"""

from __future__ import annotations

import io
import logging
from dataclasses import dataclass

from PIL import Image, ImageOps, UnidentifiedImageError

from docflow.core.errors import TextExtractionError

logger = logging.getLogger(__name__)

VISION_MAX_SIZE = (2048, 2048)
VISION_JPEG_QUALITY = 88
EXIF_ORIENTATION = 0x0112

IMAGE_TYPES = {"image/jpeg", "image/png", "image/webp", "image/gif", "image/bmp", "image/tiff"}

# Formats every vision provider accepts as-is.
PASSTHROUGH_TYPES = {"image/jpeg", "image/png"}


@dataclass(frozen=True)
class VisionImage:
    data: bytes
    mime_type: str


def is_image(mime_type: str | None) -> bool:
    return bool(mime_type) and mime_type.lower() in IMAGE_TYPES


def prepare_vision_image(content: bytes, mime_type: str | None = None) -> VisionImage:
    """Return an upright image no larger than ``VISION_MAX_SIZE``.

    Small JPEG/PNG files that need no rotation are passed through untouched;
    everything else is re-encoded (PNG when there is transparency, JPEG
    otherwise).
    """
    try:
        img = Image.open(io.BytesIO(content))
        img.load()
    except Image.DecompressionBombError as exc:
        raise TextExtractionError(f"Image is too large to process: {exc}") from exc
    except (UnidentifiedImageError, OSError) as exc:
        raise TextExtractionError("Unreadable image") from exc

    orientation = img.getexif().get(EXIF_ORIENTATION, 1)
    rotated = orientation not in (None, 1)
    upright = ImageOps.exif_transpose(img) if rotated else img
    oversized = upright.width > VISION_MAX_SIZE[0] or upright.height > VISION_MAX_SIZE[1]

    if (mime_type or "").lower() in PASSTHROUGH_TYPES and not oversized and not rotated:
        return VisionImage(data=content, mime_type=mime_type.lower())

    resized = upright.copy()
    resized.thumbnail(VISION_MAX_SIZE, Image.LANCZOS)

    buf = io.BytesIO()
    if resized.mode in ("RGBA", "LA", "P", "PA"):
        resized.convert("RGBA").save(buf, format="PNG", optimize=True)
        prepared = VisionImage(data=buf.getvalue(), mime_type="image/png")
    else:
        resized.convert("RGB").save(buf, format="JPEG", quality=VISION_JPEG_QUALITY, optimize=True)
        prepared = VisionImage(data=buf.getvalue(), mime_type="image/jpeg")

    logger.info(
        "Prepared image for vision: %dx%d -> %dx%d (%d -> %d bytes)",
        img.width,
        img.height,
        resized.width,
        resized.height,
        len(content),
        len(prepared.data),
    )
    return prepared
