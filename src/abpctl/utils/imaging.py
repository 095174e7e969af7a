"""Image processing utilities for abpctl.

Shared sizing and encoding helpers used by the response transformer
to keep screenshots inside a downstream model's image budget.
"""

from __future__ import annotations

import base64
import io
import logging
import math

from PIL import Image

logger = logging.getLogger(__name__)

# Pillow format names keyed by MIME type
_FORMATS = {
    "image/webp": "WEBP",
    "image/png": "PNG",
    "image/jpeg": "JPEG",
}


def shrink_factor(
    width: int,
    height: int,
    max_dimension: int = 1568,
    max_pixels: float = 1.15 * 1024 * 1024,
) -> float:
    """Return the scale that fits an image inside both budgets.

    The result is capped at 1.0 so images are never upscaled.
    """
    if width <= 0 or height <= 0:
        raise ValueError(f"Invalid image size {width}x{height}")
    return min(
        max_dimension / width,
        max_dimension / height,
        math.sqrt(max_pixels / (width * height)),
        1.0,
    )


def scaled_size(width: int, height: int, factor: float) -> tuple[int, int]:
    """Scale dimensions by ``factor``, rounding to the nearest pixel."""
    return max(1, round(width * factor)), max(1, round(height * factor))


def decode_base64_image(data: str) -> Image.Image:
    """Decode base64 image data into a loaded PIL Image."""
    raw = base64.b64decode(data, validate=True)
    image = Image.open(io.BytesIO(raw))
    image.load()
    return image


def encode_base64_image(
    image: Image.Image,
    mime_type: str = "image/webp",
    quality: int = 80,
) -> str:
    """Encode a PIL Image as base64 in the format named by ``mime_type``."""
    fmt = _FORMATS.get(mime_type)
    if fmt is None:
        raise ValueError(f"Unsupported target format: {mime_type}")
    if fmt == "JPEG" and image.mode not in ("RGB", "L"):
        image = image.convert("RGB")
    elif image.mode not in ("RGB", "RGBA", "L", "LA"):
        image = image.convert("RGBA")
    buffer = io.BytesIO()
    image.save(buffer, format=fmt, quality=quality)
    return base64.b64encode(buffer.getvalue()).decode("utf-8")


def resize_for_budget(image: Image.Image, width: int, height: int) -> Image.Image:
    """Downscale to an exact size with a high-quality filter."""
    return image.resize((width, height), Image.Resampling.LANCZOS)
