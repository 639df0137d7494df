"""Utility helpers for image encoding, decoding and thumbnails."""

from __future__ import annotations

import io
from typing import Any

from PIL import Image, UnidentifiedImageError

from modules.pipelines.request import OutputFormat
from modules.utils.errors import CacheDecodeError

JPEG_QUALITY = 90

# PIL 对损坏的 PNG 分块抛出 SyntaxError，超大图像抛出 DecompressionBombError
_DECODE_ERRORS = (UnidentifiedImageError, Image.DecompressionBombError, SyntaxError, OSError, ValueError)


def encode_image(image: Any, fmt: OutputFormat) -> bytes:
    """Serialize a PIL image as lossless PNG or JPEG at quality 0.9."""
    buffer = io.BytesIO()
    if fmt is OutputFormat.JPEG:
        rgb = image if image.mode == "RGB" else image.convert("RGB")
        rgb.save(buffer, format="JPEG", quality=JPEG_QUALITY)
    else:
        image.save(buffer, format="PNG")
    return buffer.getvalue()


def decode_image(data: bytes) -> Image.Image:
    """Decode stored bytes into a fully loaded PIL image."""
    try:
        image = Image.open(io.BytesIO(data))
        image.load()
    except _DECODE_ERRORS as exc:
        raise CacheDecodeError(f"无法解码图像数据：{exc}") from exc
    return image


def generate_thumbnail(data: bytes, max_pixel_size: int) -> Image.Image:
    """Decode and downsample so the longest side is at most ``max_pixel_size``."""
    if max_pixel_size <= 0:
        raise ValueError("max_pixel_size must be positive")
    try:
        image = Image.open(io.BytesIO(data))
        # JPEG 可在解码阶段直接降采样
        image.draft("RGB", (max_pixel_size, max_pixel_size))
        image.load()
        image.thumbnail((max_pixel_size, max_pixel_size))
    except _DECODE_ERRORS as exc:
        raise CacheDecodeError(f"无法解码图像数据：{exc}") from exc
    return image


def raster_cost(image: Any) -> int:
    """Approximate in-memory size of a decoded raster in bytes."""
    width, height = image.size
    return width * height * max(1, len(image.getbands()))
