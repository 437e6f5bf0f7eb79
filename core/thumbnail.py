# core/thumbnail.py

import io
import logging
from dataclasses import dataclass
from typing import Tuple

from PIL import Image, UnidentifiedImageError

from core.errors import DecodeError

logger = logging.getLogger(__name__)


@dataclass
class NormalizedImage:
    """Downscaled RGB raster plus the original pixel dimensions"""
    raster: Image.Image
    original_width: int
    original_height: int

    def encode_thumbnail(self, quality: int = 80) -> bytes:
        """Encode the raster as a JPEG preview"""
        buffer = io.BytesIO()
        self.raster.save(buffer, format="JPEG", quality=quality)
        return buffer.getvalue()


def decode_thumbnail(data: bytes) -> Image.Image:
    """Decode a stored JPEG preview back into an RGB raster"""
    try:
        with Image.open(io.BytesIO(data)) as img:
            return img.convert('RGB')
    except (UnidentifiedImageError, OSError) as e:
        raise DecodeError(f"Unreadable thumbnail: {e}") from e


def scaled_size(width: int, height: int, max_dimension: int) -> Tuple[int, int]:
    """Size after uniform downscaling so the larger side fits max_dimension"""
    if max(width, height) <= max_dimension:
        return width, height

    if width > height:
        new_width = max_dimension
        new_height = max(1, round(height * max_dimension / width))
    else:
        new_height = max_dimension
        new_width = max(1, round(width * max_dimension / height))

    return new_width, new_height


class ThumbnailNormalizer:
    """
    Decode image bytes and produce a bounded, deterministic RGB raster
    """

    def __init__(self, max_dimension: int = 400):
        self.max_dimension = max_dimension

    def normalize(self, data: bytes) -> NormalizedImage:
        """
        Decode and downscale an image.

        Aspect ratio is preserved and nothing is cropped. Images already
        within bounds keep their size.

        Raises:
            DecodeError: if the bytes are not a readable image
        """
        if not data:
            raise DecodeError("Empty image data")

        try:
            with Image.open(io.BytesIO(data)) as img:
                img.load()
                width, height = img.size
                rgb = img.convert('RGB')
        except Image.DecompressionBombError as e:
            raise DecodeError(f"Image too large: {e}") from e
        except (UnidentifiedImageError, OSError, ValueError) as e:
            raise DecodeError(f"Cannot decode image: {e}") from e

        new_size = scaled_size(width, height, self.max_dimension)
        if new_size != (width, height):
            rgb = rgb.resize(new_size, Image.Resampling.LANCZOS)

        return NormalizedImage(raster=rgb, original_width=width, original_height=height)
