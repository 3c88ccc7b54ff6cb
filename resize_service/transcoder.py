"""
Image decoding, resizing and encoding.

An uploaded object is decoded exactly once; every variant is derived from the
same decoded RGB buffer so all outputs are consistent with each other.
"""

from __future__ import annotations

from io import BytesIO
import logging
from typing import Tuple

from PIL import Image, UnidentifiedImageError

from .errors import CorruptDataError, EncodeError, UnsupportedFormatError
from .models import DecodedImage, OutputFormat

logger = logging.getLogger(__name__)

DEFAULT_JPEG_QUALITY = 75
_ALPHA_MODES = {"RGBA", "LA", "PA"}


def compute_target_size(size: Tuple[int, int], target_width: int) -> Tuple[int, int]:
    """Scale to `target_width`, preserving aspect ratio."""
    if target_width < 1:
        raise ValueError(f"target width must be positive, got {target_width}")
    width, height = size
    new_height = max(1, round(height * target_width / width))
    return target_width, new_height


def _to_rgb(image: Image.Image) -> Image.Image:
    """Flatten alpha onto white; JPEG cannot carry transparency."""
    if image.mode == "P" and "transparency" in image.info:
        image = image.convert("RGBA")
    if image.mode in _ALPHA_MODES:
        rgba = image.convert("RGBA")
        background = Image.new("RGB", rgba.size, (255, 255, 255))
        background.paste(rgba, mask=rgba.split()[-1])
        return background
    if image.mode != "RGB":
        return image.convert("RGB")
    return image


def decode(data: bytes) -> DecodedImage:
    """
    Decode an encoded image into a fully loaded RGB buffer.

    Raises:
        UnsupportedFormatError: the bytes are not a format Pillow recognises.
        CorruptDataError: the format is known but the pixel data is unusable.
    """
    if not data:
        raise CorruptDataError("empty image data")
    try:
        image = Image.open(BytesIO(data))
    except UnidentifiedImageError as exc:
        raise UnsupportedFormatError("unrecognised image format") from exc
    except Image.DecompressionBombError as exc:
        raise CorruptDataError(str(exc)) from exc
    except (OSError, SyntaxError, ValueError) as exc:
        # Plugins validate headers inside open(); a recognised but broken header lands here.
        raise CorruptDataError(f"could not read image header: {exc}") from exc
    try:
        image.load()
        return DecodedImage(image=_to_rgb(image))
    except (OSError, SyntaxError, ValueError, Image.DecompressionBombError) as exc:
        raise CorruptDataError(f"could not decode {image.format or 'image'}: {exc}") from exc


def resize(image: DecodedImage, target_width: int) -> DecodedImage:
    new_size = compute_target_size(image.size, target_width)
    if new_size == image.size:
        return DecodedImage(image=image.image.copy())
    return DecodedImage(image=image.image.resize(new_size, Image.Resampling.LANCZOS))


def encode(image: DecodedImage, output_format: OutputFormat, quality: int = DEFAULT_JPEG_QUALITY) -> bytes:
    buf = BytesIO()
    try:
        image.image.save(buf, format=output_format.pil_format, quality=quality)
    except Exception as exc:  # noqa: BLE001
        raise EncodeError(f"failed to encode {output_format.pil_format}: {exc}") from exc
    return buf.getvalue()


class Transcoder:
    """Bundles the transcoding steps with their encoder settings."""

    def __init__(self, quality: int = DEFAULT_JPEG_QUALITY) -> None:
        self.quality = quality

    def decode(self, data: bytes) -> DecodedImage:
        return decode(data)

    def resize(self, image: DecodedImage, target_width: int) -> DecodedImage:
        return resize(image, target_width)

    def encode(self, image: DecodedImage, output_format: OutputFormat) -> bytes:
        return encode(image, output_format, quality=self.quality)
