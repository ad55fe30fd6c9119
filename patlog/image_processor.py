# patlog/image_processor.py
import io
import os
import enum
import logging
from dataclasses import dataclass
from typing import Optional, Union

from PIL import Image, ImageOps, UnidentifiedImageError

from patlog import config


class ImageDecodeError(ValueError):
    """The uploaded bytes are not an image Pillow can decode."""


class ImageTooLargeError(ValueError):
    """The upload exceeds MAX_IMAGE_BYTES."""


class ImageSize(enum.Enum):
    ICON = 64
    THUMBNAIL = 200
    MEDIUM = 800
    LARGE = 1200


@dataclass
class ProcessedImage:
    data: bytes
    filename: str
    content_type: str = "image/jpeg"


def max_dimension(size: Union[ImageSize, str, int, None]) -> int:
    """Maps an ImageSize, its name, or a custom pixel count to the bounding box side."""
    if size is None:
        return ImageSize.LARGE.value
    if isinstance(size, ImageSize):
        return size.value
    if isinstance(size, int):
        if size <= 0:
            raise ValueError(f"Invalid image size: {size}")
        return size
    try:
        return ImageSize[str(size).strip().upper()].value
    except KeyError:
        raise ValueError(f"Unknown image size: {size}")

def jpeg_filename(filename: Optional[str]) -> str:
    base = os.path.splitext(os.path.basename(filename or ""))[0]
    return f"{base or 'image'}.jpg"

def is_image_content_type(content_type: Optional[str]) -> bool:
    return bool(content_type) and content_type.lower().startswith("image/")

def normalize(data: bytes, max_dim: int = ImageSize.LARGE.value, quality: int = config.JPEG_QUALITY) -> bytes:
    """Re-encodes any decodable image as an RGB JPEG that fits in max_dim x max_dim."""
    try:
        with Image.open(io.BytesIO(data)) as img:
            img.load()
            img = ImageOps.exif_transpose(img)
            if img.mode not in ("RGB", "L"):
                # Flatten transparency onto white instead of black
                if img.mode in ("RGBA", "LA", "P"):
                    rgba = img.convert("RGBA")
                    background = Image.new("RGB", rgba.size, (255, 255, 255))
                    background.paste(rgba, mask=rgba.split()[-1])
                    img = background
                else:
                    img = img.convert("RGB")
            img.thumbnail((max_dim, max_dim), Image.Resampling.LANCZOS)
            out = io.BytesIO()
            img.save(out, format="JPEG", quality=quality, optimize=True)
            return out.getvalue()
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError, SyntaxError, ValueError) as e:
        raise ImageDecodeError(f"Cannot decode image: {e}") from e

def _jpeg_within_bounds(data: bytes, max_dim: int) -> bool:
    try:
        with Image.open(io.BytesIO(data)) as img:
            return img.format == "JPEG" and max(img.size) <= max_dim
    except Image.DecompressionBombError as e:
        raise ImageDecodeError(f"Cannot decode image: {e}") from e
    except (UnidentifiedImageError, OSError):
        return False

def process_upload(data: bytes, content_type: Optional[str], filename: Optional[str]) -> ProcessedImage:
    """
    Validates an upload and produces the stored derivative: a JPEG at most
    LARGE on its longest side. JPEGs already inside the box are kept as they are.
    """
    if len(data) > config.MAX_IMAGE_BYTES:
        raise ImageTooLargeError("Image exceeds the upload limit")
    if not is_image_content_type(content_type):
        raise ImageDecodeError(f"Unsupported content type: {content_type}")

    max_dim = ImageSize.LARGE.value
    if content_type.lower() in ("image/jpeg", "image/jpg") and _jpeg_within_bounds(data, max_dim):
        processed = data
    else:
        processed = normalize(data, max_dim)

    logging.info(f"Image processed: {filename} ({len(data)} -> {len(processed)} bytes)")
    return ProcessedImage(data=processed, filename=jpeg_filename(filename))

def variant(data: bytes, size: Union[ImageSize, str, int, None]) -> bytes:
    """Resized derivative for display (thumbnail, medium, ...)."""
    return normalize(data, max_dimension(size))
