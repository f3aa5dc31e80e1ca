"""
Image decoding, cropping and re-encoding for page photos.
"""

import io
import logging

from PIL import Image, ImageOps, UnidentifiedImageError

from .errors import ImageDecodeError

logger = logging.getLogger(__name__)

# Split positions and crop windows are expressed on this scale of the width
POSITION_SCALE = 1000


def decode_image(data: bytes) -> Image.Image:
    """Decode image bytes and rotate pixels to match EXIF orientation.

    Args:
        data: Encoded image (JPEG, PNG, WebP, ...)

    Returns:
        Loaded PIL image with EXIF orientation applied

    Raises:
        ImageDecodeError: If the bytes are not a readable image
    """
    if not data:
        raise ImageDecodeError("Empty image data")

    try:
        with Image.open(io.BytesIO(data)) as img:
            img.load()
            return ImageOps.exif_transpose(img)
    except (UnidentifiedImageError, OSError, ValueError, Image.DecompressionBombError) as e:
        raise ImageDecodeError(f"Could not decode image: {e}") from e


def resize_to_width(img: Image.Image, max_width: int) -> Image.Image:
    """Resize image so its width is at most max_width.

    Only resizes down, never up. Maintains aspect ratio.
    """
    if max_width <= 0:
        return img

    width, height = img.size
    if width <= max_width:
        return img

    scale = max_width / width
    new_height = max(1, int(height * scale))
    return img.resize((max_width, new_height), Image.LANCZOS)


def encode_jpeg(img: Image.Image, quality: int) -> bytes:
    """Encode an image as JPEG, flattening modes JPEG cannot store."""
    if img.mode not in ("RGB", "L"):
        img = img.convert("RGB")

    buffer = io.BytesIO()
    img.save(buffer, "JPEG", quality=quality)
    return buffer.getvalue()


def crop_span(img: Image.Image, x_start: int, x_end: int) -> Image.Image:
    """Crop a full-height vertical strip given on the 0-1000 width scale.

    Args:
        img: Source image
        x_start: Left edge, 0-1000
        x_end: Right edge, 0-1000 (exclusive)

    Returns:
        Cropped image

    Raises:
        ValueError: If the window is empty or out of range
    """
    if not 0 <= x_start < x_end <= POSITION_SCALE:
        raise ValueError(f"Invalid crop window: {x_start}..{x_end}")

    width, height = img.size
    left = round(x_start / POSITION_SCALE * width)
    right = round(x_end / POSITION_SCALE * width)
    if right - left < 1:
        raise ValueError(f"Crop window {x_start}..{x_end} is narrower than one pixel")

    return img.crop((left, 0, right, height))


def make_thumbnail(img: Image.Image, width: int, quality: int) -> bytes:
    """Encode a small JPEG preview of an image."""
    return encode_jpeg(resize_to_width(img, width), quality)


def guess_content_type(data: bytes) -> str:
    """Best-effort MIME type from the leading bytes of an image."""
    if data.startswith(b"\xff\xd8"):
        return "image/jpeg"
    if data.startswith(b"\x89PNG"):
        return "image/png"
    if data[:4] == b"RIFF" and data[8:12] == b"WEBP":
        return "image/webp"
    if data[:3] == b"GIF":
        return "image/gif"
    return "application/octet-stream"
