"""
Image region analysis: content bounds and column brightness profiles.

Everything here is a pure function of the pixels. Photos are reduced to an
8-bit luminance array first, at most ``analysis_width`` columns wide.
"""

import logging
from dataclasses import dataclass

import numpy as np
from PIL import Image

from .imaging import decode_image

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GrayscaleImage:
    """Luminance pixels of a photo plus the size of the original.

    Attributes:
        pixels: uint8 array of shape (rows, columns)
        width: Width of the original photo in pixels
        height: Height of the original photo in pixels
    """

    pixels: np.ndarray
    width: int
    height: int

    @property
    def aspect_ratio(self) -> float:
        return self.width / self.height if self.height else 0.0

    @property
    def analysis_width(self) -> int:
        return int(self.pixels.shape[1])


@dataclass(frozen=True)
class ContentRegion:
    """Horizontal bounds of the page content, excluding dark borders.

    ``left`` is inclusive and ``right`` exclusive, in analysis pixels.
    """

    left: int
    right: int
    image_width: int

    @property
    def width(self) -> int:
        return self.right - self.left

    @property
    def left_percent(self) -> float:
        return self.left / self.image_width * 100 if self.image_width else 0.0

    @property
    def right_percent(self) -> float:
        return self.right / self.image_width * 100 if self.image_width else 0.0

    @property
    def content_width_percent(self) -> float:
        return self.width / self.image_width * 100 if self.image_width else 0.0

    def to_dict(self) -> dict[str, float]:
        return {
            "left": self.left,
            "right": self.right,
            "width": self.width,
            "left_percent": round(self.left_percent, 1),
            "right_percent": round(self.right_percent, 1),
            "content_width_percent": round(self.content_width_percent, 1),
        }


def to_grayscale(img: Image.Image, analysis_width: int = 1000) -> GrayscaleImage:
    """Reduce a decoded image to analysis luminance.

    Downsamples to analysis_width when wider (never upsamples).
    """
    width, height = img.size
    gray = img.convert("L")

    if width > analysis_width:
        new_height = max(1, round(height * analysis_width / width))
        gray = gray.resize((analysis_width, new_height), Image.BILINEAR)

    return GrayscaleImage(pixels=np.asarray(gray, dtype=np.uint8), width=width, height=height)


def load_grayscale(data: bytes, analysis_width: int = 1000) -> GrayscaleImage:
    """Decode image bytes into analysis luminance.

    Args:
        data: Encoded image bytes
        analysis_width: Maximum analysis width in pixels

    Returns:
        GrayscaleImage

    Raises:
        ImageDecodeError: If the bytes are not a readable image
    """
    img = decode_image(data)
    try:
        return to_grayscale(img, analysis_width)
    finally:
        img.close()


def find_content_region(
    pixels: np.ndarray,
    dark_threshold: int = 40,
    coverage: float = 0.30,
    scan_fraction: float = 0.30,
) -> ContentRegion:
    """Locate the content between dark scan borders.

    Scans inward from each side over ``scan_fraction`` of the width. The
    first column in which more than ``coverage`` of the pixels are brighter
    than ``dark_threshold`` marks the content edge. Sides where no such
    column is found are not trimmed.

    Args:
        pixels: uint8 luminance array (rows, columns)
        dark_threshold: Luminance at or below which a pixel is border
        coverage: Fraction of light pixels that makes a column content
        scan_fraction: Portion of the width scanned from each side

    Returns:
        ContentRegion in analysis pixels
    """
    height, width = pixels.shape[:2]
    if width == 0 or height == 0:
        return ContentRegion(left=0, right=width, image_width=width)

    light = (pixels > dark_threshold).mean(axis=0)
    is_content = light > coverage
    scan = int(width * scan_fraction)

    left = 0
    left_hits = np.flatnonzero(is_content[:scan])
    if left_hits.size:
        left = int(left_hits[0])

    right = width
    right_hits = np.flatnonzero(is_content[width - scan:])
    if right_hits.size:
        right = width - scan + int(right_hits[-1]) + 1

    if right <= left:
        logger.debug(f"Degenerate content bounds {left}..{right}, using full width")
        return ContentRegion(left=0, right=width, image_width=width)

    return ContentRegion(left=left, right=right, image_width=width)


def vertical_profile(pixels: np.ndarray, region: ContentRegion) -> np.ndarray:
    """Mean luminance of each column inside the content region.

    Returns:
        float64 array of length region.width
    """
    return pixels[:, region.left:region.right].mean(axis=0, dtype=np.float64)
