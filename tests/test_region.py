"""Tests for image region analysis."""

import numpy as np
import pytest

from conftest import make_photo
from scanpipeline.errors import ImageDecodeError
from scanpipeline.region import ContentRegion, find_content_region, load_grayscale, vertical_profile


class TestLoadGrayscale:
    """Tests for decoding photos into analysis luminance."""

    def test_downsamples_wide_images(self):
        """Images wider than the analysis width are reduced, keeping aspect."""
        image = load_grayscale(make_photo(2000, 1000), analysis_width=1000)
        assert image.pixels.shape == (500, 1000)
        assert image.width == 2000
        assert image.height == 1000
        assert image.aspect_ratio == pytest.approx(2.0)

    def test_never_upsamples(self):
        """Narrow images keep their size."""
        image = load_grayscale(make_photo(400, 600), analysis_width=1000)
        assert image.pixels.shape == (600, 400)
        assert image.pixels.dtype == np.uint8

    def test_undecodable_bytes(self):
        """Garbage bytes raise ImageDecodeError."""
        with pytest.raises(ImageDecodeError):
            load_grayscale(b"definitely not an image")

    def test_empty_bytes(self):
        """Empty input raises ImageDecodeError."""
        with pytest.raises(ImageDecodeError):
            load_grayscale(b"")


class TestFindContentRegion:
    """Tests for dark border detection."""

    def test_no_border_uses_full_width(self):
        """Without dark borders the region spans the whole image."""
        pixels = np.full((100, 200), 220, dtype=np.uint8)
        region = find_content_region(pixels)
        assert (region.left, region.right) == (0, 200)
        assert region.content_width_percent == 100.0

    def test_dark_borders_are_trimmed(self):
        """Black columns on both sides are excluded."""
        pixels = np.full((100, 1000), 220, dtype=np.uint8)
        pixels[:, :100] = 0
        pixels[:, 900:] = 0
        region = find_content_region(pixels)
        assert region.left == 100
        assert region.right == 900
        assert region.content_width_percent == pytest.approx(80.0)
        assert region.left_percent == pytest.approx(10.0)
        assert region.right_percent == pytest.approx(90.0)

    def test_border_wider_than_scan_is_not_trimmed(self):
        """Borders beyond the scanned fraction fall back to no trimming."""
        pixels = np.full((100, 1000), 220, dtype=np.uint8)
        pixels[:, :400] = 0
        region = find_content_region(pixels, scan_fraction=0.30)
        assert region.left == 0
        assert region.right == 1000

    def test_sparse_light_pixels_are_border(self):
        """A column needs more than the coverage fraction of light pixels."""
        pixels = np.full((100, 1000), 220, dtype=np.uint8)
        pixels[:, :50] = 0
        pixels[:20, :50] = 255  # 20% light, below 30% coverage
        region = find_content_region(pixels)
        assert region.left == 50

    def test_all_dark_image(self):
        """An all-dark image falls back to the full width."""
        pixels = np.zeros((50, 300), dtype=np.uint8)
        region = find_content_region(pixels)
        assert (region.left, region.right) == (0, 300)


class TestVerticalProfile:
    """Tests for column brightness profiles."""

    def test_profile_covers_region_only(self):
        """Profile has one value per content column."""
        pixels = np.zeros((10, 100), dtype=np.uint8)
        pixels[:, 20:80] = 200
        region = ContentRegion(left=20, right=80, image_width=100)
        profile = vertical_profile(pixels, region)
        assert profile.shape == (60,)
        assert np.all(profile == 200.0)

    def test_profile_is_column_mean(self):
        """Each value is the mean luminance over all rows."""
        pixels = np.array([[0, 100], [200, 100]], dtype=np.uint8)
        profile = vertical_profile(pixels, ContentRegion(0, 2, 2))
        assert profile.tolist() == [100.0, 100.0]
