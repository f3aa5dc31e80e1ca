"""Tests for two-page spread detection."""

import numpy as np
import pytest

from conftest import make_photo
from scanpipeline.config import DetectorSettings
from scanpipeline.errors import ImageDecodeError
from scanpipeline.region import ContentRegion, GrayscaleImage
from scanpipeline.split_detector import (
    Confidence,
    GradientPair,
    SimpleMinimum,
    SmoothedMinimum,
    SplitDetector,
    ValleyDepth,
    confidence_for,
    detect_split,
    moving_average,
    text_at_column,
)


def profile_image(profile: np.ndarray, width: int, height: int) -> tuple[GrayscaleImage, ContentRegion]:
    """Grayscale image whose every row is the given profile."""
    pixels = np.tile(profile.astype(np.uint8), (10, 1))
    image = GrayscaleImage(pixels=pixels, width=width, height=height)
    return image, ContentRegion(0, len(profile), len(profile))


class TestMovingAverage:
    """Tests for the clipped moving average."""

    def test_constant_profile_unchanged(self):
        profile = np.full(50, 120.0)
        assert np.allclose(moving_average(profile, 5), 120.0)

    def test_edges_are_clipped(self):
        """Edge windows average only the values that exist."""
        profile = np.array([0.0, 10.0, 20.0, 30.0])
        smoothed = moving_average(profile, 1)
        assert smoothed.tolist() == pytest.approx([5.0, 10.0, 20.0, 25.0])

    def test_zero_window_is_identity(self):
        profile = np.array([3.0, 1.0, 2.0])
        assert moving_average(profile, 0).tolist() == [3.0, 1.0, 2.0]


class TestEstimators:
    """Tests for the individual gutter estimators."""

    settings = DetectorSettings()

    def _valley(self, n: int = 1000, center: float = 0.5, depth: float = 60.0) -> np.ndarray:
        x = np.arange(n) / n
        return 220 - depth * np.exp(-((x - center) ** 2) / (2 * 0.05 ** 2))

    def test_simple_minimum_finds_darkest_center_column(self):
        profile = self._valley(center=0.47)
        estimate = SimpleMinimum().estimate(profile, profile, self.settings)
        assert estimate.index == 470

    def test_smoothed_minimum_ignores_minimum_outside_band(self):
        """A dark column near the edge is outside the search band."""
        profile = self._valley(center=0.55)
        profile[100] = 0
        smoothed = moving_average(profile, 30)
        estimate = SmoothedMinimum().estimate(profile, smoothed, self.settings)
        assert 540 <= estimate.index <= 560

    def test_gradient_pair_brackets_valley(self):
        profile = self._valley()
        smoothed = moving_average(profile, 30)
        estimate = GradientPair().estimate(profile, smoothed, self.settings)
        assert estimate.index is not None
        assert estimate.details["left_edge"] < 500 <= estimate.details["right_edge"]
        assert 480 <= estimate.index <= 520

    def test_gradient_pair_flat_profile_has_no_estimate(self):
        profile = np.full(1000, 200.0)
        estimate = GradientPair().estimate(profile, profile, self.settings)
        assert estimate.index is None

    def test_valley_depth_percent(self):
        """Valley score is the center's shortfall against the outer average."""
        profile = np.full(100, 200.0)
        profile[40:60] = 150.0
        estimate = ValleyDepth().estimate(profile, profile, self.settings)
        assert estimate.value == pytest.approx(25.0)

    def test_valley_depth_flat_is_zero(self):
        profile = np.full(100, 200.0)
        assert ValleyDepth().estimate(profile, profile, self.settings).value == 0.0


class TestConfidence:
    """Tests for score to confidence mapping."""

    def test_thresholds(self):
        settings = DetectorSettings()
        assert confidence_for(2.0, settings) == Confidence.HIGH
        assert confidence_for(1.5, settings) == Confidence.MEDIUM
        assert confidence_for(1.0, settings) == Confidence.MEDIUM
        assert confidence_for(0.5, settings) == Confidence.LOW


class TestSplitDetector:
    """Tests for full photo classification."""

    def test_single_portrait_page(self, single_page_bytes):
        """Portrait photo with a flat profile is a single page."""
        analysis = SplitDetector().analyze_bytes(single_page_bytes)
        assert analysis.is_spread is False
        assert analysis.confidence != Confidence.HIGH
        assert analysis.estimates["valley_depth"].value < 2
        assert analysis.cut_percent == 50.0

    def test_clear_spread(self, spread_bytes):
        """Landscape photo with a deep center valley is a high-confidence spread."""
        analysis = SplitDetector().analyze_bytes(spread_bytes)
        assert analysis.is_spread is True
        assert analysis.confidence == Confidence.HIGH
        assert analysis.aspect_ratio == pytest.approx(1.3)
        assert analysis.estimates["valley_depth"].value > 5
        assert 40 <= analysis.cut_percent <= 60
        assert 400 <= analysis.split_position <= 600
        assert analysis.text_warning is None

    def test_deterministic(self, spread_bytes):
        """Identical input gives identical output."""
        first = SplitDetector().analyze_bytes(spread_bytes).to_dict()
        second = detect_split(spread_bytes).to_dict()
        assert first == second

    def test_landscape_without_valley_is_not_spread(self):
        """A flat landscape photo is a low-confidence single page; its score is kept."""
        analysis = SplitDetector().analyze_bytes(make_photo(1300, 1000))
        assert analysis.is_spread is False
        assert analysis.confidence == Confidence.LOW
        assert analysis.score == 1.0

    def test_flat_photo_with_borders_is_not_spread(self):
        """Aspect and content width alone reach the threshold, but there is no gutter."""
        analysis = SplitDetector().analyze_bytes(make_photo(1300, 1000, border=130))
        assert analysis.score == 1.5
        assert analysis.is_spread is False
        assert analysis.confidence == Confidence.LOW
        assert analysis.cut_percent == 50.0

    def test_borders_shift_split_position(self):
        """Cut is relative to content; split position is relative to the photo."""
        data = make_photo(1300, 1000, valley_depth=60, valley_center=0.45, border=130)
        analysis = SplitDetector().analyze_bytes(data)
        assert analysis.region.content_width_percent < 95
        assert any(s.name == "content_width" and s.score == 0.5 for s in analysis.signals)
        assert 430 <= analysis.split_position <= 470

    def test_cut_percent_always_in_bounds(self):
        """Cut stays within [0, 100] for arbitrary profiles."""
        rng = np.random.default_rng(7)
        detector = SplitDetector()
        for _ in range(20):
            profile = rng.uniform(0, 255, size=int(rng.integers(10, 400)))
            image, region = profile_image(profile, width=len(profile), height=10)
            analysis = detector.classify(image, profile, region)
            assert 0 <= analysis.cut_percent <= 100
            assert 0 < analysis.split_position < 1000

    def test_short_profile_degrades(self):
        """Profiles too narrow to analyze give a low-confidence midpoint."""
        profile = np.array([200.0, 10.0, 200.0])
        image, region = profile_image(profile, width=1300, height=1000)
        analysis = SplitDetector().classify(image, profile, region)
        assert analysis.is_spread is False
        assert analysis.confidence == Confidence.LOW
        assert analysis.cut_percent == 50.0

    def test_gradient_pair_does_not_score(self, spread_bytes):
        """Only aspect, valley and content width contribute to the score."""
        analysis = SplitDetector().analyze_bytes(spread_bytes)
        assert {s.name for s in analysis.signals} == {"aspect_ratio", "valley_depth", "content_width"}
        assert analysis.score == sum(s.score for s in analysis.signals)

    def test_undecodable_input_propagates(self):
        with pytest.raises(ImageDecodeError):
            SplitDetector().analyze_bytes(b"\x00\x01\x02")


class TestTextAtSplit:
    """Tests for the text-crossing-the-cut check."""

    def test_striped_column_is_text(self):
        """Alternating dark and light rows look like lines of text."""
        pixels = np.full((200, 50), 230, dtype=np.uint8)
        pixels[::2, :] = 20
        assert text_at_column(pixels, 25, DetectorSettings()) is True

    def test_clean_gutter_is_not_text(self):
        pixels = np.full((200, 50), 230, dtype=np.uint8)
        pixels[:, 20:30] = 120
        assert text_at_column(pixels, 25, DetectorSettings()) is False

    def test_text_caps_confidence(self):
        """A spread with text through the cut is downgraded to medium."""
        x = np.arange(1000) / 1000
        columns = 220 - 30 * np.exp(-((x - 0.5) ** 2) / (2 * 0.05 ** 2))
        pixels = np.tile(columns.astype(np.uint8), (400, 1))
        pixels[::4, 450:550] = 10
        image = GrayscaleImage(pixels=pixels, width=1300, height=1000)
        region = ContentRegion(0, 1000, 1000)
        profile = pixels.mean(axis=0)

        analysis = SplitDetector().classify(image, profile, region)
        assert analysis.is_spread is True
        assert analysis.confidence == Confidence.MEDIUM
        assert analysis.has_text_at_split is True
