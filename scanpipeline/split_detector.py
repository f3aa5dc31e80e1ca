"""
Two-page spread detection from column brightness profiles.

A photo of an open book shows a darker band where the pages curve into the
binding. Several estimators look for that band in the vertical brightness
profile; independent signals (aspect ratio, valley depth, content width)
are scored to decide whether the photo is a spread at all.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol

import numpy as np

from .config import AnalyzerSettings, DetectorSettings
from .imaging import POSITION_SCALE
from .region import ContentRegion, GrayscaleImage, find_content_region, load_grayscale, vertical_profile

logger = logging.getLogger(__name__)


class Confidence(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


@dataclass(frozen=True)
class Estimate:
    """Result of one gutter estimator.

    Attributes:
        name: Estimator name
        index: Profile index of the estimated gutter (None if not found)
        value: Brightness at the gutter, or the score for scoring estimators
        details: Estimator-specific diagnostics
    """

    name: str
    index: int | None
    value: float | None
    details: dict[str, Any] = field(default_factory=dict)

    def percent(self, length: int) -> float | None:
        if self.index is None or length == 0:
            return None
        return self.index / length * 100

    def to_dict(self, length: int) -> dict[str, Any]:
        percent = self.percent(length)
        return {
            "index": self.index,
            "percent": round(percent, 2) if percent is not None else None,
            "value": round(self.value, 3) if self.value is not None else None,
            **self.details,
        }


@dataclass(frozen=True)
class SignalScore:
    """Contribution of one classification signal to the spread score."""

    name: str
    value: float
    score: float
    reason: str | None = None


class SignalEstimator(Protocol):
    """Locates a gutter candidate in a brightness profile."""

    name: str

    def estimate(
        self, profile: np.ndarray, smoothed: np.ndarray, settings: DetectorSettings
    ) -> Estimate:
        ...


class ScoreSignal(Protocol):
    """Scores one piece of evidence that a photo is a spread."""

    name: str

    def score(self, context: "ClassificationContext", settings: DetectorSettings) -> SignalScore:
        ...


def moving_average(profile: np.ndarray, half_window: int) -> np.ndarray:
    """Centered moving average with windows clipped at the profile edges.

    Each output value is the mean of ``profile[i - half_window : i + half_window + 1]``
    intersected with the profile bounds.
    """
    n = len(profile)
    if n == 0 or half_window <= 0:
        return profile.astype(np.float64, copy=True)

    cumulative = np.concatenate(([0.0], np.cumsum(profile, dtype=np.float64)))
    idx = np.arange(n)
    lo = np.maximum(idx - half_window, 0)
    hi = np.minimum(idx + half_window + 1, n)
    return (cumulative[hi] - cumulative[lo]) / (hi - lo)


def center_band(length: int, settings: DetectorSettings) -> tuple[int, int]:
    """Index range [start, end) of the central gutter search band."""
    start = int(length * settings.center_start)
    end = int(length * settings.center_end)
    if end <= start:
        end = min(length, start + 1)
    return start, end


class SimpleMinimum:
    """Darkest raw column inside the center band."""

    name = "simple_minimum"

    def estimate(
        self, profile: np.ndarray, smoothed: np.ndarray, settings: DetectorSettings
    ) -> Estimate:
        start, end = center_band(len(profile), settings)
        band = profile[start:end]
        if band.size == 0:
            return Estimate(self.name, None, None)
        offset = int(np.argmin(band))
        return Estimate(self.name, start + offset, float(band[offset]))


class SmoothedMinimum:
    """Darkest column of the moving-average profile inside the center band."""

    name = "smoothed_minimum"

    def estimate(
        self, profile: np.ndarray, smoothed: np.ndarray, settings: DetectorSettings
    ) -> Estimate:
        start, end = center_band(len(smoothed), settings)
        band = smoothed[start:end]
        if band.size == 0:
            return Estimate(self.name, None, None)
        offset = int(np.argmin(band))
        return Estimate(self.name, start + offset, float(band[offset]))


class GradientPair:
    """Midpoint between the steepest falling and rising edges around the center.

    Looks for the strongest brightness change left of center and right of
    center; the gutter lies between the two. No estimate when either side
    has no change at all.
    """

    name = "gradient_pair"

    def estimate(
        self, profile: np.ndarray, smoothed: np.ndarray, settings: DetectorSettings
    ) -> Estimate:
        n = len(smoothed)
        if n < 3:
            return Estimate(self.name, None, None)

        gradient = np.zeros(n, dtype=np.float64)
        gradient[1:-1] = np.abs(smoothed[2:] - smoothed[:-2]) / 2
        relative = np.arange(n) / n

        left_mask = (relative >= settings.gradient_left[0]) & (relative < settings.gradient_left[1])
        right_mask = (relative >= settings.gradient_right[0]) & (relative < settings.gradient_right[1])
        if not left_mask.any() or not right_mask.any():
            return Estimate(self.name, None, None)

        left_idx = np.flatnonzero(left_mask)
        right_idx = np.flatnonzero(right_mask)
        left_peak = int(left_idx[np.argmax(gradient[left_idx])])
        right_peak = int(right_idx[np.argmax(gradient[right_idx])])

        if gradient[left_peak] == 0 or gradient[right_peak] == 0:
            return Estimate(self.name, None, None)

        index = round((left_peak + right_peak) / 2)
        return Estimate(
            self.name,
            index,
            float(smoothed[index]),
            {"left_edge": left_peak, "right_edge": right_peak},
        )


class ValleyDepth:
    """How much darker the center band is than the outer thirds, in percent."""

    name = "valley_depth"

    def estimate(
        self, profile: np.ndarray, smoothed: np.ndarray, settings: DetectorSettings
    ) -> Estimate:
        n = len(profile)
        outer = int(n * settings.outer_fraction)
        if n == 0 or outer == 0:
            return Estimate(self.name, None, 0.0)

        start, end = center_band(n, settings)
        left_avg = float(profile[:outer].mean())
        right_avg = float(profile[n - outer:].mean())
        center_avg = float(profile[start:end].mean())
        outer_avg = (left_avg + right_avg) / 2

        score = (outer_avg - center_avg) / outer_avg * 100 if outer_avg > 0 else 0.0
        return Estimate(
            self.name,
            None,
            score,
            {
                "left_avg": round(left_avg, 2),
                "right_avg": round(right_avg, 2),
                "center_avg": round(center_avg, 2),
            },
        )


DEFAULT_ESTIMATORS: tuple[SignalEstimator, ...] = (
    SimpleMinimum(),
    SmoothedMinimum(),
    GradientPair(),
    ValleyDepth(),
)


@dataclass(frozen=True)
class ClassificationContext:
    """Inputs shared by the score signals."""

    aspect_ratio: float
    region: ContentRegion
    estimates: dict[str, Estimate]


class AspectRatioSignal:
    name = "aspect_ratio"

    def score(self, context: ClassificationContext, settings: DetectorSettings) -> SignalScore:
        ratio = context.aspect_ratio
        if ratio > settings.landscape_ratio:
            return SignalScore(self.name, ratio, settings.landscape_weight, "landscape orientation")
        if ratio > settings.borderline_ratio:
            return SignalScore(self.name, ratio, settings.borderline_weight, "near-square orientation")
        return SignalScore(self.name, ratio, 0.0)


class ValleySignal:
    name = "valley_depth"

    def score(self, context: ClassificationContext, settings: DetectorSettings) -> SignalScore:
        estimate = context.estimates.get(ValleyDepth.name)
        depth = estimate.value if estimate and estimate.value is not None else 0.0
        if depth > settings.strong_valley:
            return SignalScore(self.name, depth, settings.strong_valley_weight, "clear center valley")
        if depth > settings.weak_valley:
            return SignalScore(self.name, depth, settings.weak_valley_weight, "slight center valley")
        return SignalScore(self.name, depth, 0.0)


class ContentWidthSignal:
    name = "content_width"

    def score(self, context: ClassificationContext, settings: DetectorSettings) -> SignalScore:
        width = context.region.content_width_percent
        if width < settings.content_width_limit:
            return SignalScore(self.name, width, settings.narrow_content_weight, "dark borders trimmed")
        return SignalScore(self.name, width, 0.0)


DEFAULT_SIGNALS: tuple[ScoreSignal, ...] = (
    AspectRatioSignal(),
    ValleySignal(),
    ContentWidthSignal(),
)


@dataclass
class SplitAnalysis:
    """Classification of one photo.

    Attributes:
        is_spread: Whether the photo shows two pages
        confidence: How sure the classification is
        cut_percent: Gutter position as a percentage of the content region
        split_position: Gutter position on the 0-1000 scale of the whole photo
        score: Sum of the signal scores
        aspect_ratio: Width over height of the original photo
        region: Content region the profile was taken from
        estimates: Every estimator's result, by name
        signals: Every signal's contribution
        text_warning: Set when text seems to cross the cut
        method: 'heuristic' or 'vision'
    """

    is_spread: bool
    confidence: Confidence
    cut_percent: float
    split_position: int
    score: float = 0.0
    aspect_ratio: float = 0.0
    region: ContentRegion | None = None
    estimates: dict[str, Estimate] = field(default_factory=dict)
    signals: list[SignalScore] = field(default_factory=list)
    text_warning: str | None = None
    method: str = "heuristic"
    reasoning: str | None = None

    @property
    def has_text_at_split(self) -> bool:
        return self.text_warning is not None

    @property
    def reasons(self) -> list[str]:
        return [signal.reason for signal in self.signals if signal.score > 0 and signal.reason]

    def to_dict(self) -> dict[str, Any]:
        length = self.region.width if self.region else 0
        return {
            "is_spread": self.is_spread,
            "confidence": self.confidence.value,
            "cut_percent": round(self.cut_percent, 2),
            "split_position": self.split_position,
            "score": self.score,
            "aspect_ratio": round(self.aspect_ratio, 3),
            "method": self.method,
            "reasons": self.reasons,
            "reasoning": self.reasoning,
            "has_text_at_split": self.has_text_at_split,
            "text_warning": self.text_warning,
            "content_region": self.region.to_dict() if self.region else None,
            "estimates": {name: est.to_dict(length) for name, est in self.estimates.items()},
        }


def confidence_for(score: float, settings: DetectorSettings) -> Confidence:
    if score >= settings.high_confidence:
        return Confidence.HIGH
    if score >= settings.medium_confidence:
        return Confidence.MEDIUM
    return Confidence.LOW


def count_transitions(column: np.ndarray, threshold: int) -> int:
    """Number of dark/light flips down one pixel column."""
    dark = column < threshold
    return int(np.count_nonzero(dark[1:] != dark[:-1]))


def text_at_column(pixels: np.ndarray, x: int, settings: DetectorSettings) -> bool:
    """Whether lines of text appear to run through column x.

    Printed lines produce many dark/light flips along a column; a clean
    gutter produces few. Both the column itself and the average of a small
    window around it have to be busy.
    """
    width = pixels.shape[1]
    if width == 0:
        return False

    x = min(max(x, 0), width - 1)
    lo = max(0, x - settings.text_window)
    hi = min(width, x + settings.text_window + 1)

    counts = [count_transitions(pixels[:, col], settings.text_threshold) for col in range(lo, hi)]
    column_count = counts[x - lo]
    window_average = sum(counts) / len(counts)

    return (
        column_count > settings.text_column_transitions
        and window_average > settings.text_window_transitions
    )


class SplitDetector:
    """Decides whether a photo is a two-page spread and where to cut it.

    Usage:
        detector = SplitDetector()
        analysis = detector.analyze_bytes(photo_bytes)
        if analysis.is_spread:
            left, right = analysis.split_position, 1000 - analysis.split_position
    """

    def __init__(
        self,
        settings: DetectorSettings | None = None,
        analyzer: AnalyzerSettings | None = None,
        estimators: tuple[SignalEstimator, ...] = DEFAULT_ESTIMATORS,
        signals: tuple[ScoreSignal, ...] = DEFAULT_SIGNALS,
    ) -> None:
        self.settings = settings or DetectorSettings()
        self.analyzer = analyzer or AnalyzerSettings()
        self.estimators = estimators
        self.signals = signals

    def analyze_bytes(self, data: bytes) -> SplitAnalysis:
        """Classify encoded image bytes.

        Raises:
            ImageDecodeError: If the bytes are not a readable image
        """
        return self.analyze(load_grayscale(data, self.analyzer.analysis_width))

    def analyze(self, image: GrayscaleImage) -> SplitAnalysis:
        """Classify a grayscale image, locating its content region first."""
        region = find_content_region(
            image.pixels,
            dark_threshold=self.analyzer.dark_threshold,
            coverage=self.analyzer.content_coverage,
            scan_fraction=self.analyzer.scan_fraction,
        )
        profile = vertical_profile(image.pixels, region)
        return self.classify(image, profile, region)

    def classify(
        self, image: GrayscaleImage, profile: np.ndarray, region: ContentRegion
    ) -> SplitAnalysis:
        """Classify a photo from its brightness profile.

        Never raises for a decodable image: profiles too short to analyze,
        and flat profiles with no gutter to find, yield a low-confidence
        single page cut at the content midpoint.

        Args:
            image: Grayscale image (used for aspect ratio and text checks)
            profile: Column brightness over the content region
            region: Content region the profile covers

        Returns:
            SplitAnalysis
        """
        settings = self.settings

        if len(profile) < settings.min_profile_width:
            logger.debug(f"Profile too short ({len(profile)} columns), assuming single page")
            return SplitAnalysis(
                is_spread=False,
                confidence=Confidence.LOW,
                cut_percent=50.0,
                split_position=self._to_position(50.0, region),
                aspect_ratio=image.aspect_ratio,
                region=region,
            )

        smoothed = moving_average(profile, settings.smoothing_window)
        estimates = {
            estimator.name: estimator.estimate(profile, smoothed, settings)
            for estimator in self.estimators
        }

        context = ClassificationContext(
            aspect_ratio=image.aspect_ratio, region=region, estimates=estimates
        )
        signals = [signal.score(context, settings) for signal in self.signals]
        score = sum(signal.score for signal in signals)

        if self._is_flat(smoothed):
            # No gutter to find: signals are kept for diagnostics only
            logger.debug(f"Flat profile (score {score}), assuming single page")
            is_spread = False
            confidence = Confidence.LOW
        else:
            is_spread = score >= settings.spread_threshold
            confidence = confidence_for(score, settings)

        cut_percent = self._cut_percent(smoothed, estimates)
        split_position = self._to_position(cut_percent, region)

        text_warning = None
        cut_column = region.left + round(cut_percent / 100 * region.width)
        if is_spread and text_at_column(image.pixels, cut_column, settings):
            text_warning = "Text may cross the split line; review the cut"
            if confidence == Confidence.HIGH:
                confidence = Confidence.MEDIUM

        analysis = SplitAnalysis(
            is_spread=is_spread,
            confidence=confidence,
            cut_percent=cut_percent,
            split_position=split_position,
            score=score,
            aspect_ratio=image.aspect_ratio,
            region=region,
            estimates=estimates,
            signals=signals,
            text_warning=text_warning,
        )

        logger.debug(
            f"Split analysis: spread={is_spread} confidence={confidence.value} "
            f"score={score} cut={cut_percent:.1f}%"
        )
        return analysis

    def _is_flat(self, smoothed: np.ndarray) -> bool:
        return float(smoothed.max() - smoothed.min()) < self.settings.flat_tolerance

    def _cut_percent(self, smoothed: np.ndarray, estimates: dict[str, Estimate]) -> float:
        """Cut position within the content region, clamped to [0, 100]."""
        if self._is_flat(smoothed):
            return 50.0

        estimate = estimates.get(SmoothedMinimum.name)
        percent = estimate.percent(len(smoothed)) if estimate else None
        if percent is None:
            return 50.0
        return min(max(percent, 0.0), 100.0)

    @staticmethod
    def _to_position(cut_percent: float, region: ContentRegion) -> int:
        """Convert a content-relative cut to the 0-1000 scale of the whole photo."""
        if region.image_width == 0:
            return POSITION_SCALE // 2
        column = region.left + cut_percent / 100 * region.width
        position = round(column / region.image_width * POSITION_SCALE)
        return min(max(position, 1), POSITION_SCALE - 1)


def detect_split(data: bytes, settings: DetectorSettings | None = None) -> SplitAnalysis:
    """Classify one encoded photo with default analyzer settings."""
    return SplitDetector(settings).analyze_bytes(data)
