"""
Configuration for the scan ingestion and processing pipeline.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

DEFAULT_MODEL = "gemini-2.0-flash"
DEFAULT_LLM_API_URL = "http://localhost:8080/v1/chat/completions"


@dataclass
class AnalyzerSettings:
    """Settings for the image region analyzer.

    Attributes:
        analysis_width: Images wider than this are downsampled before analysis
        dark_threshold: Luminance at or below which a pixel counts as border
        content_coverage: Fraction of light pixels a column needs to count as content
        scan_fraction: Fraction of the width scanned from each side for borders
    """

    analysis_width: int = 1000
    dark_threshold: int = 40
    content_coverage: float = 0.30
    scan_fraction: float = 0.30

    def __post_init__(self) -> None:
        if self.analysis_width < 16:
            raise ValueError(f"analysis_width must be >= 16, got {self.analysis_width}")
        if not 0 <= self.dark_threshold <= 255:
            raise ValueError(f"dark_threshold must be in [0, 255], got {self.dark_threshold}")
        if not 0 < self.content_coverage < 1:
            raise ValueError(f"content_coverage must be in (0, 1), got {self.content_coverage}")
        if not 0 < self.scan_fraction <= 0.5:
            raise ValueError(f"scan_fraction must be in (0, 0.5], got {self.scan_fraction}")


@dataclass
class DetectorSettings:
    """Thresholds and weights for two-page spread classification.

    Band limits are fractions of the content region width. Score weights
    add up per signal; a photo is a spread once the total reaches
    ``spread_threshold``.
    """

    # Gutter search band
    center_start: float = 0.40
    center_end: float = 0.60
    smoothing_window: int = 30  # Half-width of the moving average, in columns

    # Gradient-pair estimator
    gradient_left: tuple[float, float] = (0.35, 0.50)
    gradient_right: tuple[float, float] = (0.50, 0.65)

    # Valley depth
    outer_fraction: float = 0.35

    # Scoring
    landscape_ratio: float = 1.0
    borderline_ratio: float = 0.9
    strong_valley: float = 5.0
    weak_valley: float = 2.0
    content_width_limit: float = 95.0
    landscape_weight: float = 1.0
    borderline_weight: float = 0.5
    strong_valley_weight: float = 1.0
    weak_valley_weight: float = 0.5
    narrow_content_weight: float = 0.5
    spread_threshold: float = 1.5
    high_confidence: float = 2.0
    medium_confidence: float = 1.0

    # Degenerate profiles
    min_profile_width: int = 10
    flat_tolerance: float = 1.0  # Brightness range below which a profile is flat

    # Text crossing the cut
    text_window: int = 3
    text_threshold: int = 180
    text_column_transitions: int = 30
    text_window_transitions: int = 40

    def __post_init__(self) -> None:
        if not 0 <= self.center_start < self.center_end <= 1:
            raise ValueError(
                f"center band must satisfy 0 <= start < end <= 1, "
                f"got ({self.center_start}, {self.center_end})"
            )
        if self.smoothing_window < 0:
            raise ValueError(f"smoothing_window must be >= 0, got {self.smoothing_window}")
        if not 0 < self.outer_fraction < 0.5:
            raise ValueError(f"outer_fraction must be in (0, 0.5), got {self.outer_fraction}")
        if self.medium_confidence > self.high_confidence:
            raise ValueError("medium_confidence cannot exceed high_confidence")
        if self.text_window < 0:
            raise ValueError(f"text_window must be >= 0, got {self.text_window}")


@dataclass
class JobSettings:
    """Settings for chunked job processing.

    Attributes:
        batch_chunk_size: Pages handled per process_chunk call in batch mode
        batch_size: Pages dispatched concurrently within a batch
        sequential_chunk_size: Pages handled per process_chunk call in sequential mode
        item_delay: Seconds to wait between sequential items
        estimated_cost_usd: Amount charged to a governor before each inference call
    """

    batch_chunk_size: int = 10
    batch_size: int = 10
    sequential_chunk_size: int = 5
    item_delay: float = 0.1
    estimated_cost_usd: float = 0.002

    def __post_init__(self) -> None:
        if self.batch_chunk_size < 1:
            raise ValueError(f"batch_chunk_size must be >= 1, got {self.batch_chunk_size}")
        if self.batch_size < 1:
            raise ValueError(f"batch_size must be >= 1, got {self.batch_size}")
        if self.sequential_chunk_size < 1:
            raise ValueError(
                f"sequential_chunk_size must be >= 1, got {self.sequential_chunk_size}"
            )
        if self.item_delay < 0:
            raise ValueError(f"item_delay must be >= 0, got {self.item_delay}")
        if self.estimated_cost_usd < 0:
            raise ValueError(f"estimated_cost_usd must be >= 0, got {self.estimated_cost_usd}")


@dataclass
class IngestSettings:
    """Settings for photo ingestion and spread splitting."""

    split_method: Literal["heuristic", "vision", "cascade"] = "cascade"
    max_image_bytes: int = 20 * 1024 * 1024
    fetch_timeout: float = 60.0
    crop_max_width: int = 1200
    crop_quality: int = 80
    thumbnail_width: int = 150
    thumbnail_quality: int = 60

    def __post_init__(self) -> None:
        valid_methods = {"heuristic", "vision", "cascade"}
        if self.split_method not in valid_methods:
            raise ValueError(f"Invalid split method: {self.split_method}. Valid: {valid_methods}")
        if self.max_image_bytes < 1:
            raise ValueError(f"max_image_bytes must be >= 1, got {self.max_image_bytes}")
        for name in ("crop_quality", "thumbnail_quality"):
            value = getattr(self, name)
            if not 1 <= value <= 95:
                raise ValueError(f"{name} must be in [1, 95], got {value}")


@dataclass
class LibraryConfig:
    """Top-level configuration for a scan library on disk.

    Attributes:
        library_dir: Root directory holding documents and stored images
        model: Inference model name (also selects the pricing entry)
        language: Default source language of new books
        target_language: Language translations are written in
        license: License recorded on new editions
        llm_api_url: OpenAI-compatible chat completions endpoint
        llm_api_key: Bearer token for the endpoint, if it needs one
        budget_usd: Spend ceiling for each pipeline run and each ingest batch (None for unlimited)
    """

    library_dir: Path
    model: str = DEFAULT_MODEL
    language: str = "Latin"
    target_language: str = "English"
    license: str = "CC0-1.0"
    llm_api_url: str = DEFAULT_LLM_API_URL
    llm_api_key: str | None = None
    budget_usd: float | None = None

    analyzer: AnalyzerSettings = field(default_factory=AnalyzerSettings)
    detector: DetectorSettings = field(default_factory=DetectorSettings)
    jobs: JobSettings = field(default_factory=JobSettings)
    ingest: IngestSettings = field(default_factory=IngestSettings)

    def __post_init__(self) -> None:
        """Validate and convert paths."""
        self.library_dir = Path(self.library_dir)

        if not self.model or not self.model.strip():
            raise ValueError("model cannot be empty")

        if self.budget_usd is not None and self.budget_usd < 0:
            raise ValueError(f"budget_usd must be >= 0, got {self.budget_usd}")

    @property
    def documents_dir(self) -> Path:
        """Directory for book, page and job documents."""
        return self.library_dir / "documents"

    @property
    def storage_dir(self) -> Path:
        """Directory for stored originals, crops and thumbnails."""
        return self.library_dir / "objects"

    @classmethod
    def from_env(cls, library_dir: str | Path | None = None) -> "LibraryConfig":
        """Build a config from SCANPIPELINE_* and LLM_* environment variables.

        Args:
            library_dir: Overrides SCANPIPELINE_LIBRARY when given

        Returns:
            LibraryConfig with defaults for anything unset
        """
        budget = os.getenv("SCANPIPELINE_BUDGET_USD")
        split_method = os.getenv("SCANPIPELINE_SPLIT_METHOD", "cascade")

        return cls(
            library_dir=library_dir or os.getenv("SCANPIPELINE_LIBRARY", "./library"),
            model=os.getenv("LLM_MODEL", DEFAULT_MODEL),
            language=os.getenv("SCANPIPELINE_LANGUAGE", "Latin"),
            target_language=os.getenv("SCANPIPELINE_TARGET_LANGUAGE", "English"),
            license=os.getenv("SCANPIPELINE_LICENSE", "CC0-1.0"),
            llm_api_url=os.getenv("LLM_API_URL", DEFAULT_LLM_API_URL),
            llm_api_key=os.getenv("LLM_API_KEY") or None,
            budget_usd=float(budget) if budget else None,
            ingest=IngestSettings(split_method=split_method),
        )
