"""
Persistent records: books, pages, pipeline state, jobs and editions.

Every record converts to and from plain JSON-compatible dicts so the
document store can write them without knowing their shape.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid.uuid4().hex


def _dt(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _parse_dt(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


class StepName(str, Enum):
    """Pipeline steps, declared in execution order."""

    SPLIT_CHECK = "split_check"
    OCR = "ocr"
    TRANSLATE = "translate"
    SUMMARIZE = "summarize"
    EDITION = "edition"


STEP_ORDER: tuple[StepName, ...] = tuple(StepName)


class PipelineStatus(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"


class StepStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class JobMode(str, Enum):
    """How a job walks its pages.

    BATCH pages are independent and processed concurrently. SEQUENTIAL pages
    are processed in page order, each receiving the previous page's output.
    """

    BATCH = "batch"
    SEQUENTIAL = "sequential"


@dataclass
class Crop:
    """Horizontal crop window on a 0-1000 scale of the source photo width."""

    x_start: int
    x_end: int

    def __post_init__(self) -> None:
        if not 0 <= self.x_start < self.x_end <= 1000:
            raise ValueError(f"Invalid crop window: {self.x_start}..{self.x_end}")

    def to_dict(self) -> dict[str, Any]:
        return {"x_start": self.x_start, "x_end": self.x_end}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Crop":
        return cls(x_start=data["x_start"], x_end=data["x_end"])


@dataclass
class TextResult:
    """Output of one inference call on one page (OCR, translation or summary)."""

    data: str
    model: str = ""
    language: str | None = None
    input_tokens: int = 0
    output_tokens: int = 0
    cost_usd: float = 0.0
    processing_ms: int = 0
    source: str = "ai"
    contributed_by: str | None = None
    updated_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "data": self.data,
            "model": self.model,
            "language": self.language,
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "cost_usd": self.cost_usd,
            "processing_ms": self.processing_ms,
            "source": self.source,
            "contributed_by": self.contributed_by,
            "updated_at": _dt(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TextResult":
        return cls(
            data=data.get("data", ""),
            model=data.get("model", ""),
            language=data.get("language"),
            input_tokens=data.get("input_tokens", 0),
            output_tokens=data.get("output_tokens", 0),
            cost_usd=data.get("cost_usd", 0.0),
            processing_ms=data.get("processing_ms", 0),
            source=data.get("source", "ai"),
            contributed_by=data.get("contributed_by"),
            updated_at=_parse_dt(data.get("updated_at")) or utcnow(),
        )


# Page fields that hold a TextResult
TEXT_FIELDS = ("ocr", "translation", "summary")


@dataclass
class Page:
    """One logical book page, possibly cut from half of a spread photo."""

    id: str
    book_id: str
    page_number: int
    photo: str
    photo_original: str | None = None
    thumbnail: str | None = None
    cropped_photo: str | None = None
    crop: Crop | None = None
    split_from: str | None = None
    side: str | None = None
    split_detection: dict[str, Any] | None = None
    ocr: TextResult | None = None
    translation: TextResult | None = None
    summary: TextResult | None = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def __post_init__(self) -> None:
        if self.page_number < 1:
            raise ValueError(f"page_number must be >= 1, got {self.page_number}")
        if self.side not in (None, "left", "right"):
            raise ValueError(f"side must be 'left', 'right' or None, got {self.side!r}")

    @property
    def image_ref(self) -> str:
        """Reference to the best image of this page for inference."""
        return self.cropped_photo or self.photo or self.photo_original or ""

    @property
    def is_split_half(self) -> bool:
        return self.side is not None

    def has(self, field_name: str) -> bool:
        """Whether a processing field holds a result.

        Text fields count as missing when their text is empty.
        """
        value = getattr(self, field_name)
        if value is None:
            return False
        if isinstance(value, TextResult):
            return bool(value.data)
        return True

    def text(self, field_name: str) -> str | None:
        value = getattr(self, field_name)
        return value.data if isinstance(value, TextResult) else None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "book_id": self.book_id,
            "page_number": self.page_number,
            "photo": self.photo,
            "photo_original": self.photo_original,
            "thumbnail": self.thumbnail,
            "cropped_photo": self.cropped_photo,
            "crop": self.crop.to_dict() if self.crop else None,
            "split_from": self.split_from,
            "side": self.side,
            "split_detection": self.split_detection,
            "ocr": self.ocr.to_dict() if self.ocr else None,
            "translation": self.translation.to_dict() if self.translation else None,
            "summary": self.summary.to_dict() if self.summary else None,
            "created_at": _dt(self.created_at),
            "updated_at": _dt(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Page":
        texts = {
            name: TextResult.from_dict(data[name]) if data.get(name) else None
            for name in TEXT_FIELDS
        }
        return cls(
            id=data["id"],
            book_id=data["book_id"],
            page_number=data["page_number"],
            photo=data.get("photo", ""),
            photo_original=data.get("photo_original"),
            thumbnail=data.get("thumbnail"),
            cropped_photo=data.get("cropped_photo"),
            crop=Crop.from_dict(data["crop"]) if data.get("crop") else None,
            split_from=data.get("split_from"),
            side=data.get("side"),
            split_detection=data.get("split_detection"),
            created_at=_parse_dt(data.get("created_at")) or utcnow(),
            updated_at=_parse_dt(data.get("updated_at")) or utcnow(),
            **texts,
        )


@dataclass
class StepProgress:
    completed: int = 0
    failed: int = 0
    total: int = 0

    def to_dict(self) -> dict[str, int]:
        return {"completed": self.completed, "failed": self.failed, "total": self.total}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "StepProgress":
        return cls(
            completed=data.get("completed", 0),
            failed=data.get("failed", 0),
            total=data.get("total", 0),
        )


@dataclass
class StepState:
    status: StepStatus = StepStatus.PENDING
    progress: StepProgress = field(default_factory=StepProgress)
    job_id: str | None = None
    result: dict[str, Any] = field(default_factory=dict)
    error: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "progress": self.progress.to_dict(),
            "job_id": self.job_id,
            "result": self.result,
            "error": self.error,
            "started_at": _dt(self.started_at),
            "completed_at": _dt(self.completed_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "StepState":
        return cls(
            status=StepStatus(data.get("status", "pending")),
            progress=StepProgress.from_dict(data.get("progress") or {}),
            job_id=data.get("job_id"),
            result=data.get("result") or {},
            error=data.get("error"),
            started_at=_parse_dt(data.get("started_at")),
            completed_at=_parse_dt(data.get("completed_at")),
        )


@dataclass
class PipelineSettings:
    """Per-run settings captured when a pipeline is started."""

    model: str = "gemini-2.0-flash"
    language: str = "Latin"
    target_language: str = "English"
    license: str = "CC0-1.0"

    def to_dict(self) -> dict[str, str]:
        return {
            "model": self.model,
            "language": self.language,
            "target_language": self.target_language,
            "license": self.license,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PipelineSettings":
        defaults = cls()
        return cls(
            model=data.get("model", defaults.model),
            language=data.get("language", defaults.language),
            target_language=data.get("target_language", defaults.target_language),
            license=data.get("license", defaults.license),
        )


@dataclass
class PipelineState:
    status: PipelineStatus = PipelineStatus.IDLE
    current_step: StepName | None = None
    steps: dict[StepName, StepState] = field(
        default_factory=lambda: {step: StepState() for step in STEP_ORDER}
    )
    config: PipelineSettings = field(default_factory=PipelineSettings)
    started_at: datetime | None = None
    completed_at: datetime | None = None
    error: str | None = None
    spent_usd: float = 0.0

    def running_step(self) -> StepName | None:
        for step in STEP_ORDER:
            if self.steps[step].status == StepStatus.RUNNING:
                return step
        return None

    def next_pending(self) -> StepName | None:
        for step in STEP_ORDER:
            if self.steps[step].status == StepStatus.PENDING:
                return step
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "current_step": self.current_step.value if self.current_step else None,
            "steps": {step.value: self.steps[step].to_dict() for step in STEP_ORDER},
            "config": self.config.to_dict(),
            "started_at": _dt(self.started_at),
            "completed_at": _dt(self.completed_at),
            "error": self.error,
            "spent_usd": round(self.spent_usd, 6),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PipelineState":
        stored = data.get("steps") or {}
        steps = {
            step: StepState.from_dict(stored[step.value]) if step.value in stored else StepState()
            for step in STEP_ORDER
        }
        current = data.get("current_step")
        return cls(
            status=PipelineStatus(data.get("status", "idle")),
            current_step=StepName(current) if current else None,
            steps=steps,
            config=PipelineSettings.from_dict(data.get("config") or {}),
            started_at=_parse_dt(data.get("started_at")),
            completed_at=_parse_dt(data.get("completed_at")),
            error=data.get("error"),
            spent_usd=data.get("spent_usd", 0.0),
        )


@dataclass
class Edition:
    id: str
    version: str
    license: str
    pages_count: int
    status: str = "draft"
    created_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "version": self.version,
            "license": self.license,
            "pages_count": self.pages_count,
            "status": self.status,
            "created_at": _dt(self.created_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Edition":
        return cls(
            id=data["id"],
            version=data["version"],
            license=data.get("license", "CC0-1.0"),
            pages_count=data.get("pages_count", 0),
            status=data.get("status", "draft"),
            created_at=_parse_dt(data.get("created_at")) or utcnow(),
        )


@dataclass
class Book:
    id: str
    title: str
    language: str = "Latin"
    pages_count: int = 0
    pages_ocr: int = 0
    pages_translated: int = 0
    pipeline: PipelineState | None = None
    editions: list[Edition] = field(default_factory=list)
    current_edition_id: str | None = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def __post_init__(self) -> None:
        if not self.id:
            raise ValueError("Book id cannot be empty")

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "language": self.language,
            "pages_count": self.pages_count,
            "pages_ocr": self.pages_ocr,
            "pages_translated": self.pages_translated,
            "pipeline": self.pipeline.to_dict() if self.pipeline else None,
            "editions": [edition.to_dict() for edition in self.editions],
            "current_edition_id": self.current_edition_id,
            "created_at": _dt(self.created_at),
            "updated_at": _dt(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Book":
        return cls(
            id=data["id"],
            title=data.get("title", ""),
            language=data.get("language", "Latin"),
            pages_count=data.get("pages_count", 0),
            pages_ocr=data.get("pages_ocr", 0),
            pages_translated=data.get("pages_translated", 0),
            pipeline=PipelineState.from_dict(data["pipeline"]) if data.get("pipeline") else None,
            editions=[Edition.from_dict(item) for item in data.get("editions", [])],
            current_edition_id=data.get("current_edition_id"),
            created_at=_parse_dt(data.get("created_at")) or utcnow(),
            updated_at=_parse_dt(data.get("updated_at")) or utcnow(),
        )


@dataclass
class Job:
    """A resumable unit of work over a frozen list of pages.

    ``cursor`` indexes the next page id that has not been attempted.
    ``processed`` counts successes and ``failed`` counts failures, so
    ``processed + failed == cursor`` at every chunk boundary.
    ``budget_usd`` caps what the job may spend on inference and
    ``spent_usd`` is what it has spent so far, carried across chunks.
    """

    id: str
    book_id: str
    step: StepName
    mode: JobMode
    page_ids: list[str]
    cursor: int = 0
    processed: int = 0
    failed: int = 0
    completed_ids: list[str] = field(default_factory=list)
    failed_ids: list[str] = field(default_factory=list)
    errors: dict[str, str] = field(default_factory=dict)
    done: bool = False
    paused: bool = False
    budget_exhausted: bool = False
    budget_usd: float | None = None
    spent_usd: float = 0.0
    config: dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    completed_at: datetime | None = None

    @property
    def total(self) -> int:
        return len(self.page_ids)

    @property
    def remaining(self) -> list[str]:
        return self.page_ids[self.cursor:]

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "book_id": self.book_id,
            "step": self.step.value,
            "mode": self.mode.value,
            "page_ids": self.page_ids,
            "cursor": self.cursor,
            "processed": self.processed,
            "failed": self.failed,
            "completed_ids": self.completed_ids,
            "failed_ids": self.failed_ids,
            "errors": self.errors,
            "done": self.done,
            "paused": self.paused,
            "budget_exhausted": self.budget_exhausted,
            "budget_usd": self.budget_usd,
            "spent_usd": round(self.spent_usd, 6),
            "config": self.config,
            "created_at": _dt(self.created_at),
            "updated_at": _dt(self.updated_at),
            "completed_at": _dt(self.completed_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Job":
        return cls(
            id=data["id"],
            book_id=data["book_id"],
            step=StepName(data["step"]),
            mode=JobMode(data["mode"]),
            page_ids=list(data.get("page_ids", [])),
            cursor=data.get("cursor", 0),
            processed=data.get("processed", 0),
            failed=data.get("failed", 0),
            completed_ids=list(data.get("completed_ids", [])),
            failed_ids=list(data.get("failed_ids", [])),
            errors=dict(data.get("errors", {})),
            done=data.get("done", False),
            paused=data.get("paused", False),
            budget_exhausted=data.get("budget_exhausted", False),
            budget_usd=data.get("budget_usd"),
            spent_usd=data.get("spent_usd", 0.0),
            config=data.get("config") or {},
            created_at=_parse_dt(data.get("created_at")) or utcnow(),
            updated_at=_parse_dt(data.get("updated_at")) or utcnow(),
            completed_at=_parse_dt(data.get("completed_at")),
        )


@dataclass
class Contribution:
    """Record of one bring-your-own-key processing session."""

    id: str
    book_id: str
    contributor: str
    process_type: str
    pages_processed: int
    total_tokens: int
    spent_usd: float
    created_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "book_id": self.book_id,
            "contributor": self.contributor,
            "process_type": self.process_type,
            "pages_processed": self.pages_processed,
            "total_tokens": self.total_tokens,
            "spent_usd": self.spent_usd,
            "created_at": _dt(self.created_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Contribution":
        return cls(
            id=data["id"],
            book_id=data["book_id"],
            contributor=data.get("contributor", "Anonymous"),
            process_type=data.get("process_type", "ocr"),
            pages_processed=data.get("pages_processed", 0),
            total_tokens=data.get("total_tokens", 0),
            spent_usd=data.get("spent_usd", 0.0),
            created_at=_parse_dt(data.get("created_at")) or utcnow(),
        )
