"""
Chunked, resumable processing of a step's pages.

A Job freezes the list of pages a step has to touch. Each call to
JobProcessor.process_chunk works through the next slice of that list and
persists the cursor, so processing can stop (pause, crash, cancel, budget)
between any two chunks and pick up exactly where it left off.
"""

import logging
import threading
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any

from .config import JobSettings
from .errors import NotFound, ScanPipelineError
from .governor import CostGovernor
from .inference import InferenceClient, InferenceResult
from .models import Job, JobMode, Page, PipelineSettings, StepName, TextResult, new_id, utcnow
from .split_detector import SplitDetector
from .storage import ImageSource
from .store import MemoryDocumentStore

logger = logging.getLogger(__name__)


class CancelToken:
    """Cooperative cancellation flag shared with a running chunk."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, seconds: float) -> bool:
        """Sleep up to ``seconds``; return True early if cancelled."""
        return self._event.wait(seconds)


@dataclass
class ChunkResult:
    """What one process_chunk call did."""

    processed_delta: int = 0
    failed_delta: int = 0
    done: bool = False
    paused: bool = False
    budget_exhausted: bool = False
    cancelled: bool = False
    spent_usd: float = 0.0
    completed_ids: list[str] = field(default_factory=list)
    failed_ids: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "processed_delta": self.processed_delta,
            "failed_delta": self.failed_delta,
            "done": self.done,
            "paused": self.paused,
            "budget_exhausted": self.budget_exhausted,
            "cancelled": self.cancelled,
            "spent_usd": round(self.spent_usd, 6),
            "completed_ids": self.completed_ids,
            "failed_ids": self.failed_ids,
        }


@dataclass
class ItemOutcome:
    """Result of processing one page."""

    page_id: str
    success: bool
    output: str | None = None
    error_message: str | None = None
    cost_usd: float = 0.0


@dataclass
class HandlerContext:
    """Collaborators and settings available to step handlers."""

    store: MemoryDocumentStore
    images: ImageSource | None
    inference: InferenceClient | None
    detector: SplitDetector
    settings: PipelineSettings
    job_config: dict[str, Any] = field(default_factory=dict)

    def load_image(self, page: Page) -> tuple[bytes, str]:
        if self.images is None:
            raise ScanPipelineError("No image source configured")
        fetched = self.images.fetch(page.image_ref)
        return fetched.data, fetched.content_type

    def require_inference(self) -> InferenceClient:
        if self.inference is None:
            raise ScanPipelineError("No inference client configured")
        return self.inference

    def text_result(self, result: InferenceResult, language: str | None) -> TextResult:
        return TextResult(
            data=result.text,
            model=result.model or self.settings.model,
            language=language,
            input_tokens=result.input_tokens,
            output_tokens=result.output_tokens,
            cost_usd=result.cost_usd,
            processing_ms=result.duration_ms,
            source=self.job_config.get("source", "ai"),
            contributed_by=self.job_config.get("contributed_by"),
        )


class StepHandler(ABC):
    """Selection query and per-page work for one chunked step."""

    step: StepName
    mode: JobMode
    output_field: str
    paid = True

    @abstractmethod
    def select(self, store: MemoryDocumentStore, book_id: str) -> list[Page]:
        """Pages this step still has to process, in page-number order."""

    @abstractmethod
    def process(self, page: Page, previous: str | None, ctx: HandlerContext) -> InferenceResult | None:
        """Do the work for one page and save it.

        Args:
            page: Page to process
            previous: Output of the preceding page (sequential mode only)
            ctx: Shared collaborators

        Returns:
            The inference result, or None for steps without a paid call
        """

    def previous_output(self, store: MemoryDocumentStore, page: Page) -> str | None:
        before = store.page_before(page)
        return before.text(self.output_field) if before else None


class SplitCheckHandler(StepHandler):
    """Re-runs spread detection on whole photos that have no analysis yet."""

    step = StepName.SPLIT_CHECK
    mode = JobMode.BATCH
    output_field = "split_detection"
    paid = False

    def select(self, store: MemoryDocumentStore, book_id: str) -> list[Page]:
        return [
            page
            for page in store.pages_missing(book_id, "split_detection")
            if not page.is_split_half
        ]

    def process(self, page: Page, previous: str | None, ctx: HandlerContext) -> InferenceResult | None:
        data, _ = ctx.load_image(page)
        analysis = ctx.detector.analyze_bytes(data)
        page.split_detection = analysis.to_dict()
        page.updated_at = utcnow()
        ctx.store.save_page(page)

        if analysis.is_spread:
            logger.warning(
                f"Page {page.page_number} looks like a two-page spread "
                f"({analysis.confidence.value} confidence); review before OCR"
            )
        return None


class OcrHandler(StepHandler):
    step = StepName.OCR
    mode = JobMode.BATCH
    output_field = "ocr"

    def select(self, store: MemoryDocumentStore, book_id: str) -> list[Page]:
        return store.pages_missing(book_id, "ocr")

    def process(self, page: Page, previous: str | None, ctx: HandlerContext) -> InferenceResult | None:
        data, mime_type = ctx.load_image(page)
        language = ctx.settings.language
        result = ctx.require_inference().ocr(data, mime_type, language, previous)
        if not result.text:
            raise ScanPipelineError("OCR returned no text")

        page.ocr = ctx.text_result(result, language)
        page.updated_at = utcnow()
        ctx.store.save_page(page)
        return result


class TranslateHandler(StepHandler):
    step = StepName.TRANSLATE
    mode = JobMode.SEQUENTIAL
    output_field = "translation"

    def select(self, store: MemoryDocumentStore, book_id: str) -> list[Page]:
        return store.pages_missing(book_id, "translation", requires="ocr")

    def process(self, page: Page, previous: str | None, ctx: HandlerContext) -> InferenceResult | None:
        source_text = page.text("ocr")
        if not source_text:
            raise ScanPipelineError("Page has no OCR text to translate")

        target = ctx.settings.target_language
        result = ctx.require_inference().translate(
            source_text, ctx.settings.language, target, previous
        )
        if not result.text:
            raise ScanPipelineError("Translation returned no text")

        page.translation = ctx.text_result(result, target)
        page.updated_at = utcnow()
        ctx.store.save_page(page)
        return result


class SummarizeHandler(StepHandler):
    step = StepName.SUMMARIZE
    mode = JobMode.SEQUENTIAL
    output_field = "summary"

    def select(self, store: MemoryDocumentStore, book_id: str) -> list[Page]:
        return store.pages_missing(book_id, "summary", requires="translation")

    def process(self, page: Page, previous: str | None, ctx: HandlerContext) -> InferenceResult | None:
        text = page.text("translation")
        if not text:
            raise ScanPipelineError("Page has no translation to summarize")

        result = ctx.require_inference().summarize(text, previous)
        page.summary = ctx.text_result(result, ctx.settings.target_language)
        page.updated_at = utcnow()
        ctx.store.save_page(page)
        return result


def default_handlers() -> dict[StepName, StepHandler]:
    handlers = [SplitCheckHandler(), OcrHandler(), TranslateHandler(), SummarizeHandler()]
    return {handler.step: handler for handler in handlers}


def refresh_book_counts(store: MemoryDocumentStore, book_id: str) -> None:
    """Recompute a book's aggregate counters from its pages."""
    book = store.get_book(book_id)
    book.pages_count = len(store.list_pages(book_id))
    book.pages_ocr = store.count_with(book_id, "ocr")
    book.pages_translated = store.count_with(book_id, "translation")
    book.updated_at = utcnow()
    store.save_book(book)


class JobProcessor:
    """Creates jobs for chunked steps and advances them one chunk at a time.

    Spend is capped per job: each job carries its own ceiling (``budget_usd``
    unless create_job is given one) and its spend so far. A ``governor``
    passed in is shared by every job instead, for callers whose whole
    session has one limit.

    Usage:
        processor = JobProcessor(store, inference, images=source)
        job = processor.create_job(book_id, StepName.OCR, settings)
        while not processor.process_chunk(job).done:
            pass
    """

    def __init__(
        self,
        store: MemoryDocumentStore,
        inference: InferenceClient | None = None,
        images: ImageSource | None = None,
        detector: SplitDetector | None = None,
        governor: CostGovernor | None = None,
        settings: JobSettings | None = None,
        handlers: dict[StepName, StepHandler] | None = None,
        budget_usd: float | None = None,
    ) -> None:
        if budget_usd is not None and budget_usd < 0:
            raise ValueError(f"budget_usd must be >= 0, got {budget_usd}")

        self.store = store
        self.inference = inference
        self.images = images
        self.detector = detector or SplitDetector()
        self.governor = governor
        self.settings = settings or JobSettings()
        self.handlers = handlers or default_handlers()
        self.budget_usd = budget_usd

    def handles(self, step: StepName) -> bool:
        return step in self.handlers

    def create_job(
        self,
        book_id: str,
        step: StepName,
        settings: PipelineSettings,
        mode: JobMode | None = None,
        limit: int | None = None,
        config: dict[str, Any] | None = None,
        budget_usd: float | None = None,
    ) -> Job | None:
        """Freeze the pages a step has to process into a new job.

        Args:
            book_id: Book to process
            step: Chunked step
            settings: Pipeline settings (model, languages) for the job
            mode: Override the handler's default mode
            limit: Process at most this many pages
            config: Extra job configuration passed to handlers
            budget_usd: Spend ceiling for this job; defaults to the processor's

        Returns:
            The saved job, or None when no page needs the step
        """
        handler = self.handlers[step]
        pages = handler.select(self.store, book_id)
        if limit is not None:
            pages = pages[:limit]
        if not pages:
            logger.info(f"No pages need {step.value} for book {book_id}")
            return None

        job = Job(
            id=new_id(),
            book_id=book_id,
            step=step,
            mode=mode or handler.mode,
            page_ids=[page.id for page in pages],
            config={"settings": settings.to_dict(), **(config or {})},
            budget_usd=budget_usd if budget_usd is not None else self.budget_usd,
        )
        self.store.save_job(job)
        logger.info(f"Created {job.mode.value} job {job.id} for {step.value}: {job.total} pages")
        return job

    def process_chunk(self, job: Job, cancel: CancelToken | None = None) -> ChunkResult:
        """Process the next chunk of a job.

        Per-page errors are recorded against the page and never abort the
        chunk. The job, with its advanced cursor and spend, is saved before
        returning.

        Args:
            job: Job to advance
            cancel: Checked between items and batches

        Returns:
            ChunkResult with this chunk's deltas
        """
        if job.done:
            return ChunkResult(done=True, budget_exhausted=job.budget_exhausted)
        if job.paused:
            return ChunkResult(paused=True)

        handler = self.handlers[job.step]
        ctx = HandlerContext(
            store=self.store,
            images=self.images,
            inference=self.inference,
            detector=self.detector,
            settings=PipelineSettings.from_dict(job.config.get("settings") or {}),
            job_config=job.config,
        )
        cancel = cancel or CancelToken()
        governor = self._governor_for(job)

        if job.mode == JobMode.BATCH:
            result = self._run_batches(job, handler, ctx, governor, cancel)
        else:
            result = self._run_sequential(job, handler, ctx, governor, cancel)

        if job.cursor >= job.total or result.budget_exhausted:
            job.done = True
            job.completed_at = utcnow()
        job.budget_exhausted = job.budget_exhausted or result.budget_exhausted
        job.spent_usd += result.spent_usd
        job.updated_at = utcnow()
        self.store.save_job(job)

        refresh_book_counts(self.store, job.book_id)

        result.done = job.done
        logger.info(
            f"Job {job.id} ({job.step.value}): {job.cursor}/{job.total} attempted, "
            f"+{result.processed_delta} ok, +{result.failed_delta} failed, ${job.spent_usd:.4f} spent"
        )
        return result

    def _governor_for(self, job: Job) -> CostGovernor | None:
        """The shared governor, or a fresh one holding the job's own ceiling and spend."""
        if self.governor is not None:
            return self.governor
        if job.budget_usd is None:
            return None
        return CostGovernor(job.budget_usd, spent_usd=job.spent_usd)

    def _charge(self, handler: StepHandler, governor: CostGovernor | None, estimate: float) -> bool:
        """Ask the governor before a paid call. True when the call may proceed."""
        if governor is None or not handler.paid:
            return True
        return governor.charge(estimate).allowed

    def _run_item(
        self,
        page_id: str,
        previous: str | None,
        handler: StepHandler,
        ctx: HandlerContext,
        governor: CostGovernor | None,
        estimate: float,
    ) -> ItemOutcome:
        try:
            page = self.store.get_page(page_id)
            result = handler.process(page, previous, ctx)
        except NotFound:
            logger.error(f"Page {page_id} no longer exists")
            outcome = ItemOutcome(page_id, success=False, error_message="Page not found")
        except Exception as e:
            logger.error(f"{handler.step.value} failed for page {page_id}: {e}")
            outcome = ItemOutcome(page_id, success=False, error_message=str(e))
        else:
            outcome = ItemOutcome(
                page_id,
                success=True,
                output=page.text(handler.output_field),
                cost_usd=result.cost_usd if result is not None else 0.0,
            )

        if governor is not None and handler.paid:
            governor.settle(estimate, outcome.cost_usd)
        return outcome

    def _apply(self, job: Job, outcome: ItemOutcome, result: ChunkResult) -> None:
        job.cursor += 1
        result.spent_usd += outcome.cost_usd
        if outcome.success:
            job.processed += 1
            job.completed_ids.append(outcome.page_id)
            job.errors.pop(outcome.page_id, None)
            result.processed_delta += 1
            result.completed_ids.append(outcome.page_id)
        else:
            job.failed += 1
            job.failed_ids.append(outcome.page_id)
            job.errors[outcome.page_id] = outcome.error_message or "Unknown error"
            result.failed_delta += 1
            result.failed_ids.append(outcome.page_id)

    def _run_batches(
        self,
        job: Job,
        handler: StepHandler,
        ctx: HandlerContext,
        governor: CostGovernor | None,
        cancel: CancelToken,
    ) -> ChunkResult:
        result = ChunkResult()
        chunk = job.remaining[: self.settings.batch_chunk_size]
        batch_size = self.settings.batch_size
        # Reserve at least the dearest call seen so far
        estimate = self.settings.estimated_cost_usd

        with ThreadPoolExecutor(max_workers=batch_size) as executor:
            for offset in range(0, len(chunk), batch_size):
                if cancel.cancelled:
                    result.cancelled = True
                    break

                admitted = []
                for page_id in chunk[offset:offset + batch_size]:
                    if not self._charge(handler, governor, estimate):
                        result.budget_exhausted = True
                        break
                    admitted.append(page_id)

                futures = [
                    executor.submit(self._run_item, page_id, None, handler, ctx, governor, estimate)
                    for page_id in admitted
                ]
                for future in futures:
                    outcome = future.result()
                    self._apply(job, outcome, result)
                    estimate = max(estimate, outcome.cost_usd)

                if result.budget_exhausted:
                    break

        return result

    def _run_sequential(
        self,
        job: Job,
        handler: StepHandler,
        ctx: HandlerContext,
        governor: CostGovernor | None,
        cancel: CancelToken,
    ) -> ChunkResult:
        result = ChunkResult()
        chunk = job.remaining[: self.settings.sequential_chunk_size]
        estimate = self.settings.estimated_cost_usd

        previous: str | None = None
        if chunk:
            try:
                previous = handler.previous_output(self.store, self.store.get_page(chunk[0]))
            except NotFound:
                previous = None

        for index, page_id in enumerate(chunk):
            if cancel.cancelled:
                result.cancelled = True
                break

            if not self._charge(handler, governor, estimate):
                result.budget_exhausted = True
                break

            outcome = self._run_item(page_id, previous, handler, ctx, governor, estimate)
            self._apply(job, outcome, result)
            estimate = max(estimate, outcome.cost_usd)
            # A failed page passes its predecessor's output on
            if outcome.success:
                previous = outcome.output

            is_last = index == len(chunk) - 1
            if not is_last and self.settings.item_delay > 0 and cancel.wait(self.settings.item_delay):
                result.cancelled = True
                break

        return result
