"""
Per-book pipeline orchestration.

The state machine owns the pipeline status and the ordered step statuses
stored on the book. It never runs long work itself: ``advance`` starts the
next step, either by running it inline (atomic steps) or by creating a job
for the caller to drive through JobProcessor.process_chunk.
"""

import logging
import sys
from dataclasses import dataclass
from enum import Enum
from typing import Any

from .errors import InvalidTransition, PipelineError, StepFailed
from .jobs import CancelToken, JobProcessor
from .models import (
    STEP_ORDER,
    Book,
    Edition,
    Job,
    PipelineSettings,
    PipelineState,
    PipelineStatus,
    StepName,
    StepStatus,
    new_id,
    utcnow,
)
from .progress import ProgressReporter
from .store import MemoryDocumentStore

logger = logging.getLogger(__name__)

BUDGET_EXHAUSTED = "budget_exhausted"


class AdvanceStatus(str, Enum):
    IDLE = "idle"
    COMPLETED = "completed"
    STEP_COMPLETED = "step_completed"
    STEP_FAILED = "step_failed"
    JOB_CREATED = "job_created"
    JOB_ACTIVE = "job_active"


@dataclass
class AdvanceOutcome:
    """What a call to advance() did."""

    status: AdvanceStatus
    step: StepName | None = None
    job: Job | None = None
    message: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "step": self.step.value if self.step else None,
            "job_id": self.job.id if self.job else None,
            "message": self.message,
        }


class EditionStep:
    """Publishes a draft edition of the book's translated pages."""

    step = StepName.EDITION

    def run(self, book: Book, store: MemoryDocumentStore, settings: PipelineSettings) -> dict[str, Any]:
        translated = store.count_with(book.id, "translation")
        if translated == 0:
            raise StepFailed("No translated pages to publish")

        edition = Edition(
            id=new_id(),
            version=f"1.{len(book.editions)}",
            license=settings.license,
            pages_count=translated,
        )
        book.editions.append(edition)
        book.current_edition_id = edition.id
        logger.info(f"Created edition {edition.version} of {book.id} with {translated} pages")
        return {"edition_id": edition.id, "version": edition.version, "pages_count": translated}


class PipelineStateMachine:
    """Drives a book through split_check, ocr, translate, summarize, edition.

    Usage:
        machine = PipelineStateMachine(store, processor)
        machine.start(book_id, PipelineSettings(language="Latin"))
        outcome = machine.advance(book_id)
    """

    def __init__(
        self,
        store: MemoryDocumentStore,
        processor: JobProcessor,
        atomic_steps: dict[StepName, Any] | None = None,
    ) -> None:
        self.store = store
        self.processor = processor
        self.atomic_steps = atomic_steps if atomic_steps is not None else {StepName.EDITION: EditionStep()}

        for step in STEP_ORDER:
            if step not in self.atomic_steps and not processor.handles(step):
                raise ValueError(f"No handler registered for step {step.value}")

    def state(self, book_id: str) -> PipelineState:
        """Current pipeline state; idle if the book has never been started."""
        return self.store.get_book(book_id).pipeline or PipelineState()

    def _save(self, book: Book, pipeline: PipelineState) -> PipelineState:
        book.pipeline = pipeline
        book.updated_at = utcnow()
        self.store.save_book(book)
        return pipeline

    def _active_job(self, pipeline: PipelineState) -> Job | None:
        step = pipeline.running_step()
        if step is None:
            return None
        job_id = pipeline.steps[step].job_id
        return self.store.find_job(job_id) if job_id else None

    def start(self, book_id: str, settings: PipelineSettings | None = None) -> PipelineState:
        """Start the pipeline from the first step.

        Raises:
            InvalidTransition: Unless the pipeline is idle
        """
        book = self.store.get_book(book_id)
        current = book.pipeline or PipelineState()
        if current.status != PipelineStatus.IDLE:
            raise InvalidTransition("start", current.status.value, "pipeline must be idle; reset it first")

        pipeline = PipelineState(
            status=PipelineStatus.RUNNING,
            config=settings or current.config,
            started_at=utcnow(),
        )
        logger.info(f"Pipeline started for {book_id}")
        return self._save(book, pipeline)

    def pause(self, book_id: str) -> PipelineState:
        """Pause a running pipeline. The running step keeps its cursor.

        Raises:
            InvalidTransition: Unless the pipeline is running
        """
        book = self.store.get_book(book_id)
        pipeline = book.pipeline or PipelineState()
        if pipeline.status != PipelineStatus.RUNNING:
            raise InvalidTransition("pause", pipeline.status.value, "pipeline is not running")

        job = self._active_job(pipeline)
        if job is not None:
            job.paused = True
            self.store.save_job(job)

        pipeline.status = PipelineStatus.PAUSED
        logger.info(f"Pipeline paused for {book_id}")
        return self._save(book, pipeline)

    def resume(self, book_id: str) -> PipelineState:
        """Resume a paused pipeline.

        Raises:
            InvalidTransition: Unless the pipeline is paused
        """
        book = self.store.get_book(book_id)
        pipeline = book.pipeline or PipelineState()
        if pipeline.status != PipelineStatus.PAUSED:
            raise InvalidTransition("resume", pipeline.status.value, "pipeline is not paused")

        job = self._active_job(pipeline)
        if job is not None:
            job.paused = False
            self.store.save_job(job)

        pipeline.status = PipelineStatus.RUNNING
        logger.info(f"Pipeline resumed for {book_id}")
        return self._save(book, pipeline)

    def reset(self, book_id: str) -> PipelineState:
        """Return the pipeline to idle from any status, dropping any active job.

        Page results already written are kept, so a rerun only does what is
        still missing.
        """
        book = self.store.get_book(book_id)
        previous = book.pipeline or PipelineState()

        for step_state in previous.steps.values():
            if step_state.job_id:
                self.store.delete_job(step_state.job_id)

        logger.info(f"Pipeline reset for {book_id}")
        return self._save(book, PipelineState(config=previous.config))

    def advance(self, book_id: str) -> AdvanceOutcome:
        """Move the pipeline forward by one decision.

        Returns:
            AdvanceOutcome describing whether a job is in progress, a step
            finished, or the pipeline reached a terminal status
        """
        book = self.store.get_book(book_id)
        pipeline = book.pipeline or PipelineState()

        if pipeline.status != PipelineStatus.RUNNING:
            return AdvanceOutcome(AdvanceStatus.IDLE, message=f"Pipeline is {pipeline.status.value}")

        running = pipeline.running_step()
        if running is not None:
            job_id = pipeline.steps[running].job_id
            job = self.store.find_job(job_id) if job_id else None
            if job is not None:
                if job.done:
                    return self.finish_step(job)
                return AdvanceOutcome(AdvanceStatus.JOB_ACTIVE, running, job, "Job in progress")
            # Running with no job left behind: run the step again
            logger.warning(f"Step {running.value} was running without a job; restarting it")
            return self._start_step(book, pipeline, running)

        step = pipeline.next_pending()
        if step is None:
            pipeline.status = PipelineStatus.COMPLETED
            pipeline.current_step = None
            pipeline.completed_at = utcnow()
            self._save(book, pipeline)
            logger.info(f"Pipeline completed for {book_id}")
            return AdvanceOutcome(AdvanceStatus.COMPLETED, message="All steps completed")

        return self._start_step(book, pipeline, step)

    def _start_step(self, book: Book, pipeline: PipelineState, step: StepName) -> AdvanceOutcome:
        for earlier in STEP_ORDER[: STEP_ORDER.index(step)]:
            if pipeline.steps[earlier].status != StepStatus.COMPLETED:
                raise PipelineError(
                    f"Cannot start {step.value}: {earlier.value} is {pipeline.steps[earlier].status.value}"
                )

        step_state = pipeline.steps[step]
        step_state.status = StepStatus.RUNNING
        step_state.started_at = utcnow()
        step_state.completed_at = None
        step_state.error = None
        pipeline.current_step = step
        logger.info(f"Step {step.value} started for {book.id}")

        if step in self.atomic_steps:
            try:
                result = self.atomic_steps[step].run(book, self.store, pipeline.config)
            except StepFailed as e:
                return self._fail(book, pipeline, step, str(e))
            step_state.result = result
            return self._complete(book, pipeline, step)

        job = self.processor.create_job(
            book.id, step, pipeline.config, budget_usd=self._remaining_budget(pipeline)
        )
        if job is None:
            step_state.result = {"message": "No pages needed this step"}
            return self._complete(book, pipeline, step)

        step_state.job_id = job.id
        step_state.progress.completed = 0
        step_state.progress.failed = 0
        step_state.progress.total = job.total
        self._save(book, pipeline)
        return AdvanceOutcome(AdvanceStatus.JOB_CREATED, step, job, f"{job.total} pages queued")

    def _remaining_budget(self, pipeline: PipelineState) -> float | None:
        """What is left of the run's spend ceiling for the next step."""
        if self.processor.budget_usd is None:
            return None
        return max(self.processor.budget_usd - pipeline.spent_usd, 0.0)

    def _complete(self, book: Book, pipeline: PipelineState, step: StepName) -> AdvanceOutcome:
        step_state = pipeline.steps[step]
        step_state.status = StepStatus.COMPLETED
        step_state.completed_at = utcnow()
        step_state.job_id = None
        pipeline.current_step = None
        self._save(book, pipeline)
        logger.info(f"Step {step.value} completed for {book.id}")
        return AdvanceOutcome(AdvanceStatus.STEP_COMPLETED, step, message=f"{step.value} completed")

    def _fail(
        self, book: Book, pipeline: PipelineState, step: StepName, error: str
    ) -> AdvanceOutcome:
        step_state = pipeline.steps[step]
        step_state.status = StepStatus.FAILED
        step_state.completed_at = utcnow()
        step_state.error = error
        step_state.job_id = None
        pipeline.status = PipelineStatus.FAILED
        pipeline.error = error
        pipeline.completed_at = utcnow()
        self._save(book, pipeline)
        logger.error(f"Step {step.value} failed for {book.id}: {error}")
        return AdvanceOutcome(AdvanceStatus.STEP_FAILED, step, message=error)

    def record_progress(self, job: Job) -> None:
        """Copy a job's counters onto its step."""
        book = self.store.get_book(job.book_id)
        pipeline = book.pipeline
        if pipeline is None or pipeline.steps[job.step].job_id != job.id:
            return

        progress = pipeline.steps[job.step].progress
        progress.completed = job.processed
        progress.failed = job.failed
        progress.total = job.total
        self._save(book, pipeline)

    def finish_step(self, job: Job) -> AdvanceOutcome:
        """Close the step a finished job belongs to.

        The step completes unless every page failed or the budget ran out.

        Raises:
            InvalidTransition: If the job is not the running step's job
            PipelineError: If the job still has pages to attempt
        """
        book = self.store.get_book(job.book_id)
        pipeline = book.pipeline or PipelineState()
        step_state = pipeline.steps[job.step]

        if step_state.status != StepStatus.RUNNING or step_state.job_id != job.id:
            raise InvalidTransition(
                "finish step for", pipeline.status.value, f"job {job.id} is not the active job"
            )
        if not job.done:
            raise PipelineError(f"Job {job.id} has {job.total - job.cursor} pages left")

        step_state.progress.completed = job.processed
        step_state.progress.failed = job.failed
        step_state.progress.total = job.total
        step_state.result = {
            "processed": job.processed,
            "failed": job.failed,
            "total": job.total,
            "spent_usd": round(job.spent_usd, 6),
        }
        pipeline.spent_usd += job.spent_usd
        self.store.delete_job(job.id)

        if job.budget_exhausted:
            return self._fail(book, pipeline, job.step, BUDGET_EXHAUSTED)
        if job.total > 0 and job.failed == job.total:
            return self._fail(book, pipeline, job.step, f"All {job.total} pages failed")
        return self._complete(book, pipeline, job.step)


class PipelineRunner:
    """Runs a book's pipeline to the end in this process.

    Usage:
        runner = PipelineRunner(machine, processor)
        state = runner.run(book_id)
    """

    def __init__(
        self,
        machine: PipelineStateMachine,
        processor: JobProcessor,
        show_progress: bool = True,
    ) -> None:
        self.machine = machine
        self.processor = processor
        self.show_progress = show_progress
        self._setup_logging()

    def _setup_logging(self) -> None:
        """Ensure logging is configured.

        Only sets up a basic config if no handlers are configured,
        allowing the CLI to control logging setup.
        """
        if not logging.root.handlers:
            logging.basicConfig(
                level=logging.INFO,
                format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
                datefmt="%H:%M:%S",
            )

    def run(self, book_id: str, cancel: CancelToken | None = None) -> PipelineState:
        """Advance and process until the pipeline stops running.

        Returns when the pipeline completes, fails, is paused, or the cancel
        token fires. Pausing or cancelling leaves the active job resumable.
        """
        cancel = cancel or CancelToken()

        while not cancel.cancelled:
            outcome = self.machine.advance(book_id)
            logger.debug(f"Advance: {outcome.status.value} {outcome.message}")

            if outcome.status in (AdvanceStatus.JOB_CREATED, AdvanceStatus.JOB_ACTIVE):
                self._drive(book_id, outcome.job, cancel)
            elif outcome.status != AdvanceStatus.STEP_COMPLETED:
                break

        return self.machine.state(book_id)

    def _drive(self, book_id: str, job: Job, cancel: CancelToken) -> None:
        """Process a job chunk by chunk until it is done or must stop."""
        if self.show_progress:
            sys.stderr.write(f"\n[{STEP_ORDER.index(job.step) + 1}/{len(STEP_ORDER)}] {job.step.value}\n")
            sys.stderr.flush()

            with ProgressReporter(
                job.total, desc=job.step.value, initial=job.cursor, initial_failed=job.failed
            ) as progress:
                self._process(book_id, job, cancel, progress)
        else:
            self._process(book_id, job, cancel, None)

    def _process(
        self, book_id: str, job: Job, cancel: CancelToken, progress: ProgressReporter | None
    ) -> None:
        while True:
            if self.machine.state(book_id).status != PipelineStatus.RUNNING:
                return

            result = self.processor.process_chunk(job, cancel)
            self.machine.record_progress(job)
            if progress:
                note = "budget exhausted" if result.budget_exhausted else None
                progress.advance(result.processed_delta, result.failed_delta, note)

            if result.done:
                self.machine.finish_step(job)
                return
            if result.paused or result.cancelled:
                return

