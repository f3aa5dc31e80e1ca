"""
Bring-your-own-key contribution sessions.

A contributor supplies their own inference client and a spend limit. The
session processes a book's missing OCR or translations in page order, with
previous-page context, until the pages run out or the limit is reached.
"""

import logging
from dataclasses import dataclass, field
from typing import Callable

from .config import JobSettings
from .governor import CostGovernor
from .inference import InferenceClient
from .jobs import CancelToken, ChunkResult, JobProcessor
from .models import Contribution, JobMode, PipelineSettings, StepName, new_id
from .split_detector import SplitDetector
from .storage import ImageSource
from .store import MemoryDocumentStore

logger = logging.getLogger(__name__)

MAX_PAGES_PER_SESSION = 100

PROCESS_TYPES = {"ocr": StepName.OCR, "translate": StepName.TRANSLATE}


@dataclass
class ContributionResult:
    """Outcome of one session.

    ``limit_reached`` marks a session stopped by the spend limit, which is a
    normal way for a session to end and not a failure.
    """

    book_id: str
    process_type: str
    pages_total: int = 0
    pages_completed: int = 0
    failed_page_ids: list[str] = field(default_factory=list)
    total_tokens: int = 0
    spent_usd: float = 0.0
    limit_reached: bool = False
    cancelled: bool = False

    @property
    def complete(self) -> bool:
        return not self.limit_reached and not self.cancelled

    def to_dict(self) -> dict:
        return {
            "book_id": self.book_id,
            "process_type": self.process_type,
            "pages_total": self.pages_total,
            "pages_completed": self.pages_completed,
            "failed_page_ids": self.failed_page_ids,
            "total_tokens": self.total_tokens,
            "spent_usd": round(self.spent_usd, 6),
            "limit_reached": self.limit_reached,
            "complete": self.complete,
        }


class ContributionSession:
    """Processes a book with a contributor's own inference client.

    Usage:
        session = ContributionSession(store, client, images, ceiling_usd=0.50)
        result = session.run(book_id, process_type="ocr")
    """

    def __init__(
        self,
        store: MemoryDocumentStore,
        inference: InferenceClient,
        images: ImageSource | None,
        ceiling_usd: float,
        contributor: str = "Anonymous",
        settings: PipelineSettings | None = None,
        job_settings: JobSettings | None = None,
        max_pages: int = MAX_PAGES_PER_SESSION,
    ) -> None:
        self.store = store
        self.governor = CostGovernor(ceiling_usd)
        self.contributor = contributor or "Anonymous"
        self.settings = settings or PipelineSettings()
        self.max_pages = max_pages
        self.processor = JobProcessor(
            store,
            inference=inference,
            images=images,
            detector=SplitDetector(),
            governor=self.governor,
            settings=job_settings or JobSettings(),
        )

    def run(
        self,
        book_id: str,
        process_type: str = "ocr",
        cancel: CancelToken | None = None,
        on_progress: Callable[[ChunkResult], None] | None = None,
    ) -> ContributionResult:
        """Process up to max_pages pages missing ``process_type`` output.

        Args:
            book_id: Book to contribute to
            process_type: 'ocr' or 'translate'
            cancel: Stops the session between pages
            on_progress: Called after every chunk

        Returns:
            ContributionResult
        """
        if process_type not in PROCESS_TYPES:
            raise ValueError(f"Invalid process type: {process_type}. Valid: {set(PROCESS_TYPES)}")

        book = self.store.get_book(book_id)
        settings = PipelineSettings(
            model=self.settings.model,
            language=book.language or self.settings.language,
            target_language=self.settings.target_language,
            license=self.settings.license,
        )
        result = ContributionResult(book_id=book_id, process_type=process_type)

        job = self.processor.create_job(
            book_id,
            PROCESS_TYPES[process_type],
            settings,
            mode=JobMode.SEQUENTIAL,
            limit=self.max_pages,
            config={"source": "contribution", "contributed_by": self.contributor},
        )
        if job is None:
            logger.info(f"Nothing to contribute for {book_id} ({process_type})")
            return result

        result.pages_total = job.total
        try:
            while True:
                chunk = self.processor.process_chunk(job, cancel)
                if on_progress:
                    on_progress(chunk)
                if chunk.budget_exhausted:
                    result.limit_reached = True
                if chunk.cancelled:
                    result.cancelled = True
                if chunk.done or chunk.cancelled:
                    break
        finally:
            self.store.delete_job(job.id)

        result.pages_completed = job.processed
        result.failed_page_ids = list(job.failed_ids)
        result.spent_usd = self.governor.actual_spent
        result.total_tokens = self._tokens_for(job.completed_ids, process_type)

        if result.pages_completed:
            self.store.add_contribution(
                Contribution(
                    id=new_id(),
                    book_id=book_id,
                    contributor=self.contributor,
                    process_type=process_type,
                    pages_processed=result.pages_completed,
                    total_tokens=result.total_tokens,
                    spent_usd=result.spent_usd,
                )
            )

        logger.info(
            f"Contribution by {self.contributor} to {book_id}: {result.pages_completed}/"
            f"{result.pages_total} pages, {result.total_tokens} tokens, ${result.spent_usd:.4f}"
            + (" (limit reached)" if result.limit_reached else "")
        )
        return result

    def _tokens_for(self, page_ids: list[str], process_type: str) -> int:
        field_name = "ocr" if process_type == "ocr" else "translation"
        total = 0
        for page_id in page_ids:
            text = getattr(self.store.get_page(page_id), field_name)
            if text is not None:
                total += text.input_tokens + text.output_tokens
        return total
