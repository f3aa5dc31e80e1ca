"""
Document store for books, pages, jobs and contributions.

MemoryDocumentStore keeps everything in dicts. JsonDocumentStore adds
persistence: one directory per book (book.json, pages.json) plus one file
per job, each written atomically.
"""

import json
import logging
import os
import tempfile
import threading
from pathlib import Path
from typing import Any

from .errors import NotFound
from .models import Book, Contribution, Job, Page

logger = logging.getLogger(__name__)

# Fields that can be selected on with pages_missing / count_with
PAGE_FIELDS = ("ocr", "translation", "summary", "split_detection")


def _check_field(field_name: str) -> None:
    if field_name not in PAGE_FIELDS:
        raise ValueError(f"Unknown page field: {field_name}. Valid: {PAGE_FIELDS}")


class MemoryDocumentStore:
    """In-process document store. All methods are thread-safe."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._books: dict[str, Book] = {}
        self._pages: dict[str, dict[str, Page]] = {}
        self._jobs: dict[str, Job] = {}
        self._contributions: list[Contribution] = []

    # Books

    def get_book(self, book_id: str) -> Book:
        with self._lock:
            try:
                return self._books[book_id]
            except KeyError:
                raise NotFound(f"Book not found: {book_id}") from None

    def find_book(self, book_id: str) -> Book | None:
        with self._lock:
            return self._books.get(book_id)

    def list_books(self) -> list[Book]:
        with self._lock:
            return sorted(self._books.values(), key=lambda b: b.created_at)

    def save_book(self, book: Book) -> None:
        with self._lock:
            self._books[book.id] = book
            self._pages.setdefault(book.id, {})
            self._persist_book(book.id)

    # Pages

    def get_page(self, page_id: str) -> Page:
        with self._lock:
            for pages in self._pages.values():
                if page_id in pages:
                    return pages[page_id]
        raise NotFound(f"Page not found: {page_id}")

    def list_pages(self, book_id: str) -> list[Page]:
        """Pages of a book in ascending page-number order."""
        with self._lock:
            return sorted(self._pages.get(book_id, {}).values(), key=lambda p: p.page_number)

    def save_page(self, page: Page) -> None:
        self.save_pages([page])

    def save_pages(self, pages: list[Page]) -> None:
        with self._lock:
            touched = set()
            for page in pages:
                if page.book_id not in self._books:
                    raise NotFound(f"Book not found: {page.book_id}")
                self._pages.setdefault(page.book_id, {})[page.id] = page
                touched.add(page.book_id)
            for book_id in touched:
                self._persist_pages(book_id)

    def max_page_number(self, book_id: str) -> int:
        with self._lock:
            pages = self._pages.get(book_id, {})
            return max((p.page_number for p in pages.values()), default=0)

    def page_before(self, page: Page) -> Page | None:
        """The page with the highest number below the given page's number."""
        earlier = [p for p in self.list_pages(page.book_id) if p.page_number < page.page_number]
        return earlier[-1] if earlier else None

    def pages_missing(
        self, book_id: str, field_name: str, requires: str | None = None
    ) -> list[Page]:
        """Pages without a result in field_name, in page-number order.

        Args:
            book_id: Book to search
            field_name: Field that must be missing
            requires: Field that must already be present, if any
        """
        _check_field(field_name)
        if requires:
            _check_field(requires)
        return [
            page
            for page in self.list_pages(book_id)
            if not page.has(field_name) and (requires is None or page.has(requires))
        ]

    def count_with(self, book_id: str, field_name: str) -> int:
        _check_field(field_name)
        return sum(1 for page in self.list_pages(book_id) if page.has(field_name))

    # Jobs

    def get_job(self, job_id: str) -> Job:
        with self._lock:
            try:
                return self._jobs[job_id]
            except KeyError:
                raise NotFound(f"Job not found: {job_id}") from None

    def find_job(self, job_id: str) -> Job | None:
        with self._lock:
            return self._jobs.get(job_id)

    def save_job(self, job: Job) -> None:
        with self._lock:
            self._jobs[job.id] = job
            self._persist_job(job)

    def delete_job(self, job_id: str) -> None:
        with self._lock:
            self._jobs.pop(job_id, None)
            self._remove_job(job_id)

    # Contributions

    def add_contribution(self, contribution: Contribution) -> None:
        with self._lock:
            self._contributions.append(contribution)
            self._persist_contributions()

    def list_contributions(self, book_id: str) -> list[Contribution]:
        with self._lock:
            return [c for c in self._contributions if c.book_id == book_id]

    # Persistence hooks, no-ops in memory

    def _persist_book(self, book_id: str) -> None:
        pass

    def _persist_pages(self, book_id: str) -> None:
        pass

    def _persist_job(self, job: Job) -> None:
        pass

    def _remove_job(self, job_id: str) -> None:
        pass

    def _persist_contributions(self) -> None:
        pass


def write_json_atomic(path: Path, payload: Any) -> None:
    """Write JSON to a temp file in the same directory, then replace."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(payload, f, ensure_ascii=False, indent=2)
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


class JsonDocumentStore(MemoryDocumentStore):
    """Document store persisted as JSON files below a root directory.

    Layout:
        books/<book_id>/book.json
        books/<book_id>/pages.json
        jobs/<job_id>.json
        contributions.json
    """

    def __init__(self, root: str | Path) -> None:
        super().__init__()
        self.root = Path(root)
        self._load()

    @property
    def books_dir(self) -> Path:
        return self.root / "books"

    @property
    def jobs_dir(self) -> Path:
        return self.root / "jobs"

    def _load(self) -> None:
        if self.books_dir.exists():
            for book_file in sorted(self.books_dir.glob("*/book.json")):
                book = Book.from_dict(json.loads(book_file.read_text(encoding="utf-8")))
                self._books[book.id] = book

                pages_file = book_file.parent / "pages.json"
                pages = []
                if pages_file.exists():
                    pages = json.loads(pages_file.read_text(encoding="utf-8"))
                self._pages[book.id] = {p["id"]: Page.from_dict(p) for p in pages}

        if self.jobs_dir.exists():
            for job_file in sorted(self.jobs_dir.glob("*.json")):
                job = Job.from_dict(json.loads(job_file.read_text(encoding="utf-8")))
                self._jobs[job.id] = job

        contributions_file = self.root / "contributions.json"
        if contributions_file.exists():
            data = json.loads(contributions_file.read_text(encoding="utf-8"))
            self._contributions = [Contribution.from_dict(item) for item in data]

        logger.debug(f"Loaded {len(self._books)} books and {len(self._jobs)} jobs from {self.root}")

    def _persist_book(self, book_id: str) -> None:
        write_json_atomic(self.books_dir / book_id / "book.json", self._books[book_id].to_dict())

    def _persist_pages(self, book_id: str) -> None:
        pages = self.list_pages(book_id)
        write_json_atomic(self.books_dir / book_id / "pages.json", [p.to_dict() for p in pages])

    def _persist_job(self, job: Job) -> None:
        write_json_atomic(self.jobs_dir / f"{job.id}.json", job.to_dict())

    def _remove_job(self, job_id: str) -> None:
        (self.jobs_dir / f"{job_id}.json").unlink(missing_ok=True)

    def _persist_contributions(self) -> None:
        write_json_atomic(
            self.root / "contributions.json", [c.to_dict() for c in self._contributions]
        )
