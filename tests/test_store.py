"""Tests for the document stores."""

import json

import pytest

from scanpipeline.errors import NotFound
from scanpipeline.models import (
    Book,
    Contribution,
    Crop,
    Job,
    JobMode,
    Page,
    PipelineSettings,
    PipelineState,
    PipelineStatus,
    StepName,
    StepStatus,
    TextResult,
)
from scanpipeline.store import JsonDocumentStore, MemoryDocumentStore


class TestMemoryDocumentStore:
    """Tests for the in-memory store."""

    def test_missing_records_raise(self):
        store = MemoryDocumentStore()
        with pytest.raises(NotFound):
            store.get_book("nope")
        with pytest.raises(NotFound):
            store.get_page("nope")
        with pytest.raises(NotFound):
            store.get_job("nope")
        assert store.find_book("nope") is None

    def test_pages_need_a_book(self):
        with pytest.raises(NotFound):
            MemoryDocumentStore().save_page(Page(id="p1", book_id="ghost", page_number=1, photo="x"))

    def test_page_before(self, store):
        store.save_pages([
            Page(id=f"p{n}", book_id="book-1", page_number=n, photo="x") for n in (1, 4, 7)
        ])
        assert store.page_before(store.get_page("p7")).id == "p4"
        assert store.page_before(store.get_page("p1")) is None

    def test_pages_missing_with_requirement(self, store):
        store.save_pages([
            Page(id="a", book_id="book-1", page_number=1, photo="x", ocr=TextResult(data="one")),
            Page(id="b", book_id="book-1", page_number=2, photo="x"),
        ])
        assert [p.id for p in store.pages_missing("book-1", "ocr")] == ["b"]
        assert [p.id for p in store.pages_missing("book-1", "translation", requires="ocr")] == ["a"]
        assert store.count_with("book-1", "ocr") == 1

    def test_unknown_field_rejected(self, store):
        with pytest.raises(ValueError):
            store.pages_missing("book-1", "photo")

    def test_max_page_number_empty_book(self, store):
        assert store.max_page_number("book-1") == 0


class TestJsonDocumentStore:
    """Tests for the JSON file store."""

    def test_round_trip_through_disk(self, tmp_path):
        """Everything written is read back by a fresh store."""
        store = JsonDocumentStore(tmp_path)
        book = Book(id="b1", title="Hortus", language="Latin")
        pipeline = PipelineState(status=PipelineStatus.RUNNING, config=PipelineSettings(license="CC-BY-4.0"))
        pipeline.steps[StepName.SPLIT_CHECK].status = StepStatus.COMPLETED
        book.pipeline = pipeline
        store.save_book(book)
        store.save_pages([
            Page(
                id="p1", book_id="b1", page_number=1, photo="left.jpg", side="left",
                crop=Crop(0, 480), split_detection={"is_spread": True},
                ocr=TextResult(data="Incipit", model="m", input_tokens=10, output_tokens=5),
            ),
            Page(id="p2", book_id="b1", page_number=2, photo="right.jpg", side="right", split_from="p1"),
        ])
        job = Job(id="j1", book_id="b1", step=StepName.OCR, mode=JobMode.BATCH,
                  page_ids=["p1", "p2"], cursor=1, processed=1, completed_ids=["p1"])
        store.save_job(job)
        store.add_contribution(Contribution(
            id="c1", book_id="b1", contributor="ana", process_type="ocr",
            pages_processed=1, total_tokens=15, spent_usd=0.01,
        ))

        reloaded = JsonDocumentStore(tmp_path)

        loaded = reloaded.get_book("b1")
        assert loaded.pipeline.status == PipelineStatus.RUNNING
        assert loaded.pipeline.steps[StepName.SPLIT_CHECK].status == StepStatus.COMPLETED
        assert loaded.pipeline.config.license == "CC-BY-4.0"

        page = reloaded.get_page("p1")
        assert page.crop == Crop(0, 480)
        assert page.ocr.data == "Incipit"
        assert page.ocr.input_tokens == 10
        assert reloaded.get_page("p2").split_from == "p1"

        loaded_job = reloaded.get_job("j1")
        assert loaded_job.cursor == 1
        assert loaded_job.remaining == ["p2"]
        assert reloaded.list_contributions("b1")[0].contributor == "ana"

    def test_layout(self, tmp_path):
        store = JsonDocumentStore(tmp_path)
        store.save_book(Book(id="b1", title="Hortus"))
        store.save_page(Page(id="p1", book_id="b1", page_number=1, photo="x"))

        pages = json.loads((tmp_path / "books" / "b1" / "pages.json").read_text())
        assert [p["id"] for p in pages] == ["p1"]
        assert (tmp_path / "books" / "b1" / "book.json").exists()

    def test_delete_job_removes_file(self, tmp_path):
        store = JsonDocumentStore(tmp_path)
        store.save_book(Book(id="b1", title="Hortus"))
        store.save_job(Job(id="j1", book_id="b1", step=StepName.OCR, mode=JobMode.BATCH, page_ids=[]))
        assert (tmp_path / "jobs" / "j1.json").exists()

        store.delete_job("j1")

        assert not (tmp_path / "jobs" / "j1.json").exists()
        assert JsonDocumentStore(tmp_path).find_job("j1") is None

    def test_no_temp_files_left(self, tmp_path):
        store = JsonDocumentStore(tmp_path)
        store.save_book(Book(id="b1", title="Hortus"))
        assert not list(tmp_path.rglob("*.tmp"))
