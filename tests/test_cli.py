"""Tests for the command-line interface."""

import json

import pytest

from conftest import make_photo
from scanpipeline.cli import main
from scanpipeline.store import JsonDocumentStore


@pytest.fixture
def photo_files(tmp_path, spread_bytes, single_page_bytes):
    spread = tmp_path / "spread.png"
    single = tmp_path / "single.png"
    spread.write_bytes(spread_bytes)
    single.write_bytes(single_page_bytes)
    return spread, single


class TestAnalyze:
    """Tests for the analyze command."""

    def test_reports_each_image(self, photo_files, capsys):
        spread, single = photo_files
        assert main(["analyze", str(spread), str(single)]) == 0

        out = capsys.readouterr().out
        assert "spread.png: spread (high confidence" in out
        assert "single.png: single page" in out
        assert "landscape orientation" in out

    def test_json_output(self, photo_files, capsys):
        spread, _ = photo_files
        main(["analyze", "--json", str(spread)])

        record = json.loads(capsys.readouterr().out.strip())
        assert record["is_spread"] is True
        assert record["image"] == str(spread)
        assert set(record["estimates"]) >= {"simple_minimum", "smoothed_minimum", "valley_depth"}

    def test_unreadable_image_fails(self, tmp_path, capsys):
        bad = tmp_path / "bad.jpg"
        bad.write_bytes(b"nope")
        assert main(["analyze", str(bad)]) == 1
        assert "bad.jpg" in capsys.readouterr().err


class TestLibraryCommands:
    """Tests for commands that work on a library directory."""

    def test_ingest_creates_book_and_pages(self, tmp_path, photo_files, capsys):
        library = tmp_path / "library"
        spread, single = photo_files

        code = main([
            "--library", str(library), "ingest", "herbal", str(spread), str(single),
            "--title", "Herbal", "--split-method", "heuristic",
        ])

        assert code == 0
        assert "Created 3 pages from 2 photos (1 spreads split)" in capsys.readouterr().out

        store = JsonDocumentStore(library / "documents")
        assert store.get_book("herbal").title == "Herbal"
        assert [p.page_number for p in store.list_pages("herbal")] == [1, 2, 3]

    def test_ingest_reports_skipped(self, tmp_path, capsys):
        library = tmp_path / "library"
        good = tmp_path / "good.png"
        good.write_bytes(make_photo(700, 1000))

        main(["--library", str(library), "ingest", "b", str(good), str(tmp_path / "gone.png"),
              "--split-method", "heuristic"])

        out = capsys.readouterr().out
        assert "Created 1 pages from 1 photos" in out
        assert "skipped" in out

    def test_pipeline_lifecycle(self, tmp_path, photo_files, capsys):
        library = tmp_path / "library"
        _, single = photo_files
        main(["--library", str(library), "ingest", "b", str(single), "--split-method", "heuristic"])

        assert main(["--library", str(library), "pipeline", "start", "b"]) == 0
        assert main(["--library", str(library), "pipeline", "pause", "b"]) == 0
        assert main(["--library", str(library), "pipeline", "status", "b"]) == 0

        out = capsys.readouterr().out
        assert "b: paused" in out
        assert "split_check" in out

    def test_invalid_transition_exits_nonzero(self, tmp_path, photo_files, capsys):
        library = tmp_path / "library"
        _, single = photo_files
        main(["--library", str(library), "ingest", "b", str(single), "--split-method", "heuristic"])

        assert main(["--library", str(library), "pipeline", "resume", "b"]) == 1
        assert "Cannot resume pipeline" in capsys.readouterr().err

    def test_unknown_book(self, tmp_path, capsys):
        assert main(["--library", str(tmp_path), "pipeline", "status", "ghost"]) == 1
        assert "Book not found" in capsys.readouterr().err

    def test_resync(self, tmp_path, photo_files, capsys):
        library = tmp_path / "library"
        _, single = photo_files
        main(["--library", str(library), "ingest", "b", str(single), str(single),
              "--split-method", "heuristic"])

        assert main(["--library", str(library), "resync", "b", "--renumber"]) == 0
        assert "b has 2 pages" in capsys.readouterr().out
