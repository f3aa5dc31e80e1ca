"""Tests for the HTTP API."""

import pytest
from fastapi.testclient import TestClient

from conftest import FakeImageSource, add_pages
from scanpipeline.config import JobSettings, LibraryConfig
from scanpipeline.server import create_app
from scanpipeline.services import build_services


@pytest.fixture
def images(page_images, spread_bytes) -> FakeImageSource:
    page_images.images["http://photos.test/spread.png"] = spread_bytes
    return page_images


@pytest.fixture
def client(tmp_path, store, storage, images, inference) -> TestClient:
    config = LibraryConfig(tmp_path, jobs=JobSettings(item_delay=0))
    services = build_services(config, store=store, storage=storage, images=images, inference=inference)
    return TestClient(create_app(services=services))


class TestBooks:
    """Tests for book and page endpoints."""

    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "ok", "books": 1}

    def test_create_book(self, client):
        response = client.post("/books", json={"id": "b2", "title": "Physica"})
        assert response.status_code == 201
        assert response.json()["language"] == "Latin"

        duplicate = client.post("/books", json={"id": "b2", "title": "Physica"})
        assert duplicate.status_code == 409

    def test_missing_book(self, client):
        assert client.get("/books/ghost").status_code == 404

    def test_ingest_urls(self, client):
        """A spread URL becomes two pages; an unknown URL is reported as skipped."""
        response = client.post(
            "/books/book-1/pages",
            json={"urls": ["http://photos.test/spread.png", "http://photos.test/gone.png"]},
        )

        assert response.status_code == 200
        report = response.json()
        assert report["pages_created"] == 2
        assert report["spreads"] == 1
        assert report["skipped"][0]["source"] == "http://photos.test/gone.png"

        pages = client.get("/books/book-1/pages").json()["pages"]
        assert [p["side"] for p in pages] == ["left", "right"]

    def test_ingest_requires_urls(self, client):
        assert client.post("/books/book-1/pages", json={"urls": []}).status_code == 422


class TestPipeline:
    """Tests for pipeline control and job processing."""

    def test_full_run_over_http(self, client, store):
        add_pages(store, 3)
        assert client.post("/books/book-1/pipeline", json={"action": "start"}).json()["status"] == "running"

        for _ in range(30):
            outcome = client.post("/books/book-1/pipeline/advance").json()
            if outcome["status"] == "completed":
                break
            if outcome["job_id"]:
                while True:
                    chunk = client.post(f"/jobs/{outcome['job_id']}/process").json()
                    if chunk["done"]:
                        assert chunk["step"]["status"] == "step_completed"
                        break

        state = client.get("/books/book-1/pipeline").json()
        assert state["status"] == "completed"
        assert state["steps"]["ocr"]["progress"]["completed"] == 3
        assert client.get("/books/book-1").json()["editions"][0]["version"] == "1.0"

    def test_invalid_transition(self, client):
        response = client.post("/books/book-1/pipeline", json={"action": "resume"})
        assert response.status_code == 400
        assert "Cannot resume" in response.json()["detail"]

    def test_unknown_action(self, client):
        response = client.post("/books/book-1/pipeline", json={"action": "explode"})
        assert response.status_code == 400

    def test_start_uses_requested_license(self, client):
        state = client.post(
            "/books/book-1/pipeline", json={"action": "start", "license": "CC-BY-4.0"}
        ).json()
        assert state["config"]["license"] == "CC-BY-4.0"

    def test_job_not_found(self, client):
        assert client.get("/jobs/nope").status_code == 404
        assert client.post("/jobs/nope/process").status_code == 404

    def test_read_job(self, client, store):
        add_pages(store, 12)
        client.post("/books/book-1/pipeline", json={"action": "start"})
        client.post("/books/book-1/pipeline/advance")
        job_id = client.post("/books/book-1/pipeline/advance").json()["job_id"]

        chunk = client.post(f"/jobs/{job_id}/process").json()
        assert chunk["processed_delta"] == 10
        assert chunk["done"] is False
        assert client.get(f"/jobs/{job_id}").json()["cursor"] == 10

    def test_contribute_rejects_unknown_type(self, client):
        response = client.post(
            "/books/book-1/contribute",
            json={"api_key": "k", "limit_usd": 1.0, "process_type": "summarize"},
        )
        assert response.status_code == 400


class TestSplitAnalyze:
    """Tests for the stateless split endpoint."""

    def test_spread(self, client, spread_bytes):
        response = client.post("/split/analyze", content=spread_bytes)
        assert response.status_code == 200
        assert response.json()["is_spread"] is True

    def test_empty_body(self, client):
        assert client.post("/split/analyze", content=b"").status_code == 400

    def test_not_an_image(self, client):
        assert client.post("/split/analyze", content=b"garbage").status_code == 422
