"""Shared fixtures: synthetic photos and fake collaborators."""

import io

import numpy as np
import pytest
from PIL import Image

from scanpipeline.errors import ImageSkipped
from scanpipeline.imaging import guess_content_type
from scanpipeline.inference import InferenceResult, SpreadVerdict
from scanpipeline.models import Book, Page
from scanpipeline.storage import FetchedImage, LocalObjectStorage
from scanpipeline.store import MemoryDocumentStore


def make_photo(
    width: int,
    height: int,
    background: int = 220,
    valley_depth: float = 0.0,
    valley_center: float = 0.5,
    valley_sigma: float = 0.05,
    border: int = 0,
    fmt: str = "PNG",
) -> bytes:
    """Encode a synthetic grayscale photo.

    The brightness of each column is ``background`` minus a Gaussian dip of
    ``valley_depth`` centered at ``valley_center`` (fraction of the width).
    ``border`` columns on each side are black.
    """
    x = np.arange(width) / width
    columns = background - valley_depth * np.exp(-((x - valley_center) ** 2) / (2 * valley_sigma ** 2))
    if border:
        columns[:border] = 0
        columns[width - border:] = 0
    pixels = np.tile(np.clip(columns, 0, 255).astype(np.uint8), (height, 1))

    buffer = io.BytesIO()
    Image.fromarray(pixels).convert("RGB").save(buffer, fmt)
    return buffer.getvalue()


@pytest.fixture
def spread_bytes() -> bytes:
    """Landscape photo (1.3) with a clear dark gutter in the middle."""
    return make_photo(1300, 1000, valley_depth=60)


@pytest.fixture
def single_page_bytes() -> bytes:
    """Portrait photo (0.7) with uniform brightness."""
    return make_photo(700, 1000)


class FakeImageSource:
    """Serves image bytes from a dict keyed by reference."""

    def __init__(self, images: dict[str, bytes] | None = None) -> None:
        self.images = dict(images or {})
        self.fetched: list[str] = []

    def fetch(self, ref: str) -> FetchedImage:
        self.fetched.append(ref)
        if ref not in self.images:
            raise ImageSkipped(ref, "HTTP 404")
        data = self.images[ref]
        return FetchedImage(data=data, content_type=guess_content_type(data), source=ref)


class FakeInference:
    """Deterministic stand-in for a model endpoint.

    OCR returns "text of <image bytes>"; translation and summary wrap
    their input. Inputs listed in ``fail_on`` raise RuntimeError.
    """

    def __init__(self, fail_on: set | None = None, cost: float = 0.001) -> None:
        self.fail_on = set(fail_on or ())
        self.cost = cost
        self.calls: list[tuple[str, object, str | None]] = []
        self.spread_verdict: SpreadVerdict | None = None

    def _result(self, text: str) -> InferenceResult:
        return InferenceResult(
            text=text, input_tokens=100, output_tokens=50, cost_usd=self.cost, model="fake-model"
        )

    def ocr(self, image, mime_type, language, previous=None):
        self.calls.append(("ocr", image, previous))
        if image in self.fail_on:
            raise RuntimeError(f"OCR failed for {image!r}")
        return self._result(f"text of {image.decode(errors='replace')}")

    def translate(self, text, source_language, target_language, previous=None):
        self.calls.append(("translate", text, previous))
        if text in self.fail_on:
            raise RuntimeError(f"Translation failed for {text!r}")
        return self._result(f"translated {text}")

    def summarize(self, text, previous=None):
        self.calls.append(("summarize", text, previous))
        if text in self.fail_on:
            raise RuntimeError(f"Summary failed for {text!r}")
        return self._result(f"summary of {text}")

    def classify_spread(self, image, mime_type):
        self.calls.append(("classify_spread", image, None))
        if self.spread_verdict is None:
            raise RuntimeError("No vision verdict configured")
        return self.spread_verdict


@pytest.fixture
def store() -> MemoryDocumentStore:
    store = MemoryDocumentStore()
    store.save_book(Book(id="book-1", title="De re metallica", language="Latin"))
    return store


@pytest.fixture
def storage(tmp_path) -> LocalObjectStorage:
    return LocalObjectStorage(tmp_path / "objects")


@pytest.fixture
def inference() -> FakeInference:
    return FakeInference()


def add_pages(store: MemoryDocumentStore, count: int, book_id: str = "book-1", **fields) -> list[Page]:
    """Add pages numbered 1..count whose photo reference is ``page-<n>``.

    Pages are marked as already split-checked unless fields say otherwise.
    """
    fields.setdefault("split_detection", {"is_spread": False})
    pages = [
        Page(id=f"p{n}", book_id=book_id, page_number=n, photo=f"page-{n}", **fields)
        for n in range(1, count + 1)
    ]
    store.save_pages(pages)
    return pages


@pytest.fixture
def page_images() -> FakeImageSource:
    """Image source where ``page-<n>`` resolves to bytes ``b"page-<n>"``."""
    return FakeImageSource({f"page-{n}": f"page-{n}".encode() for n in range(1, 201)})
