"""
Photo ingestion with automatic two-page spread splitting.

Each photo is stored as-is, classified, and turned into one page or, for a
spread, two half-pages cut at the gutter. Page numbers always continue from
the book's highest page number, two for a spread and one otherwise.
"""

import logging
import uuid
from dataclasses import dataclass, field
from enum import Enum
from pathlib import PurePosixPath

from PIL import Image

from .config import IngestSettings
from .errors import ImageDecodeError, ImageSkipped, ScanPipelineError
from .governor import CostGovernor
from .imaging import (
    POSITION_SCALE,
    crop_span,
    decode_image,
    encode_jpeg,
    guess_content_type,
    make_thumbnail,
    resize_to_width,
)
from .inference import InferenceClient, SpreadVerdict
from .models import Crop, Page, new_id, utcnow
from .region import to_grayscale
from .split_detector import Confidence, SplitAnalysis, SplitDetector
from .storage import ImageSource, ObjectStorage
from .store import MemoryDocumentStore

logger = logging.getLogger(__name__)


class SplitMethod(str, Enum):
    HEURISTIC = "heuristic"
    VISION = "vision"
    CASCADE = "cascade"


@dataclass
class IngestItem:
    """One photo to ingest: a source reference, raw bytes, or both."""

    source: str | None = None
    data: bytes | None = None
    filename: str | None = None
    content_type: str | None = None

    def __post_init__(self) -> None:
        if self.source is None and self.data is None:
            raise ValueError("IngestItem needs a source or data")

    @property
    def label(self) -> str:
        return self.source or self.filename or "<upload>"


@dataclass
class IngestReport:
    """Outcome of ingesting a batch of photos."""

    book_id: str
    pages: list[Page] = field(default_factory=list)
    skipped: list[tuple[str, str]] = field(default_factory=list)
    spreads: int = 0
    split_fallbacks: int = 0

    @property
    def pages_created(self) -> int:
        return len(self.pages)

    def to_dict(self) -> dict:
        return {
            "book_id": self.book_id,
            "pages_created": self.pages_created,
            "spreads": self.spreads,
            "split_fallbacks": self.split_fallbacks,
            "skipped": [{"source": source, "reason": reason} for source, reason in self.skipped],
            "page_ids": [page.id for page in self.pages],
        }


def analysis_from_verdict(verdict: SpreadVerdict, fallback: SplitAnalysis) -> SplitAnalysis:
    """Turn a vision model's verdict into a SplitAnalysis."""
    return SplitAnalysis(
        is_spread=verdict.is_spread,
        confidence=Confidence(verdict.confidence),
        cut_percent=verdict.split_position / POSITION_SCALE * 100,
        split_position=verdict.split_position,
        aspect_ratio=fallback.aspect_ratio,
        region=None,
        method="vision",
        reasoning=verdict.reasoning,
    )


class SplitIngestor:
    """Stores photos and creates pages, splitting spreads in two.

    Usage:
        ingestor = SplitIngestor(store, storage, images)
        report = ingestor.ingest(book_id, [IngestItem(source="https://...")])
    """

    def __init__(
        self,
        store: MemoryDocumentStore,
        storage: ObjectStorage,
        images: ImageSource | None = None,
        detector: SplitDetector | None = None,
        classifier: InferenceClient | None = None,
        governor: CostGovernor | None = None,
        settings: IngestSettings | None = None,
        vision_cost_usd: float = 0.001,
        budget_usd: float | None = None,
    ) -> None:
        self.store = store
        self.storage = storage
        self.images = images
        self.detector = detector or SplitDetector()
        self.classifier = classifier
        self.governor = governor
        self.settings = settings or IngestSettings()
        self.method = SplitMethod(self.settings.split_method)
        self.vision_cost_usd = vision_cost_usd
        self.budget_usd = budget_usd
        self._dearest_vision_call = 0.0

    def ingest(self, book_id: str, items: list[IngestItem]) -> IngestReport:
        """Ingest photos into a book in the given order.

        Per-item failures (unreachable source, oversized or undecodable
        image, storage errors) are recorded in the report and never stop
        the batch. Vision calls are capped by ``budget_usd`` per call to
        this method, unless a shared governor was given.

        Args:
            book_id: Existing book
            items: Photos in reading order

        Returns:
            IngestReport with the created pages
        """
        book = self.store.get_book(book_id)
        report = IngestReport(book_id=book_id)
        next_number = self.store.max_page_number(book_id) + 1
        governor = self.governor
        if governor is None and self.budget_usd is not None:
            governor = CostGovernor(self.budget_usd)

        try:
            for item in items:
                try:
                    pages, was_spread, fell_back = self._ingest_one(book_id, item, next_number, governor)
                except (ImageSkipped, ImageDecodeError) as e:
                    logger.warning(f"Skipping {item.label}: {e}")
                    report.skipped.append((item.label, str(e)))
                    continue
                except (OSError, ValueError, ScanPipelineError) as e:
                    logger.error(f"Failed to ingest {item.label}: {e}")
                    report.skipped.append((item.label, str(e)))
                    continue

                self.store.save_pages(pages)
                report.pages.extend(pages)
                report.spreads += int(was_spread)
                report.split_fallbacks += int(fell_back)
                next_number += len(pages)
        finally:
            book.pages_count = len(self.store.list_pages(book_id))
            book.updated_at = utcnow()
            self.store.save_book(book)

        logger.info(
            f"Ingested {len(items) - len(report.skipped)}/{len(items)} photos into {book_id}: "
            f"{report.pages_created} pages, {report.spreads} spreads split"
        )
        return report

    def _read(self, item: IngestItem) -> tuple[bytes, str]:
        if item.data is not None:
            data = item.data
            if len(data) > self.settings.max_image_bytes:
                raise ImageSkipped(item.label, f"{len(data)} bytes exceeds limit")
            return data, item.content_type or guess_content_type(data)

        if self.images is None:
            raise ImageSkipped(item.label, "no image source configured")
        fetched = self.images.fetch(item.source)
        return fetched.data, item.content_type or fetched.content_type

    def _ingest_one(
        self, book_id: str, item: IngestItem, page_number: int, governor: CostGovernor | None
    ) -> tuple[list[Page], bool, bool]:
        data, content_type = self._read(item)
        img = decode_image(data)

        try:
            analysis = self.classify(img, data, content_type, governor)

            stem = PurePosixPath(item.filename or item.source or "photo").stem or "photo"
            stem = f"{stem}-{uuid.uuid4().hex[:8]}"
            suffix = {"image/png": ".png", "image/webp": ".webp"}.get(content_type, ".jpg")
            original = self.storage.put(f"uploads/{book_id}/{stem}{suffix}", data, content_type)

            if analysis.is_spread:
                try:
                    return self._split_pages(book_id, img, original, stem, analysis, page_number), True, False
                except (OSError, ValueError, ScanPipelineError) as e:
                    logger.error(f"Splitting {item.label} failed, keeping it as one page: {e}")
                    return [self._single_page(book_id, img, original, stem, analysis, page_number)], False, True

            return [self._single_page(book_id, img, original, stem, analysis, page_number)], False, False
        finally:
            img.close()

    def classify(
        self,
        img: Image.Image,
        data: bytes,
        content_type: str,
        governor: CostGovernor | None = None,
    ) -> SplitAnalysis:
        """Classify a decoded photo with the configured split method.

        Vision calls are charged to ``governor``, or to the shared governor
        when none is given. Each call reserves at least the cost of the
        dearest vision call seen so far.
        """
        heuristic = self.detector.analyze(to_grayscale(img, self.detector.analyzer.analysis_width))

        if self.method == SplitMethod.HEURISTIC:
            return heuristic
        if self.method == SplitMethod.CASCADE and heuristic.confidence != Confidence.LOW:
            return heuristic
        if self.classifier is None:
            return heuristic

        governor = governor or self.governor
        estimate = max(self.vision_cost_usd, self._dearest_vision_call)
        if governor is not None and not governor.charge(estimate).allowed:
            logger.info("Vision budget exhausted, using heuristic split detection")
            return heuristic

        try:
            verdict = self.classifier.classify_spread(data, content_type)
        except Exception as e:
            if governor is not None:
                governor.settle(estimate, 0.0)
            logger.warning(f"Vision split detection failed, using heuristic result: {e}")
            return heuristic

        self._dearest_vision_call = max(self._dearest_vision_call, verdict.cost_usd)
        if governor is not None:
            governor.settle(estimate, verdict.cost_usd)
        return analysis_from_verdict(verdict, heuristic)

    def _thumbnail(self, book_id: str, img: Image.Image, name: str) -> str:
        thumb = make_thumbnail(img, self.settings.thumbnail_width, self.settings.thumbnail_quality)
        return self.storage.put(f"uploads/{book_id}/thumbnails/{name}.jpg", thumb, "image/jpeg")

    def _single_page(
        self,
        book_id: str,
        img: Image.Image,
        original: str,
        stem: str,
        analysis: SplitAnalysis,
        page_number: int,
    ) -> Page:
        return Page(
            id=new_id(),
            book_id=book_id,
            page_number=page_number,
            photo=original,
            photo_original=original,
            thumbnail=self._thumbnail(book_id, img, stem),
            split_detection=analysis.to_dict(),
        )

    def _split_pages(
        self,
        book_id: str,
        img: Image.Image,
        original: str,
        stem: str,
        analysis: SplitAnalysis,
        page_number: int,
    ) -> list[Page]:
        position = analysis.split_position
        crops = [("left", Crop(0, position)), ("right", Crop(position, POSITION_SCALE))]

        # Encode both halves before storing anything, so a failure leaves no partial split
        encoded = []
        for side, crop in crops:
            half = crop_span(img, crop.x_start, crop.x_end)
            encoded.append((
                side,
                crop,
                encode_jpeg(resize_to_width(half, self.settings.crop_max_width), self.settings.crop_quality),
                make_thumbnail(half, self.settings.thumbnail_width, self.settings.thumbnail_quality),
            ))

        pages: list[Page] = []
        for offset, (side, crop, half_bytes, thumb_bytes) in enumerate(encoded):
            name = f"{stem}-{side}"
            cropped = self.storage.put(f"cropped/{book_id}/{name}.jpg", half_bytes, "image/jpeg")
            thumbnail = self.storage.put(
                f"uploads/{book_id}/thumbnails/{name}.jpg", thumb_bytes, "image/jpeg"
            )
            pages.append(
                Page(
                    id=new_id(),
                    book_id=book_id,
                    page_number=page_number + offset,
                    photo=cropped,
                    photo_original=original,
                    thumbnail=thumbnail,
                    cropped_photo=cropped,
                    crop=crop,
                    side=side,
                    split_from=pages[0].id if side == "right" else None,
                    split_detection=analysis.to_dict(),
                )
            )
        return pages

    def resync_page_count(self, book_id: str) -> int:
        """Set the book's page count from its stored pages."""
        book = self.store.get_book(book_id)
        book.pages_count = len(self.store.list_pages(book_id))
        book.updated_at = utcnow()
        self.store.save_book(book)
        return book.pages_count

    def renumber_pages(self, book_id: str) -> int:
        """Compact page numbers to 1..N, keeping their order.

        Returns:
            Number of pages whose number changed
        """
        changed = []
        for number, page in enumerate(self.store.list_pages(book_id), start=1):
            if page.page_number != number:
                page.page_number = number
                page.updated_at = utcnow()
                changed.append(page)

        if changed:
            self.store.save_pages(changed)
            logger.info(f"Renumbered {len(changed)} pages of {book_id}")
        self.resync_page_count(book_id)
        return len(changed)
