"""
Wiring of stores, clients and processors for one scan library.
"""

import logging
from dataclasses import dataclass

from .config import LibraryConfig
from .inference import ChatCompletionsClient, InferenceClient
from .ingest import SplitIngestor
from .jobs import JobProcessor
from .models import PipelineSettings
from .pipeline import PipelineStateMachine
from .split_detector import SplitDetector
from .storage import HttpImageSource, ImageSource, LocalObjectStorage, ObjectStorage
from .store import JsonDocumentStore, MemoryDocumentStore

logger = logging.getLogger(__name__)


@dataclass
class Services:
    config: LibraryConfig
    store: MemoryDocumentStore
    storage: ObjectStorage
    images: ImageSource
    inference: InferenceClient
    detector: SplitDetector
    processor: JobProcessor
    machine: PipelineStateMachine
    ingestor: SplitIngestor

    def pipeline_settings(self) -> PipelineSettings:
        return PipelineSettings(
            model=self.config.model,
            language=self.config.language,
            target_language=self.config.target_language,
            license=self.config.license,
        )


def build_services(
    config: LibraryConfig,
    store: MemoryDocumentStore | None = None,
    storage: ObjectStorage | None = None,
    images: ImageSource | None = None,
    inference: InferenceClient | None = None,
) -> Services:
    """Assemble the collaborators for a library.

    Anything passed in is used as-is; the rest is built from config.
    """
    store = store if store is not None else JsonDocumentStore(config.documents_dir)
    storage = storage or LocalObjectStorage(config.storage_dir)
    images = images or HttpImageSource(
        max_bytes=config.ingest.max_image_bytes, timeout=config.ingest.fetch_timeout
    )
    inference = inference or ChatCompletionsClient(
        config.llm_api_url, config.model, api_key=config.llm_api_key
    )
    detector = SplitDetector(config.detector, config.analyzer)

    processor = JobProcessor(
        store,
        inference=inference,
        images=images,
        detector=detector,
        settings=config.jobs,
        budget_usd=config.budget_usd,
    )
    ingestor = SplitIngestor(
        store,
        storage,
        images=images,
        detector=detector,
        classifier=inference,
        settings=config.ingest,
        budget_usd=config.budget_usd,
    )

    logger.debug(f"Services ready for library {config.library_dir}")
    return Services(
        config=config,
        store=store,
        storage=storage,
        images=images,
        inference=inference,
        detector=detector,
        processor=processor,
        machine=PipelineStateMachine(store, processor),
        ingestor=ingestor,
    )
