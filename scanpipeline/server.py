"""
HTTP API for ingestion, pipeline control and job processing.

Long work is never done inside one request: clients call the advance and
process endpoints repeatedly, each doing one decision or one chunk.
"""

import logging

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from .config import LibraryConfig
from .contribute import ContributionSession
from .errors import ImageDecodeError, InvalidTransition, NotFound, PipelineError
from .inference import ChatCompletionsClient
from .ingest import IngestItem
from .models import Book, PipelineSettings
from .services import Services, build_services

logger = logging.getLogger(__name__)


class CreateBookRequest(BaseModel):
    id: str
    title: str
    language: str = "Latin"


class IngestRequest(BaseModel):
    urls: list[str] = Field(min_length=1)


class PipelineActionRequest(BaseModel):
    action: str
    model: str | None = None
    language: str | None = None
    license: str | None = None


class ContributeRequest(BaseModel):
    api_key: str
    limit_usd: float = Field(gt=0)
    process_type: str = "ocr"
    contributor: str = "Anonymous"
    model: str | None = None


def create_app(config: LibraryConfig | None = None, services: Services | None = None) -> FastAPI:
    """Build the API app around a library.

    Args:
        config: Library configuration (from the environment when omitted)
        services: Prebuilt services, mainly for tests

    Returns:
        FastAPI application
    """
    services = services or build_services(config or LibraryConfig.from_env())
    store = services.store
    machine = services.machine

    app = FastAPI(title="Scan Pipeline API")
    app.state.services = services

    # CORS for local dev
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    def get_book(book_id: str) -> Book:
        try:
            return store.get_book(book_id)
        except NotFound as e:
            raise HTTPException(status_code=404, detail=str(e)) from e

    @app.get("/health")
    def health():
        return {"status": "ok", "books": len(store.list_books())}

    @app.post("/books", status_code=201)
    def create_book(request: CreateBookRequest):
        if store.find_book(request.id) is not None:
            raise HTTPException(status_code=409, detail=f"Book already exists: {request.id}")
        book = Book(id=request.id, title=request.title, language=request.language)
        store.save_book(book)
        return book.to_dict()

    @app.get("/books/{book_id}")
    def read_book(book_id: str):
        return get_book(book_id).to_dict()

    @app.get("/books/{book_id}/pages")
    def list_pages(book_id: str):
        get_book(book_id)
        return {"pages": [page.to_dict() for page in store.list_pages(book_id)]}

    @app.post("/books/{book_id}/pages")
    def ingest_pages(book_id: str, request: IngestRequest):
        get_book(book_id)
        items = [IngestItem(source=url) for url in request.urls]
        return services.ingestor.ingest(book_id, items).to_dict()

    @app.get("/books/{book_id}/pipeline")
    def read_pipeline(book_id: str):
        get_book(book_id)
        return machine.state(book_id).to_dict()

    @app.post("/books/{book_id}/pipeline")
    def pipeline_action(book_id: str, request: PipelineActionRequest):
        book = get_book(book_id)
        try:
            if request.action == "start":
                defaults = services.pipeline_settings()
                settings = PipelineSettings(
                    model=request.model or defaults.model,
                    language=request.language or book.language,
                    target_language=defaults.target_language,
                    license=request.license or defaults.license,
                )
                state = machine.start(book_id, settings)
            elif request.action == "pause":
                state = machine.pause(book_id)
            elif request.action == "resume":
                state = machine.resume(book_id)
            elif request.action == "reset":
                state = machine.reset(book_id)
            else:
                raise HTTPException(status_code=400, detail=f"Invalid action: {request.action}")
        except InvalidTransition as e:
            raise HTTPException(status_code=400, detail=str(e)) from e

        return state.to_dict()

    @app.post("/books/{book_id}/pipeline/advance")
    def advance_pipeline(book_id: str):
        get_book(book_id)
        try:
            outcome = machine.advance(book_id)
        except PipelineError as e:
            raise HTTPException(status_code=409, detail=str(e)) from e
        return {**outcome.to_dict(), "pipeline": machine.state(book_id).to_dict()}

    @app.get("/jobs/{job_id}")
    def read_job(job_id: str):
        try:
            return store.get_job(job_id).to_dict()
        except NotFound as e:
            raise HTTPException(status_code=404, detail=str(e)) from e

    @app.post("/jobs/{job_id}/process")
    def process_job(job_id: str):
        try:
            job = store.get_job(job_id)
        except NotFound as e:
            raise HTTPException(status_code=404, detail=str(e)) from e

        result = services.processor.process_chunk(job)
        machine.record_progress(job)

        step_outcome = None
        if result.done:
            try:
                step_outcome = machine.finish_step(job).to_dict()
            except InvalidTransition as e:
                # Job no longer belongs to a running step (e.g. after a reset)
                logger.warning(str(e))

        return {
            **result.to_dict(),
            "job_id": job.id,
            "cursor": job.cursor,
            "total": job.total,
            "step": step_outcome,
        }

    @app.post("/books/{book_id}/contribute")
    def contribute(book_id: str, request: ContributeRequest):
        get_book(book_id)
        if request.process_type not in ("ocr", "translate"):
            raise HTTPException(status_code=400, detail=f"Invalid process type: {request.process_type}")

        config = services.config
        with ChatCompletionsClient(
            config.llm_api_url, request.model or config.model, api_key=request.api_key
        ) as client:
            session = ContributionSession(
                store,
                client,
                services.images,
                ceiling_usd=request.limit_usd,
                contributor=request.contributor,
                settings=services.pipeline_settings(),
                job_settings=config.jobs,
            )
            result = session.run(book_id, process_type=request.process_type)
        return result.to_dict()

    @app.post("/split/analyze")
    async def analyze_split(request: Request):
        data = await request.body()
        if not data:
            raise HTTPException(status_code=400, detail="Request body must contain an image")
        try:
            analysis = services.detector.analyze_bytes(data)
        except ImageDecodeError as e:
            raise HTTPException(status_code=422, detail=str(e)) from e
        return analysis.to_dict()

    return app


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(create_app(), host="0.0.0.0", port=8000)
