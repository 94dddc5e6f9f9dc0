"""FastAPI application exposing ingestion, retrieval and chat."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator, Callable, Dict, List, Optional

from fastapi import FastAPI, File, Form, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from studyrag.config import AppConfig
from studyrag.embedding.batcher import EmbeddingBatcher
from studyrag.embedding.providers import SUPPORTED_PROVIDERS, create_provider
from studyrag.errors import StudyRagError, ValidationError
from studyrag.generation.chat import build_rag_prompt, create_chat_provider
from studyrag.index.pipeline import IngestionPipeline
from studyrag.index.search import Retriever
from studyrag.index.storage import SQLiteVectorStore
from studyrag.index.usage import UsageLog
from studyrag.jobs import JobTracker, job_tracker, new_job_id
from studyrag.models import RetrievedChunk
from studyrag.utils.files import cleanup_temp_file, is_pdf_filename, make_upload_path

LOGGER = logging.getLogger(__name__)


class ChatPayload(BaseModel):
    message: str = ""
    history: Optional[List[Dict[str, str]]] = None
    useRag: bool = False
    maxChunks: Optional[int] = Field(default=None, ge=1, le=50)
    model: Optional[str] = None
    embeddingProvider: Optional[str] = None


def _ensure_parent(path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)


def _error(status_code: int, message: str, **extra: Any) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message, **extra})


def _open_store(config: AppConfig) -> SQLiteVectorStore:
    db_path = config.resolve_db_path(Path.cwd())
    _ensure_parent(db_path)
    return SQLiteVectorStore(db_path)


def create_app(
    config: AppConfig | None = None,
    *,
    tracker: JobTracker | None = None,
    provider_factory: Callable = create_provider,
    chat_factory: Callable = create_chat_provider,
) -> FastAPI:
    """Build the API with its process-wide collaborators."""
    config = config or AppConfig.from_env()
    tracker = tracker if tracker is not None else job_tracker
    tracker.ttl_seconds = config.job_ttl_seconds
    usage_log = UsageLog(config.usage_log_path)

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        logging.basicConfig(level=logging.INFO, format="[%(levelname)s] %(message)s")
        yield

    app = FastAPI(title="StudyRAG", version="0.1.0", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.state.config = config
    app.state.tracker = tracker
    app.state.usage_log = usage_log

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.post("/documents/upload")
    async def upload_document(
        file: Optional[UploadFile] = File(None),
        embeddingProvider: Optional[str] = Form(None),
        uploadId: Optional[str] = Form(None),
    ) -> Any:
        upload_id = (uploadId or "").strip() or new_job_id()
        if tracker.is_active(upload_id):
            # The running job keeps its entry; only this request is refused.
            LOGGER.warning("Rejected upload %s: id already in progress", upload_id)
            return _error(400, "Upload id already in progress", uploadId=upload_id)
        tracker.create(upload_id, status="Starting upload...")

        try:
            if file is None or not file.filename:
                raise ValidationError("No file uploaded")
            if not is_pdf_filename(file.filename):
                raise ValidationError("Only PDF files are supported")
            provider_name = (embeddingProvider or config.embedding_provider).strip().lower()
            if provider_name not in SUPPORTED_PROVIDERS:
                raise ValidationError(f"Unsupported embedding provider: {provider_name}")
            data = await file.read()
            if not data:
                raise ValidationError("Uploaded file is empty")
            if len(data) > config.max_upload_bytes:
                raise ValidationError("File size must be less than 50MB")
        except ValidationError as exc:
            LOGGER.warning("Rejected upload %s: %s", upload_id, exc.message)
            tracker.fail(upload_id, exc.public_message)
            return _error(exc.http_status, exc.public_message, uploadId=upload_id)

        upload_path: Path | None = None
        store: SQLiteVectorStore | None = None
        try:
            upload_path = make_upload_path(config.upload_dir, file.filename)
            upload_path.write_bytes(data)
            store = await asyncio.to_thread(_open_store, config)
            pipeline = IngestionPipeline(store, tracker, config, provider_factory=provider_factory)
            result = await pipeline.ingest(upload_path, file.filename, provider_name, upload_id)
        except StudyRagError as exc:
            tracker.fail(upload_id, exc.public_message)
            return _error(exc.http_status, exc.public_message, uploadId=upload_id)
        except Exception:
            LOGGER.exception("Upload %s failed", upload_id)
            tracker.fail(upload_id, StudyRagError.public_message)
            return _error(500, StudyRagError.public_message, uploadId=upload_id)
        finally:
            if upload_path is not None:
                cleanup_temp_file(upload_path)
            if store is not None:
                store.close()
        return result.to_payload()

    @app.get("/documents/upload-status/{upload_id}")
    async def upload_status(upload_id: str) -> dict[str, Any]:
        return tracker.get(upload_id)

    @app.get("/documents")
    def list_documents() -> Any:
        try:
            store = _open_store(config)
        except StudyRagError as exc:
            LOGGER.error("Failed to list documents: %s", exc.message)
            return _error(500, "Failed to list documents")
        try:
            return {"documents": store.list_documents(), "stats": store.get_stats()}
        finally:
            store.close()

    @app.delete("/documents/{doc_id}")
    def delete_document(doc_id: int) -> Any:
        try:
            store = _open_store(config)
            try:
                deleted = store.delete_document(doc_id)
            finally:
                store.close()
        except StudyRagError as exc:
            LOGGER.error("Failed to delete document %s: %s", doc_id, exc.message)
            return _error(500, "Failed to delete document")
        if not deleted:
            return _error(404, f"Document with ID {doc_id} not found")
        return {"success": True, "deleted_id": doc_id}

    @app.get("/documents/{doc_id}/usage")
    def document_usage(doc_id: int) -> Any:
        try:
            return [entry.to_payload() for entry in usage_log.entries_for(doc_id)]
        except OSError as exc:
            LOGGER.error("Failed to read usage log: %s", exc)
            return _error(500, "Failed to read usage log")

    async def _retrieve(payload: ChatPayload) -> List[RetrievedChunk]:
        provider = provider_factory(payload.embeddingProvider, config)
        store = await asyncio.to_thread(_open_store, config)
        try:
            retriever = Retriever(
                EmbeddingBatcher(provider, max_chars=config.max_embedding_chars),
                store,
                threshold=config.similarity_threshold,
                fallback=config.fallback_chunks,
            )
            return await retriever.retrieve(
                payload.message, k=payload.maxChunks or config.default_max_chunks
            )
        finally:
            store.close()
            await provider.aclose()

    @app.post("/chat")
    async def chat(payload: ChatPayload) -> Any:
        message = payload.message.strip()
        if not message:
            return _error(400, "Message is required and must be a string")

        try:
            chat_provider = chat_factory(payload.model, config)
        except ValidationError as exc:
            return _error(exc.http_status, exc.public_message)

        chunks: List[RetrievedChunk] = []
        if payload.useRag:
            try:
                chunks = await _retrieve(payload)
            except ValidationError as exc:
                return _error(exc.http_status, exc.public_message)
            except StudyRagError as exc:
                # Answer without context rather than fail the turn.
                LOGGER.error("Retrieval failed, answering without context: %s", exc.message)

        prompt = build_rag_prompt(message, chunks) if chunks else message
        try:
            response = await chat_provider.chat(prompt, payload.history)
        except StudyRagError as exc:
            LOGGER.error("Chat generation failed: %s", exc.message)
            return _error(exc.http_status, exc.public_message)

        body: Dict[str, Any] = {"response": response}
        if chunks:
            try:
                await asyncio.to_thread(usage_log.record, chunks, response)
            except OSError as exc:
                LOGGER.error("Failed to write usage log: %s", exc)
            body["retrievedChunks"] = [chunk.to_payload() for chunk in chunks]
        return body

    return app


app = create_app()
