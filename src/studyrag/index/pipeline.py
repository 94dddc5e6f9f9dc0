"""Document ingestion pipeline: extract, chunk, embed, persist."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any, Callable, TypeVar

from studyrag.config import AppConfig
from studyrag.embedding.batcher import EmbeddingBatcher
from studyrag.embedding.providers import EmbeddingProvider, create_provider
from studyrag.errors import EmbeddingProviderError, StudyRagError
from studyrag.index.storage import SQLiteVectorStore
from studyrag.ingestion.pdf_loader import extract_text_from_path
from studyrag.jobs import JobTracker, new_job_id
from studyrag.models import EmbeddedChunk, IngestionResult
from studyrag.utils.files import cleanup_temp_file
from studyrag.utils.text import chunk_pages

LOGGER = logging.getLogger(__name__)

ProviderFactory = Callable[[str | None, AppConfig], EmbeddingProvider]

T = TypeVar("T")


async def _in_thread(
    func: Callable[..., T], *args: Any, undo: Callable[[T], Any] | None = None, **kwargs: Any
) -> T:
    """Run a blocking store call in a worker thread.

    If the caller is cancelled, the call still runs to completion before the
    cancellation propagates, and ``undo`` is applied to its result.
    """
    task = asyncio.ensure_future(asyncio.to_thread(func, *args, **kwargs))
    try:
        return await asyncio.shield(task)
    except asyncio.CancelledError:
        await asyncio.wait({task})
        if undo is not None and task.exception() is None:
            undo(task.result())
        raise


class IngestionPipeline:
    """Coordinates document ingestion and persistence.

    Progress is published through the job tracker: 10% once extraction starts,
    10-90% while embedding, 100% when the document is stored. Nothing is
    persisted until every chunk has an embedding.
    """

    def __init__(
        self,
        store: SQLiteVectorStore,
        tracker: JobTracker,
        config: AppConfig | None = None,
        *,
        provider_factory: ProviderFactory | None = None,
    ) -> None:
        self.store = store
        self.tracker = tracker
        self.config = config or AppConfig()
        self.provider_factory = provider_factory or create_provider

    async def ingest(
        self,
        upload_path: Path,
        originalname: str,
        provider_name: str | None,
        job_id: str,
        *,
        delete_upload: bool = True,
    ) -> IngestionResult:
        """Ingest one PDF and return the stored document's identity.

        The upload file is removed on every exit path when ``delete_upload`` is set.

        Raises:
            ValidationError: unsupported provider.
            ExtractionError: unreadable PDF.
            EmbeddingProviderError: embedding failed or the job timed out.
            StorageError: the document could not be written.
        """
        provider: EmbeddingProvider | None = None
        try:
            provider = self.provider_factory(provider_name, self.config)
            return await asyncio.wait_for(
                self._run(Path(upload_path), originalname, provider, job_id),
                timeout=self.config.job_timeout_seconds,
            )
        except asyncio.TimeoutError as exc:
            LOGGER.error("Ingestion job %s timed out", job_id)
            error = EmbeddingProviderError(
                f"Ingestion timed out after {self.config.job_timeout_seconds}s"
            )
            self.tracker.fail(job_id, error.public_message)
            raise error from exc
        except StudyRagError as exc:
            LOGGER.error("Ingestion job %s failed at %s: %s", job_id, exc.stage, exc.message)
            self.tracker.fail(job_id, exc.public_message)
            raise
        except Exception:
            LOGGER.exception("Ingestion job %s failed unexpectedly", job_id)
            self.tracker.fail(job_id, StudyRagError.public_message)
            raise
        finally:
            if delete_upload:
                cleanup_temp_file(Path(upload_path))
            if provider is not None:
                await provider.aclose()

    async def ingest_path(
        self, path: Path, provider_name: str | None = None, job_id: str | None = None
    ) -> IngestionResult:
        """Ingest a PDF already on disk, leaving the file in place."""
        job_id = job_id or new_job_id()
        self.tracker.create(job_id)
        return await self.ingest(path, Path(path).name, provider_name, job_id, delete_upload=False)

    async def _run(
        self, upload_path: Path, originalname: str, provider: EmbeddingProvider, job_id: str
    ) -> IngestionResult:
        config = self.config
        reporter = self.tracker.reporter(job_id)

        reporter.update(status="Extracting text...", progress=10)
        extracted = await asyncio.to_thread(extract_text_from_path, upload_path, originalname)

        chunks = chunk_pages(extracted.pages, chunk_size=config.chunk_size, overlap=config.overlap)
        LOGGER.info("Created %d chunks for %s", len(chunks), originalname)

        batcher = EmbeddingBatcher(
            provider,
            max_chars=config.max_embedding_chars,
            concurrency=config.concurrency_limit,
            reporter=reporter,
            progress_log_interval=config.progress_log_interval,
        )
        embeddings = await batcher.embed_chunks(chunks)

        reporter.update(status="Saving document...")
        doc_id = await _in_thread(
            self.store.save_document,
            extracted.title,
            originalname,
            [EmbeddedChunk(chunk=c, embedding=e) for c, e in zip(chunks, embeddings)],
            provider=provider.name,
            undo=self.store.delete_document,
        )

        # Document-level embedding over the (truncated) full text.
        try:
            if len(extracted.full_text) > config.max_embedding_chars:
                LOGGER.warning("Document text truncated for embedding")
            doc_embedding = await batcher.embed_text(extracted.full_text)
            await _in_thread(
                self.store.update_document_embedding, doc_id, doc_embedding, extracted.full_text
            )
        except BaseException:
            LOGGER.error("Rolling back document %s after document-level embedding failed", doc_id)
            self.store.delete_document(doc_id)
            raise

        reporter.update(status="Upload complete!", progress=100)
        return IngestionResult(
            id=doc_id, title=extracted.title, originalname=originalname, upload_id=job_id
        )
