"""Tests for the ingestion pipeline."""

from __future__ import annotations

import asyncio
import time
from pathlib import Path
from typing import List
from unittest.mock import patch

import pytest
from conftest import FakeEmbeddingProvider

from studyrag.config import AppConfig
from studyrag.errors import (
    EmbeddingProviderError,
    ExtractionError,
    ValidationError,
)
from studyrag.index.pipeline import IngestionPipeline
from studyrag.index.storage import SQLiteVectorStore
from studyrag.jobs import JobTracker
from studyrag.models import ExtractedDocument

EXTRACT = "studyrag.index.pipeline.extract_text_from_path"


def _extracted(pages: List[str], title: str = "Lecture") -> ExtractedDocument:
    return ExtractedDocument(
        title=title, pages=pages, full_text="".join(p + " " for p in pages).strip()
    )


def _upload(tmp_path: Path, name: str = "upload.pdf") -> Path:
    path = tmp_path / name
    path.write_bytes(b"%PDF-1.4 placeholder")
    return path


def _pipeline(
    store: SQLiteVectorStore,
    tracker: JobTracker,
    provider: FakeEmbeddingProvider,
    config: AppConfig | None = None,
) -> IngestionPipeline:
    return IngestionPipeline(
        store,
        tracker,
        config or AppConfig(chunk_size=100, overlap=20),
        provider_factory=lambda name, cfg: provider,
    )


class TestIngest:
    """Test IngestionPipeline.ingest."""

    @pytest.mark.asyncio
    async def test_success(self, tmp_path: Path, temp_store: SQLiteVectorStore) -> None:
        tracker = JobTracker()
        tracker.create("job-1")
        provider = FakeEmbeddingProvider(batch_size=2)
        upload = _upload(tmp_path)
        pages = ["a" * 250, "b" * 90, "c" * 130]

        with patch(EXTRACT, return_value=_extracted(pages)) as mock_extract:
            result = await _pipeline(temp_store, tracker, provider).ingest(
                upload, "lecture.pdf", "fake", "job-1"
            )

        mock_extract.assert_called_once_with(upload, "lecture.pdf")
        assert result.title == "Lecture"
        assert result.originalname == "lecture.pdf"
        assert result.upload_id == "job-1"

        chunks = temp_store.load_chunks()
        assert [c.chunk_index for c in chunks] == list(range(len(chunks)))
        assert len(chunks) == 3 + 1 + 2
        assert all(c.document_id == result.id for c in chunks)

        doc = temp_store.get_document(result.id)
        assert doc.text.startswith("a" * 250)
        assert len(doc.embedding) == 4
        assert doc.provider == "fake"

        assert tracker.get("job-1") == {
            "status": "Upload complete!",
            "progress": 100,
            "chunk": 6,
            "totalChunks": 6,
        }
        assert not upload.exists()
        assert provider.closed

    @pytest.mark.asyncio
    async def test_three_short_pages(self, tmp_path: Path, temp_store: SQLiteVectorStore) -> None:
        """Pages shorter than one window become one chunk each."""
        tracker = JobTracker()
        tracker.create("job")
        pages = ["first page text", "second page text", "third page text"]

        with patch(EXTRACT, return_value=_extracted(pages)):
            await _pipeline(temp_store, tracker, FakeEmbeddingProvider()).ingest(
                _upload(tmp_path), "notes.pdf", None, "job"
            )

        chunks = temp_store.load_chunks()
        assert [(c.chunk_index, c.text) for c in chunks] == list(enumerate(pages))

    @pytest.mark.asyncio
    async def test_dimension_mismatch_persists_nothing(
        self, tmp_path: Path, temp_store: SQLiteVectorStore
    ) -> None:
        tracker = JobTracker()
        tracker.create("job")
        provider = FakeEmbeddingProvider(batch_size=1, bad_marker="ODD")
        upload = _upload(tmp_path)
        pages = ["normal text", "ODD one out", "more text"]

        with patch(EXTRACT, return_value=_extracted(pages)):
            with pytest.raises(EmbeddingProviderError):
                await _pipeline(temp_store, tracker, provider).ingest(
                    upload, "bad.pdf", "fake", "job"
                )

        assert temp_store.get_stats() == {"document_count": 0, "chunk_count": 0}
        job = tracker.get("job")
        assert job["status"] == "Error"
        assert job["error"] == "Failed to process document"
        assert not upload.exists()
        assert provider.closed

    @pytest.mark.asyncio
    async def test_extraction_error(self, tmp_path: Path, temp_store: SQLiteVectorStore) -> None:
        tracker = JobTracker()
        tracker.create("job")
        upload = _upload(tmp_path)

        with patch(EXTRACT, side_effect=ExtractionError("No extractable text in scan.pdf")):
            with pytest.raises(ExtractionError):
                await _pipeline(temp_store, tracker, FakeEmbeddingProvider()).ingest(
                    upload, "scan.pdf", "fake", "job"
                )

        assert tracker.get("job")["error"] == "Invalid or corrupted document"
        assert tracker.get("job")["progress"] == 10
        assert not upload.exists()

    @pytest.mark.asyncio
    async def test_unsupported_provider(self, tmp_path: Path, temp_store: SQLiteVectorStore) -> None:
        tracker = JobTracker()
        tracker.create("job")
        upload = _upload(tmp_path)
        pipeline = IngestionPipeline(temp_store, tracker, AppConfig())

        with pytest.raises(ValidationError):
            await pipeline.ingest(upload, "doc.pdf", "cohere", "job")

        assert tracker.get("job")["error"] == "Unsupported embedding provider: cohere"
        assert not upload.exists()

    @pytest.mark.asyncio
    async def test_document_embedding_failure_rolls_back(
        self, tmp_path: Path, temp_store: SQLiteVectorStore
    ) -> None:
        class ChunkOnlyProvider(FakeEmbeddingProvider):
            async def embed_one(self, text):
                raise EmbeddingProviderError("document embedding rejected")

        tracker = JobTracker()
        tracker.create("job")

        with patch(EXTRACT, return_value=_extracted(["some text"])):
            with pytest.raises(EmbeddingProviderError):
                await _pipeline(temp_store, tracker, ChunkOnlyProvider()).ingest(
                    _upload(tmp_path), "doc.pdf", "fake", "job"
                )

        assert temp_store.get_stats() == {"document_count": 0, "chunk_count": 0}
        assert tracker.get("job")["status"] == "Error"

    @pytest.mark.asyncio
    async def test_timeout(self, tmp_path: Path, temp_store: SQLiteVectorStore) -> None:
        tracker = JobTracker()
        tracker.create("job")
        config = AppConfig(chunk_size=100, overlap=20, job_timeout_seconds=0.05)
        provider = FakeEmbeddingProvider(delay=1.0)

        with patch(EXTRACT, return_value=_extracted(["slow text"])):
            with pytest.raises(EmbeddingProviderError, match="timed out"):
                await _pipeline(temp_store, tracker, provider, config).ingest(
                    _upload(tmp_path), "slow.pdf", "fake", "job"
                )

        assert tracker.get("job")["status"] == "Error"
        assert temp_store.get_stats()["document_count"] == 0

    @pytest.mark.asyncio
    async def test_timeout_during_save_rolls_back(
        self, tmp_path: Path, temp_store: SQLiteVectorStore
    ) -> None:
        """A write still running in its thread at the deadline is undone."""
        tracker = JobTracker()
        tracker.create("job")
        config = AppConfig(chunk_size=100, overlap=20, job_timeout_seconds=0.1)
        real_save = temp_store.save_document

        def slow_save(*args, **kwargs):
            time.sleep(0.3)
            return real_save(*args, **kwargs)

        with patch(EXTRACT, return_value=_extracted(["saved too late"])):
            with patch.object(temp_store, "save_document", side_effect=slow_save):
                with pytest.raises(EmbeddingProviderError, match="timed out"):
                    await _pipeline(temp_store, tracker, FakeEmbeddingProvider(), config).ingest(
                        _upload(tmp_path), "late.pdf", "fake", "job"
                    )

        assert temp_store.get_stats() == {"document_count": 0, "chunk_count": 0}
        assert tracker.get("job")["status"] == "Error"


class TestProgressPolling:
    @pytest.mark.asyncio
    async def test_polled_progress_never_decreases(
        self, tmp_path: Path, temp_store: SQLiteVectorStore
    ) -> None:
        """A poller running alongside ingestion only sees progress go up."""
        tracker = JobTracker()
        tracker.create("job")
        provider = FakeEmbeddingProvider(batch_size=1, delay=0.005)
        pages = [f"page {i} " + "z" * 150 for i in range(6)]
        observed: List[int] = []
        done = asyncio.Event()

        async def poll() -> None:
            while not done.is_set():
                observed.append(tracker.get("job")["progress"])
                await asyncio.sleep(0.001)
            observed.append(tracker.get("job")["progress"])

        with patch(EXTRACT, return_value=_extracted(pages)):
            poller = asyncio.create_task(poll())
            try:
                await _pipeline(temp_store, tracker, provider).ingest(
                    _upload(tmp_path), "big.pdf", "fake", "job"
                )
            finally:
                done.set()
                await poller

        assert observed == sorted(observed)
        assert observed[-1] == 100
        assert len(set(observed)) > 2


class TestIngestPath:
    @pytest.mark.asyncio
    async def test_keeps_source_file(self, tmp_path: Path, temp_store: SQLiteVectorStore) -> None:
        tracker = JobTracker()
        source = _upload(tmp_path, "course.pdf")

        with patch(EXTRACT, return_value=_extracted(["content"])):
            result = await _pipeline(temp_store, tracker, FakeEmbeddingProvider()).ingest_path(
                source, job_id="cli-job"
            )

        assert source.exists()
        assert result.originalname == "course.pdf"
        assert tracker.get("cli-job")["progress"] == 100
