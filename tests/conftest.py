"""Shared fixtures for the StudyRAG test suite."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Dict, List, Sequence

import pytest

from studyrag.config import AppConfig
from studyrag.embedding.providers import EmbeddingProvider
from studyrag.errors import EmbeddingProviderError
from studyrag.index.storage import SQLiteVectorStore


class FakeEmbeddingProvider(EmbeddingProvider):
    """Deterministic provider: vectors derived from character counts.

    ``vectors`` pins exact outputs for given texts; ``fail_on`` makes any text
    containing that marker raise; texts containing ``bad_marker`` get vectors one
    element longer than the rest.
    """

    name = "fake"

    def __init__(
        self,
        *,
        batch_size: int = 4,
        dimension: int = 4,
        native_batching: bool = False,
        vectors: Dict[str, List[float]] | None = None,
        fail_on: str | None = None,
        bad_marker: str | None = None,
        delay: float = 0.0,
    ) -> None:
        super().__init__(batch_size=batch_size, dimension=dimension)
        self.native_batching = native_batching
        self.vectors = vectors or {}
        self.fail_on = fail_on
        self.bad_marker = bad_marker
        self.delay = delay
        self.batches: List[List[str]] = []
        self.in_flight = 0
        self.max_in_flight = 0
        self.closed = False

    def _vector(self, text: str) -> List[float]:
        if text in self.vectors:
            return list(self.vectors[text])
        if self.fail_on is not None and self.fail_on in text:
            raise EmbeddingProviderError(f"provider rejected {text[:20]!r}")
        size = self.dimension or 4
        if self.bad_marker is not None and self.bad_marker in text:
            size += 1
        return [float(len(text) % 7 + 1)] + [float(i + 1) for i in range(size - 1)]

    async def embed_one(self, text: str) -> List[float]:
        if self.delay:
            await asyncio.sleep(self.delay)
        return self._vector(text)

    async def embed_batch(self, texts: Sequence[str]) -> List[List[float]]:
        self.batches.append(list(texts))
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            return [self._vector(text) for text in texts]
        finally:
            self.in_flight -= 1

    async def aclose(self) -> None:
        self.closed = True


@pytest.fixture
def fake_provider() -> FakeEmbeddingProvider:
    return FakeEmbeddingProvider()


@pytest.fixture
def app_config(tmp_path: Path) -> AppConfig:
    return AppConfig(
        db_path=tmp_path / "studyrag.db",
        upload_dir=tmp_path / "uploads",
        usage_log_path=tmp_path / "usage.jsonl",
    )


@pytest.fixture
def temp_store(tmp_path: Path):
    store = SQLiteVectorStore(tmp_path / "test.db")
    yield store
    store.close()
