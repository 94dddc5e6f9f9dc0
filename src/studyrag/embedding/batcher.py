"""Bounded-concurrency batch embedding with progress reporting."""

from __future__ import annotations

import asyncio
import logging
from typing import List, Optional, Sequence

from studyrag.embedding.providers import EmbeddingProvider
from studyrag.errors import EmbeddingProviderError
from studyrag.jobs import ProgressReporter
from studyrag.models import ChunkRecord
from studyrag.utils.text import truncate_for_embedding

LOGGER = logging.getLogger(__name__)

# Share of the job's progress bar reserved before and for embedding.
PROGRESS_START = 10
PROGRESS_SPAN = 80


def batch_ranges(total: int, batch_size: int) -> List[range]:
    """Split ``range(total)`` into consecutive slices of ``batch_size``."""
    if batch_size <= 0:
        raise ValueError("batch_size must be positive")
    return [range(start, min(start + batch_size, total)) for start in range(0, total, batch_size)]


def embedding_progress(processed: int, total: int) -> int:
    if total <= 0:
        return PROGRESS_START + PROGRESS_SPAN
    return PROGRESS_START + (PROGRESS_SPAN * processed) // total


class EmbeddingBatcher:
    """Embeds chunks through a provider with at most ``concurrency`` batches in flight.

    Results are written back to each chunk's position, so batches may finish in
    any order without breaking the index-to-vector pairing.
    """

    def __init__(
        self,
        provider: EmbeddingProvider,
        *,
        max_chars: int = 512,
        concurrency: int = 3,
        reporter: Optional[ProgressReporter] = None,
        progress_log_interval: int = 50,
    ) -> None:
        if concurrency <= 0:
            raise ValueError("concurrency must be positive")
        self.provider = provider
        self.max_chars = max_chars
        self.concurrency = concurrency
        self.reporter = reporter
        self.progress_log_interval = max(1, progress_log_interval)
        self.dimension: int | None = provider.dimension

    def _check_vectors(self, vectors: Sequence[Sequence[float]], expected: int) -> None:
        if len(vectors) != expected:
            raise EmbeddingProviderError(
                f"{self.provider.name} returned {len(vectors)} embeddings for {expected} inputs"
            )
        for vector in vectors:
            if not vector:
                raise EmbeddingProviderError(f"{self.provider.name} returned an empty embedding")
            if self.dimension is None:
                self.dimension = len(vector)
            elif len(vector) != self.dimension:
                raise EmbeddingProviderError(
                    f"{self.provider.name} returned a {len(vector)}-dimensional embedding, "
                    f"expected {self.dimension}"
                )

    async def embed_text(self, text: str) -> List[float]:
        """Embed one text, truncated to the embeddable length."""
        vector = await self.provider.embed_one(truncate_for_embedding(text, self.max_chars))
        self._check_vectors([vector], 1)
        return list(vector)

    async def embed_chunks(self, chunks: Sequence[ChunkRecord]) -> List[List[float]]:
        """Return one embedding per chunk, in chunk order.

        Raises:
            EmbeddingProviderError: any batch failed; remaining batches are cancelled.
        """
        total = len(chunks)
        if total == 0:
            return []

        texts = [truncate_for_embedding(chunk.text, self.max_chars) for chunk in chunks]
        results: List[Optional[List[float]]] = [None] * total
        semaphore = asyncio.Semaphore(self.concurrency)
        counter_lock = asyncio.Lock()
        processed = 0

        async def run_batch(positions: range) -> None:
            nonlocal processed
            async with semaphore:
                batch = [texts[i] for i in positions]
                vectors = await self.provider.embed_batch(batch)
            self._check_vectors(vectors, len(batch))
            for offset, position in enumerate(positions):
                results[position] = list(vectors[offset])

            async with counter_lock:
                before = processed
                processed += len(batch)
                if self.reporter is not None:
                    self.reporter.update(
                        status=f"Embedded {processed} of {total} chunks...",
                        progress=embedding_progress(processed, total),
                        chunk=processed,
                        total_chunks=total,
                    )
                if processed // self.progress_log_interval > before // self.progress_log_interval:
                    LOGGER.info("Processed %d of %d chunks...", processed, total)

        tasks = [
            asyncio.ensure_future(run_batch(positions))
            for positions in batch_ranges(total, self.provider.batch_size)
        ]
        try:
            await asyncio.gather(*tasks)
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

        LOGGER.debug("Embedded %d chunks with %s", total, self.provider.name)
        embeddings = [vector for vector in results if vector is not None]
        if len(embeddings) != total:
            raise EmbeddingProviderError(f"Missing embeddings: got {len(embeddings)} of {total}")
        return embeddings
