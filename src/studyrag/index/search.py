"""Similarity retrieval over the stored chunk corpus.

Retrieval is an exhaustive scan: every chunk is scored against the query with
cosine similarity, then filtered by a threshold with a top-N fallback.
"""

from __future__ import annotations

import asyncio
import logging
from typing import List, Sequence, Tuple

import numpy as np

from studyrag.embedding.batcher import EmbeddingBatcher
from studyrag.index.storage import SQLiteVectorStore
from studyrag.models import RetrievedChunk, StoredChunk

LOGGER = logging.getLogger(__name__)

SIMILARITY_THRESHOLD = 0.70
DEFAULT_MAX_CHUNKS = 5
FALLBACK_CHUNKS = 3


def cosine_similarity(a: Sequence[float] | np.ndarray, b: Sequence[float] | np.ndarray) -> float:
    """Cosine of the angle between ``a`` and ``b``; 0.0 if either is a zero vector."""
    va = np.asarray(a, dtype="float64")
    vb = np.asarray(b, dtype="float64")
    if va.shape != vb.shape:
        raise ValueError(f"Dimension mismatch: {va.shape[0]} vs {vb.shape[0]}")
    norm = float(np.linalg.norm(va) * np.linalg.norm(vb))
    if norm == 0.0:
        return 0.0
    return float(np.dot(va, vb) / norm)


def score_chunks(query: Sequence[float], chunks: Sequence[StoredChunk]) -> List[RetrievedChunk]:
    """Score chunks against the query, skipping those of another dimensionality."""
    query_vec = np.asarray(query, dtype="float64")
    scored: List[RetrievedChunk] = []
    skipped = 0
    for chunk in chunks:
        if chunk.embedding.shape[0] != query_vec.shape[0]:
            skipped += 1
            continue
        scored.append(
            RetrievedChunk(
                document_id=chunk.document_id,
                chunk_index=chunk.chunk_index,
                text=chunk.text,
                similarity=cosine_similarity(query_vec, chunk.embedding),
            )
        )
    if skipped:
        LOGGER.warning(
            "Skipped %d chunks whose embedding dimension differs from the query (%d)",
            skipped,
            query_vec.shape[0],
        )
    return scored


def select_chunks(
    scored: Sequence[RetrievedChunk],
    *,
    k: int = DEFAULT_MAX_CHUNKS,
    threshold: float = SIMILARITY_THRESHOLD,
    fallback: int = FALLBACK_CHUNKS,
) -> Tuple[List[RetrievedChunk], bool]:
    """Pick the chunks to feed the prompt.

    Returns ``(selected, used_fallback)``. When nothing reaches ``threshold`` the
    best ``fallback`` chunks are returned regardless of score. Never more than
    ``k`` chunks; ties are ordered by chunk index, then document id.
    """
    if k <= 0:
        return [], False
    ranked = sorted(scored, key=lambda c: (-c.similarity, c.chunk_index, c.document_id))
    passing = [chunk for chunk in ranked if chunk.similarity >= threshold]
    if passing:
        return passing[:k], False
    return ranked[: min(fallback, k)], True


class Retriever:
    """Embeds a query and returns the most similar stored chunks."""

    def __init__(
        self,
        embedder: EmbeddingBatcher,
        store: SQLiteVectorStore,
        *,
        threshold: float = SIMILARITY_THRESHOLD,
        fallback: int = FALLBACK_CHUNKS,
    ) -> None:
        self.embedder = embedder
        self.store = store
        self.threshold = threshold
        self.fallback = fallback

    async def retrieve(self, query: str, *, k: int = DEFAULT_MAX_CHUNKS) -> List[RetrievedChunk]:
        embedding = await self.embedder.embed_text(query)
        chunks = await asyncio.to_thread(self.store.load_chunks)
        if not chunks:
            return []

        selected, used_fallback = select_chunks(
            score_chunks(embedding, chunks), k=k, threshold=self.threshold, fallback=self.fallback
        )
        if used_fallback:
            LOGGER.info("No chunk reached %.2f; using top %d by similarity", self.threshold, len(selected))
        for position, chunk in enumerate(selected, start=1):
            LOGGER.info(
                "Chunk %d (doc_id: %s, chunk_index: %s): %.2f%%",
                position,
                chunk.document_id,
                chunk.chunk_index,
                chunk.similarity * 100,
            )
        return selected
