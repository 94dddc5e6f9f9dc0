"""Core StudyRAG data models."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List

import numpy as np


@dataclass(slots=True)
class ExtractedDocument:
    """Plain text pulled out of a PDF, one entry per page."""

    title: str
    pages: List[str]
    full_text: str


@dataclass(slots=True)
class ChunkRecord:
    """Passage of document text waiting to be embedded."""

    index: int
    text: str


@dataclass(slots=True)
class EmbeddedChunk:
    chunk: ChunkRecord
    embedding: List[float]


@dataclass(slots=True)
class Document:
    """Stored document row."""

    id: int
    title: str
    originalname: str
    text: str = ""
    embedding: List[float] = field(default_factory=list)
    provider: str | None = None
    dimension: int | None = None
    created_at: str | None = None

    def to_payload(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "originalname": self.originalname,
            "provider": self.provider,
            "dimension": self.dimension,
            "created_at": self.created_at,
        }


@dataclass(slots=True)
class StoredChunk:
    document_id: int
    chunk_index: int
    text: str
    embedding: np.ndarray


@dataclass(slots=True)
class RetrievedChunk:
    """Chunk scored against a single query embedding."""

    document_id: int
    chunk_index: int
    text: str
    similarity: float

    def to_payload(self) -> Dict[str, Any]:
        return {
            "documentId": self.document_id,
            "chunkIndex": self.chunk_index,
            "text": self.text,
            "similarity": self.similarity,
        }


@dataclass(slots=True)
class IngestionResult:
    id: int
    title: str
    originalname: str
    upload_id: str

    def to_payload(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "originalname": self.originalname,
            "uploadId": self.upload_id,
        }


@dataclass(slots=True)
class UsageEntry:
    """One retrieval-augmented response and the chunks it drew on."""

    document_id: int
    chunk_indexes: List[Dict[str, Any]]
    response: str
    timestamp: int

    def to_payload(self) -> Dict[str, Any]:
        return {
            "documentId": self.document_id,
            "chunkIndexes": self.chunk_indexes,
            "response": self.response,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "UsageEntry":
        return cls(
            document_id=int(payload["documentId"]),
            chunk_indexes=list(payload.get("chunkIndexes", [])),
            response=str(payload.get("response", "")),
            timestamp=int(payload.get("timestamp", 0)),
        )
