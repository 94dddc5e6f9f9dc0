"""Exceptions raised by the ingestion and retrieval pipeline."""

from __future__ import annotations


class StudyRagError(Exception):
    """Base exception carrying the HTTP status and a client-safe message."""

    stage = "unknown"
    http_status = 500
    public_message = "Failed to process document"

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


class ValidationError(StudyRagError):
    """Invalid request: missing file, unsupported provider, empty query."""

    stage = "validation"
    http_status = 400

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.public_message = message


class ExtractionError(StudyRagError):
    """The uploaded bytes are not a readable PDF."""

    stage = "extraction"
    http_status = 400
    public_message = "Invalid or corrupted document"


class EmbeddingProviderError(StudyRagError):
    """An embedding request failed or returned an unusable response."""

    stage = "embedding"


class StorageError(StudyRagError):
    """The persistence layer rejected a read or write."""

    stage = "storage"


class GenerationError(StudyRagError):
    """A chat provider failed to produce a response."""

    stage = "generation"
    public_message = "Failed to generate response"
