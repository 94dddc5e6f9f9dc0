"""In-memory progress tracking for ingestion jobs.

Jobs live only in process memory. Each entry has its own lock so concurrent
jobs never contend; a job expires ``ttl_seconds`` after it becomes terminal.
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, Protocol

LOGGER = logging.getLogger(__name__)

UNKNOWN_JOB = {"status": "Unknown upload", "progress": 0}

_FIELDS = {"status", "progress", "error", "chunk", "total_chunks"}


def new_job_id() -> str:
    return uuid.uuid4().hex


class ProgressReporter(Protocol):
    """Status channel written by the pipeline and read by pollers."""

    def update(self, **fields: Any) -> None: ...


@dataclass(slots=True)
class IngestionJob:
    status: str = "Queued"
    progress: int = 0
    error: str | None = None
    chunk: int | None = None
    total_chunks: int | None = None
    finished_at: float | None = None

    @property
    def is_terminal(self) -> bool:
        return self.progress >= 100 or self.error is not None

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"status": self.status, "progress": self.progress}
        if self.error is not None:
            payload["error"] = self.error
        if self.chunk is not None:
            payload["chunk"] = self.chunk
        if self.total_chunks is not None:
            payload["totalChunks"] = self.total_chunks
        return payload


@dataclass(slots=True)
class _Entry:
    job: IngestionJob
    lock: threading.Lock = field(default_factory=threading.Lock)


class JobReporter:
    """Writes progress for one job into a tracker."""

    def __init__(self, tracker: "JobTracker", job_id: str) -> None:
        self.tracker = tracker
        self.job_id = job_id

    def update(self, **fields: Any) -> None:
        self.tracker.update(self.job_id, **fields)


class JobTracker:
    """Maps job identifiers to their latest progress state.

    Usage:
        tracker = JobTracker()
        tracker.create(job_id)
        tracker.update(job_id, status="Extracting text...", progress=10)
        tracker.get(job_id)  # {"status": ..., "progress": 10}
    """

    def __init__(
        self, *, ttl_seconds: float = 3600.0, clock: Callable[[], float] = time.monotonic
    ) -> None:
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: Dict[str, _Entry] = {}

    def __contains__(self, job_id: object) -> bool:
        return job_id in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def is_active(self, job_id: str) -> bool:
        """True while a job with this id exists and has not finished."""
        entry = self._entries.get(job_id)
        if entry is None:
            return False
        with entry.lock:
            return not entry.job.is_terminal

    def create(self, job_id: str, *, status: str = "Queued") -> None:
        self.purge_expired()
        self._entries[job_id] = _Entry(job=IngestionJob(status=status))
        LOGGER.debug("Created job %s", job_id)

    def update(self, job_id: str, **fields: Any) -> None:
        """Merge ``fields`` into the job; progress never moves backwards."""
        unknown = set(fields) - _FIELDS
        if unknown:
            raise TypeError(f"Unknown job fields: {', '.join(sorted(unknown))}")

        entry = self._entries.setdefault(job_id, _Entry(job=IngestionJob()))
        with entry.lock:
            job = entry.job
            if "progress" in fields and fields["progress"] is not None:
                fields["progress"] = max(job.progress, min(int(fields["progress"]), 100))
            for name, value in fields.items():
                setattr(job, name, value)
            if job.is_terminal and job.finished_at is None:
                job.finished_at = self._clock()

    def fail(self, job_id: str, message: str) -> None:
        self.update(job_id, status="Error", error=message)

    def get(self, job_id: str) -> Dict[str, Any]:
        """Return the job's payload, or the unknown-job placeholder."""
        self.purge_expired()
        entry = self._entries.get(job_id)
        if entry is None:
            return dict(UNKNOWN_JOB)
        with entry.lock:
            return entry.job.to_payload()

    def snapshot(self, job_id: str) -> IngestionJob | None:
        entry = self._entries.get(job_id)
        if entry is None:
            return None
        with entry.lock:
            return replace(entry.job)

    def purge_expired(self) -> int:
        now = self._clock()
        expired = []
        for job_id, entry in list(self._entries.items()):
            finished = entry.job.finished_at
            if finished is not None and now - finished >= self.ttl_seconds:
                expired.append(job_id)
        for job_id in expired:
            self._entries.pop(job_id, None)
        if expired:
            LOGGER.debug("Expired %d finished jobs", len(expired))
        return len(expired)

    def reporter(self, job_id: str) -> JobReporter:
        return JobReporter(self, job_id)


# Process-wide tracker used by the web app
job_tracker = JobTracker()
