"""Append-only log of which chunks backed which generated responses."""

from __future__ import annotations

import json
import logging
import threading
import time
from pathlib import Path
from typing import List, Sequence

from studyrag.models import RetrievedChunk, UsageEntry

LOGGER = logging.getLogger(__name__)


class UsageLog:
    """JSON-lines file; one entry per retrieval-augmented response."""

    def __init__(self, path: Path) -> None:
        self.path = Path(path)
        self._lock = threading.Lock()

    def record(
        self,
        chunks: Sequence[RetrievedChunk],
        response: str,
        *,
        timestamp: int | None = None,
    ) -> UsageEntry | None:
        """Append an entry keyed by the first chunk's document. No-op without chunks."""
        if not chunks:
            return None
        entry = UsageEntry(
            document_id=chunks[0].document_id,
            chunk_indexes=[
                {"chunk_index": chunk.chunk_index, "chunk_text": chunk.text} for chunk in chunks
            ],
            response=response,
            timestamp=timestamp if timestamp is not None else int(time.time() * 1000),
        )
        line = json.dumps(entry.to_payload(), ensure_ascii=False)
        with self._lock:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with self.path.open("a", encoding="utf-8") as handle:
                handle.write(line + "\n")
        return entry

    def entries(self) -> List[UsageEntry]:
        if not self.path.exists():
            return []
        entries: List[UsageEntry] = []
        with self.path.open("r", encoding="utf-8") as handle:
            for number, line in enumerate(handle, start=1):
                if not line.strip():
                    continue
                try:
                    entries.append(UsageEntry.from_payload(json.loads(line)))
                except (ValueError, KeyError, TypeError) as exc:
                    LOGGER.warning("Skipping unreadable usage log line %d: %s", number, exc)
        return entries

    def entries_for(self, document_id: int) -> List[UsageEntry]:
        return [entry for entry in self.entries() if entry.document_id == document_id]
