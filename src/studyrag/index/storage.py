"""SQLite persistence for documents and their embedded chunks."""

from __future__ import annotations

import logging
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, List, Sequence

import numpy as np

from studyrag.errors import StorageError
from studyrag.models import Document, EmbeddedChunk, StoredChunk

LOGGER = logging.getLogger(__name__)


def _to_blob(vector: Sequence[float] | np.ndarray) -> sqlite3.Binary:
    return sqlite3.Binary(np.asarray(vector, dtype="float32").tobytes())


def _from_blob(blob: bytes | None) -> np.ndarray:
    if not blob:
        return np.zeros(0, dtype="float32")
    return np.frombuffer(blob, dtype="float32")


class SQLiteVectorStore:
    """Persistence layer for document and chunk embeddings.

    A document's chunks are written in the same transaction as its row, so
    readers never see a half-written document.
    """

    def __init__(self, db_path: Path) -> None:
        self.db_path = Path(db_path)
        try:
            # Async callers run store methods in worker threads, one call at a time.
            self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA journal_mode=WAL;")
            self._conn.execute("PRAGMA synchronous=NORMAL;")
            self._conn.execute("PRAGMA foreign_keys=ON;")
            self._ensure_schema()
        except sqlite3.Error as exc:
            raise StorageError(f"Cannot open database {self.db_path}: {exc}") from exc

    @property
    def connection(self) -> sqlite3.Connection:
        return self._conn

    def close(self) -> None:
        self._conn.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        try:
            yield self._conn
            self._conn.commit()
        except sqlite3.Error as exc:
            self._conn.rollback()
            raise StorageError(str(exc)) from exc
        except Exception:
            self._conn.rollback()
            raise

    def _ensure_schema(self) -> None:
        with self.transaction() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS documents (
                    id INTEGER PRIMARY KEY,
                    title TEXT NOT NULL,
                    originalname TEXT NOT NULL,
                    text TEXT NOT NULL DEFAULT '',
                    embedding BLOB,
                    provider TEXT,
                    dimension INTEGER,
                    created_at TEXT DEFAULT CURRENT_TIMESTAMP
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS chunks (
                    id INTEGER PRIMARY KEY,
                    document_id INTEGER NOT NULL,
                    chunk_index INTEGER NOT NULL,
                    text TEXT NOT NULL,
                    embedding BLOB NOT NULL,
                    FOREIGN KEY(document_id) REFERENCES documents(id) ON DELETE CASCADE,
                    UNIQUE(document_id, chunk_index)
                )
                """
            )
            conn.execute(
                """CREATE INDEX IF NOT EXISTS idx_chunks_document_id
                    ON chunks(document_id)
                """
            )

    def create_document(
        self, title: str, originalname: str, *, provider: str | None = None
    ) -> int:
        """Insert a document row without its document-level embedding.

        Should be called within a transaction.
        """
        return int(
            self._conn.execute(
                "INSERT INTO documents(title, originalname, provider) VALUES (?, ?, ?)",
                (title, originalname, provider),
            ).lastrowid
        )

    def insert_chunks(self, doc_id: int, chunks: Sequence[EmbeddedChunk]) -> int:
        """Insert embedded chunks for a document; returns their shared dimension.

        Should be called within a transaction.
        """
        dimensions = {len(item.embedding) for item in chunks}
        if len(dimensions) > 1:
            raise StorageError(f"Mixed embedding dimensions for document {doc_id}: {dimensions}")
        dimension = dimensions.pop() if dimensions else 0

        self._conn.executemany(
            """
            INSERT INTO chunks(document_id, chunk_index, text, embedding)
            VALUES (?, ?, ?, ?)
            """,
            [
                (doc_id, item.chunk.index, item.chunk.text, _to_blob(item.embedding))
                for item in chunks
            ],
        )
        self._conn.execute(
            "UPDATE documents SET dimension = ? WHERE id = ?", (dimension or None, doc_id)
        )
        return dimension

    def save_document(
        self,
        title: str,
        originalname: str,
        chunks: Sequence[EmbeddedChunk],
        *,
        provider: str | None = None,
    ) -> int:
        """Create a document and all of its chunks atomically."""
        if not chunks:
            raise StorageError("Refusing to store a document without chunks")
        with self.transaction():
            doc_id = self.create_document(title, originalname, provider=provider)
            self.insert_chunks(doc_id, chunks)
        LOGGER.info("Stored document %s (%s) with %d chunks", doc_id, originalname, len(chunks))
        return doc_id

    def update_document_embedding(
        self, doc_id: int, embedding: Sequence[float], text: str
    ) -> None:
        with self.transaction() as conn:
            updated = conn.execute(
                "UPDATE documents SET embedding = ?, text = ? WHERE id = ?",
                (_to_blob(embedding), text, doc_id),
            ).rowcount
        if not updated:
            raise StorageError(f"Document {doc_id} not found")

    def _row_to_document(self, row: sqlite3.Row) -> Document:
        return Document(
            id=row["id"],
            title=row["title"],
            originalname=row["originalname"],
            text=row["text"],
            embedding=_from_blob(row["embedding"]).tolist(),
            provider=row["provider"],
            dimension=row["dimension"],
            created_at=row["created_at"],
        )

    def get_document(self, doc_id: int) -> Document | None:
        row = self._conn.execute("SELECT * FROM documents WHERE id = ?", (doc_id,)).fetchone()
        return self._row_to_document(row) if row else None

    def list_documents(self) -> List[Dict[str, Any]]:
        rows = self._conn.execute(
            """
            SELECT d.id, d.title, d.originalname, d.provider, d.dimension, d.created_at,
                   COUNT(c.id) AS chunk_count
            FROM documents d
            LEFT JOIN chunks c ON c.document_id = d.id
            GROUP BY d.id
            ORDER BY d.id
            """
        ).fetchall()
        return [dict(row) for row in rows]

    def delete_document(self, doc_id: int) -> bool:
        """Delete a document and its chunks. Returns False when it did not exist."""
        with self.transaction() as conn:
            conn.execute("DELETE FROM chunks WHERE document_id = ?", (doc_id,))
            deleted = conn.execute("DELETE FROM documents WHERE id = ?", (doc_id,)).rowcount
        if deleted:
            LOGGER.info("Deleted document %s", doc_id)
        return bool(deleted)

    def load_chunks(self) -> List[StoredChunk]:
        """Return every stored chunk, ordered by document and chunk index."""
        try:
            rows = self._conn.execute(
                """
                SELECT document_id, chunk_index, text, embedding
                FROM chunks
                ORDER BY document_id, chunk_index
                """
            ).fetchall()
        except sqlite3.Error as exc:
            raise StorageError(str(exc)) from exc
        return [
            StoredChunk(
                document_id=row["document_id"],
                chunk_index=row["chunk_index"],
                text=row["text"],
                embedding=_from_blob(row["embedding"]),
            )
            for row in rows
        ]

    def count_chunks(self, doc_id: int | None = None) -> int:
        if doc_id is None:
            row = self._conn.execute("SELECT COUNT(*) FROM chunks").fetchone()
        else:
            row = self._conn.execute(
                "SELECT COUNT(*) FROM chunks WHERE document_id = ?", (doc_id,)
            ).fetchone()
        return int(row[0])

    def get_stats(self) -> Dict[str, int]:
        document_count = self._conn.execute("SELECT COUNT(*) FROM documents").fetchone()[0]
        return {"document_count": int(document_count), "chunk_count": self.count_chunks()}
