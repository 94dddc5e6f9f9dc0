"""Text helpers: fixed-window and boundary-seeking chunking."""

from __future__ import annotations

from typing import Iterator, List, Sequence

from studyrag.models import ChunkRecord


def _check_window(chunk_size: int, overlap: int) -> None:
    if chunk_size <= 0:
        raise ValueError("chunk_size must be positive")
    if overlap < 0 or overlap >= chunk_size:
        raise ValueError("overlap must be in [0, chunk_size)")


def chunk_text(text: str, *, max_chars: int = 1500, overlap: int = 200) -> Iterator[str]:
    """Split text into overlapping character windows.

    Windows start every ``max_chars - overlap`` characters and stop at the first
    window that reaches the end, so text no longer than ``max_chars`` is one window.
    """
    _check_window(max_chars, overlap)
    if not text:
        return

    step = max_chars - overlap
    for start in range(0, len(text), step):
        yield text[start : start + max_chars]
        if start + max_chars >= len(text):
            break


def chunk_pages(
    pages: Sequence[str], *, chunk_size: int = 1500, overlap: int = 200
) -> List[ChunkRecord]:
    """Chunk each page independently, numbering chunks across the whole document.

    Windows that are blank after trimming are dropped, so indices stay contiguous.
    """
    _check_window(chunk_size, overlap)
    chunks: List[ChunkRecord] = []
    for page in pages:
        for window in chunk_text(page, max_chars=chunk_size, overlap=overlap):
            if window.strip():
                chunks.append(ChunkRecord(index=len(chunks), text=window))
    return chunks


def chunk_text_at_boundaries(
    text: str, *, chunk_size: int = 1500, overlap: int = 200
) -> List[str]:
    """Split freeform text, preferring to cut at newlines.

    A window ends at the last newline before ``start + chunk_size``; failing that,
    at the first newline after it if that is within ``1.5 * chunk_size`` of the
    start; otherwise at the raw offset. Only newlines past the previous cut are
    considered. Chunks are trimmed and empty ones dropped.
    """
    _check_window(chunk_size, overlap)
    chunks: List[str] = []
    start = 0
    last_end = 0
    length = len(text)
    while start < length:
        end = start + chunk_size
        # A cut must land past the previous one, so overlap never re-finds it.
        floor = max(start, last_end)
        boundary = text.rfind("\n", floor + 1, end + 1)
        if boundary == -1:
            boundary = text.find("\n", end)
        if boundary > floor and boundary - start < chunk_size * 1.5:
            end = boundary

        piece = text[start:end].strip()
        if piece:
            chunks.append(piece)
        if end >= length:
            break
        last_end = end
        start = max(end - overlap, start + 1)
    return chunks


def truncate_for_embedding(text: str, max_chars: int) -> str:
    """Clip text to the provider's embeddable length."""
    if max_chars <= 0:
        raise ValueError("max_chars must be positive")
    return text[:max_chars]
