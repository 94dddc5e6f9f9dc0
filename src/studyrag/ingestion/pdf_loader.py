"""PDF text extraction.

Uses PyMuPDF (fitz). Each page becomes one string made of the page's text
spans joined by single spaces, which keeps page boundaries available to the
page-based chunker.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import List

import fitz  # PyMuPDF

from studyrag.errors import ExtractionError
from studyrag.models import ExtractedDocument

LOGGER = logging.getLogger(__name__)


def _page_text(page: "fitz.Page") -> str:
    runs: List[str] = []
    for block in page.get_text("dict").get("blocks", []):
        # type 0 is text, 1 is image
        if block.get("type", 0) != 0:
            continue
        for line in block.get("lines", []):
            for span in line.get("spans", []):
                runs.append(span.get("text", ""))
    return " ".join(runs)


def extract_text(data: bytes, filename: str) -> ExtractedDocument:
    """Extract per-page text and a title from PDF bytes.

    Raises:
        ExtractionError: the bytes are not a parseable PDF, a page fails to
            decode, or no page contains any text.
    """
    try:
        doc = fitz.open(stream=data, filetype="pdf")
    except Exception as exc:
        LOGGER.error("Failed to open PDF %s: %s", filename, exc)
        raise ExtractionError(f"Failed to extract text from {filename}: {exc}") from exc

    try:
        pages: List[str] = []
        for index in range(len(doc)):
            try:
                pages.append(_page_text(doc[index]))
            except Exception as exc:
                LOGGER.error("Failed to read page %s in %s: %s", index + 1, filename, exc)
                raise ExtractionError(
                    f"Failed to decode page {index + 1} of {filename}: {exc}"
                ) from exc
        metadata = doc.metadata or {}
    finally:
        doc.close()

    full_text = "".join(page + " " for page in pages).strip()
    if not full_text:
        raise ExtractionError(f"No extractable text in {filename}")

    title = (metadata.get("title") or "").strip() or Path(filename).stem
    return ExtractedDocument(title=title, pages=pages, full_text=full_text)


def extract_text_from_path(path: Path, filename: str | None = None) -> ExtractedDocument:
    """Read a PDF from disk and extract it; ``filename`` overrides the title source."""
    try:
        data = Path(path).read_bytes()
    except OSError as exc:
        raise ExtractionError(f"Cannot read {path}: {exc}") from exc
    return extract_text(data, filename or Path(path).name)
