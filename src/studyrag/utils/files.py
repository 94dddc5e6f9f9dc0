"""Utility helpers for working with files."""

from __future__ import annotations

import logging
import uuid
from pathlib import Path
from typing import Iterable, Iterator

LOGGER = logging.getLogger(__name__)


def iter_pdf_paths(inputs: Iterable[Path]) -> Iterator[Path]:
    """Yield PDF paths from input paths, descending into directories."""
    for item in inputs:
        if item.is_dir():
            yield from iter_pdf_paths(sorted(child for child in item.rglob("*.pdf")))
        elif item.is_file() and item.suffix.lower() == ".pdf":
            yield item


def is_pdf_filename(name: str | None) -> bool:
    return bool(name) and Path(name).suffix.lower() == ".pdf"


def make_upload_path(upload_dir: Path, originalname: str) -> Path:
    """Return a fresh, collision-free temp path for an uploaded file."""
    upload_dir.mkdir(parents=True, exist_ok=True)
    suffix = Path(originalname).suffix.lower() or ".bin"
    return upload_dir / f"{uuid.uuid4().hex}{suffix}"


def cleanup_temp_file(path: Path) -> None:
    """Delete a temporary upload; failures are logged, never raised."""
    try:
        path.unlink(missing_ok=True)
    except OSError as exc:
        LOGGER.error("Error removing temp file %s: %s", path, exc)
