"""Tests for file utility functions."""

from __future__ import annotations

from pathlib import Path
from unittest.mock import patch

from studyrag.utils.files import (
    cleanup_temp_file,
    is_pdf_filename,
    iter_pdf_paths,
    make_upload_path,
)


class TestIterPdfPaths:
    """Test iter_pdf_paths function."""

    def test_single_pdf_file(self, tmp_path: Path) -> None:
        pdf_file = tmp_path / "test.pdf"
        pdf_file.write_text("dummy")

        assert list(iter_pdf_paths([pdf_file])) == [pdf_file]

    def test_non_pdf_file_ignored(self, tmp_path: Path) -> None:
        txt_file = tmp_path / "test.txt"
        txt_file.write_text("dummy")

        assert list(iter_pdf_paths([txt_file])) == []

    def test_directory_recursion_sorted(self, tmp_path: Path) -> None:
        """Should find PDFs in nested directories, sorted."""
        (tmp_path / "sub").mkdir()
        (tmp_path / "b.pdf").write_text("b")
        (tmp_path / "a.pdf").write_text("a")
        (tmp_path / "sub" / "c.PDF").write_text("c")
        (tmp_path / "notes.md").write_text("n")

        paths = list(iter_pdf_paths([tmp_path]))

        assert tmp_path / "a.pdf" in paths
        assert tmp_path / "b.pdf" in paths
        assert paths.index(tmp_path / "a.pdf") < paths.index(tmp_path / "b.pdf")
        assert all(path.suffix.lower() == ".pdf" for path in paths)

    def test_nonexistent_path(self, tmp_path: Path) -> None:
        assert list(iter_pdf_paths([tmp_path / "missing.pdf"])) == []


class TestIsPdfFilename:
    def test_accepts_pdf(self) -> None:
        assert is_pdf_filename("notes.pdf")
        assert is_pdf_filename("NOTES.PDF")

    def test_rejects_others(self) -> None:
        assert not is_pdf_filename("notes.txt")
        assert not is_pdf_filename("")
        assert not is_pdf_filename(None)


class TestMakeUploadPath:
    def test_creates_directory_and_unique_names(self, tmp_path: Path) -> None:
        upload_dir = tmp_path / "uploads"

        first = make_upload_path(upload_dir, "lecture.pdf")
        second = make_upload_path(upload_dir, "lecture.pdf")

        assert upload_dir.is_dir()
        assert first.parent == upload_dir
        assert first.suffix == ".pdf"
        assert first != second


class TestCleanupTempFile:
    def test_removes_file(self, tmp_path: Path) -> None:
        path = tmp_path / "upload.pdf"
        path.write_bytes(b"data")

        cleanup_temp_file(path)

        assert not path.exists()

    def test_missing_file_is_fine(self, tmp_path: Path) -> None:
        cleanup_temp_file(tmp_path / "gone.pdf")

    @patch("studyrag.utils.files.LOGGER")
    def test_unlink_error_logged(self, mock_logger, tmp_path: Path) -> None:
        """OS errors are logged, not raised."""
        path = tmp_path / "locked.pdf"
        with patch.object(Path, "unlink", side_effect=PermissionError("denied")):
            cleanup_temp_file(path)

        assert mock_logger.error.called
