from __future__ import annotations

from pathlib import Path

import allure
import pytest
from pypdf import PdfWriter

from cv_evaluator.pipeline.extraction import DocumentExtractionError, PdfTextExtractor

pytestmark = [
    allure.epic("Evaluation Pipeline"),
    allure.feature("Text Extraction"),
]


def test_plain_text_documents_are_read_directly(tmp_path: Path) -> None:
    path = tmp_path / "cv.md"
    path.write_text("# Jane Doe\nBackend engineer", "utf-8")

    assert PdfTextExtractor().extract(path) == "# Jane Doe\nBackend engineer"


def test_blank_pdf_yields_empty_text(tmp_path: Path) -> None:
    path = tmp_path / "blank.pdf"
    writer = PdfWriter()
    writer.add_blank_page(width=72, height=72)
    with path.open("wb") as handle:
        writer.write(handle)

    assert PdfTextExtractor().extract(path) == ""


def test_missing_file_raises(tmp_path: Path) -> None:
    with pytest.raises(FileNotFoundError):
        PdfTextExtractor().extract(tmp_path / "gone.pdf")


def test_corrupt_pdf_raises_extraction_error(tmp_path: Path) -> None:
    path = tmp_path / "broken.pdf"
    path.write_bytes(b"this is not a pdf at all")

    with pytest.raises(DocumentExtractionError, match="broken.pdf"):
        PdfTextExtractor().extract(path)
