"""Plain-text extraction from stored candidate documents."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Protocol

from pypdf import PdfReader
from pypdf.errors import PdfReadError

logger = logging.getLogger(__name__)

PLAIN_TEXT_SUFFIXES = (".txt", ".md")


class DocumentExtractionError(RuntimeError):
    """Stored document could not be parsed."""


class DocumentExtractor(Protocol):
    def extract(self, path: Path) -> str: ...


class PdfTextExtractor:
    """Reads PDFs page by page; plain-text uploads are returned as is."""

    def extract(self, path: Path) -> str:
        if not path.is_file():
            raise FileNotFoundError(f"Stored document not found: {path}")
        if path.suffix.lower() in PLAIN_TEXT_SUFFIXES:
            return path.read_text("utf-8", errors="replace")

        try:
            reader = PdfReader(path)
            pages = [page.extract_text() or "" for page in reader.pages]
        except PdfReadError as error:
            raise DocumentExtractionError(f"Failed to parse PDF {path.name}: {error}") from error

        text = "\n".join(pages).strip()
        logger.info("Extracted %d chars from %s (%d pages)", len(text), path.name, len(pages))
        return text
