from __future__ import annotations

"""PDF text extraction and cleanup."""

import re

from src.loaders.base import LoadedPage, LoaderError


class PDFLoaderError(LoaderError):
    """Raised when PDF loading fails."""
    pass


_HYPHEN_BREAK_RE = re.compile(r"(\w)-\n(\w)")
_SPACES_RE = re.compile(r"[ \t]+")
_BLANK_LINES_RE = re.compile(r"\n{3,}")


def _clean_pdf_text(text: str) -> str:
    """Rejoin hyphenated line breaks and squeeze whitespace, keeping line structure."""
    if not text:
        return ""
    cleaned = text.replace("\r\n", "\n")
    cleaned = _HYPHEN_BREAK_RE.sub(r"\1\2", cleaned)
    cleaned = _SPACES_RE.sub(" ", cleaned)
    cleaned = "\n".join(line.strip() for line in cleaned.split("\n"))
    return _BLANK_LINES_RE.sub("\n\n", cleaned).strip()


def load_pdf_bytes(data: bytes) -> list[LoadedPage]:
    """Load a PDF from bytes, one unit per page."""
    try:
        import fitz
    except ImportError as exc:
        raise PDFLoaderError("PyMuPDF is required to load PDF files") from exc

    try:
        reader = fitz.open(stream=data, filetype="pdf")
    except Exception as exc:
        raise PDFLoaderError(f"Unable to open PDF: {exc}") from exc
    pages: list[LoadedPage] = []
    try:
        if reader.needs_pass:
            raise PDFLoaderError("PDF is password protected")
        for number, page in enumerate(reader, start=1):
            text = _clean_pdf_text(page.get_text() or "")
            if text:
                pages.append(LoadedPage(text=text, page=number, paged=True))
    finally:
        reader.close()
    return pages
