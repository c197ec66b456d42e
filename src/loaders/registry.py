from __future__ import annotations

"""Suffix-based dispatch to the format-specific loaders."""

import logging
from pathlib import Path
from typing import Callable

from src.errors import ValidationError
from src.loaders.base import LoadedPage, LoaderError
from src.loaders.csv_loader import load_csv_bytes
from src.loaders.docx import load_doc_bytes, load_docx_bytes
from src.loaders.pdf import load_pdf_bytes
from src.loaders.rtf import load_rtf_bytes
from src.loaders.text import load_markdown_bytes, load_text_bytes

logger = logging.getLogger(__name__)

Loader = Callable[[bytes], list[LoadedPage]]

LOADERS: dict[str, Loader] = {
    ".pdf": load_pdf_bytes,
    ".docx": load_docx_bytes,
    ".doc": load_doc_bytes,
    ".txt": load_text_bytes,
    ".md": load_markdown_bytes,
    ".rtf": load_rtf_bytes,
    ".csv": load_csv_bytes,
}

SUPPORTED_TYPES = tuple(LOADERS)

_MIME_TYPES = {
    ".pdf": {"application/pdf"},
    ".docx": {"application/vnd.openxmlformats-officedocument.wordprocessingml.document"},
    ".doc": {"application/msword"},
    ".txt": {"text/plain"},
    ".md": {"text/markdown", "text/x-markdown", "text/plain"},
    ".rtf": {"application/rtf", "text/rtf"},
    ".csv": {"text/csv", "application/csv", "application/vnd.ms-excel", "text/plain"},
}
_GENERIC_MIME_TYPES = {"", "application/octet-stream", "binary/octet-stream"}


def detect_file_type(filename: str, content_type: str | None = None) -> str:
    """Return the normalized suffix or raise ``ValidationError`` for unsupported files."""
    suffix = Path(filename or "").suffix.lower()
    if suffix not in LOADERS:
        supported = ", ".join(SUPPORTED_TYPES)
        raise ValidationError(
            f"Unsupported file type '{suffix or filename}'. Supported types: {supported}"
        )
    mime = (content_type or "").split(";", 1)[0].strip().lower()
    if mime and mime not in _GENERIC_MIME_TYPES and mime not in _MIME_TYPES[suffix]:
        raise ValidationError(f"Content type '{mime}' does not match file type '{suffix}'")
    return suffix


def load_document(data: bytes, filename: str) -> list[LoadedPage]:
    """Parse raw bytes into text units, raising ``LoaderError`` when nothing is extracted."""
    file_type = detect_file_type(filename)
    if not data:
        raise LoaderError(f"{filename} is empty; re-upload a file that contains text")
    pages = [page for page in LOADERS[file_type](data) if page.text.strip()]
    if not pages:
        raise LoaderError(
            f"No extractable text found in {filename}; "
            "if it is a scanned document, run OCR first and re-upload"
        )
    logger.info(
        "document_loaded",
        extra={"file_type": file_type, "units": len(pages), "chars": sum(len(p.text) for p in pages)},
    )
    return pages


def load_path(path: Path, filename: str | None = None) -> list[LoadedPage]:
    try:
        data = path.read_bytes()
    except OSError as exc:
        raise LoaderError(f"Unable to read uploaded file: {exc}") from exc
    return load_document(data, filename or path.name)
