from __future__ import annotations

"""Word document loaders (DOCX and legacy DOC)."""

import logging
import re
from io import BytesIO

from src.loaders.base import LoadedPage, LoaderError, split_form_feeds

logger = logging.getLogger(__name__)

_PRINTABLE_RUN_RE = re.compile(rb"[\x20-\x7e\r\n\t]{4,}")
_MIN_DOC_TEXT = 50


class DocxLoaderError(LoaderError):
    """Raised when DOCX loading fails."""
    pass


def load_docx_bytes(data: bytes) -> list[LoadedPage]:
    """Load a DOCX file from bytes; paragraphs first, then table rows."""
    try:
        from docx import Document as DocxDocument
    except ImportError as exc:
        raise DocxLoaderError("python-docx is required to load DOCX files") from exc

    try:
        doc = DocxDocument(BytesIO(data))
    except Exception as exc:
        raise DocxLoaderError(f"Unable to open Word document: {exc}") from exc
    parts: list[str] = []
    for paragraph in doc.paragraphs:
        text = paragraph.text.strip()
        if text:
            parts.append(text)

    for table in doc.tables:
        for row in table.rows:
            cells = [cell.text.strip() for cell in row.cells if cell.text.strip()]
            if cells:
                parts.append(" | ".join(cells))

    return split_form_feeds("\n\n".join(parts).strip())


def load_doc_bytes(data: bytes) -> list[LoadedPage]:
    """Load a legacy DOC file, falling back to printable-run extraction."""
    try:
        return load_docx_bytes(data)
    except DocxLoaderError:
        logger.info("doc_legacy_fallback")
    runs = [match.decode("ascii", "ignore").strip() for match in _PRINTABLE_RUN_RE.findall(data)]
    text = "\n".join(run for run in runs if len(run.split()) >= 2)
    if len(text.strip()) < _MIN_DOC_TEXT:
        raise DocxLoaderError(
            "Unable to extract text from legacy .doc file; save it as .docx or PDF and re-upload"
        )
    return split_form_feeds(text)
