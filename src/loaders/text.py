from __future__ import annotations

"""Plain text and markdown loaders."""

from src.loaders.base import LoadedPage, split_form_feeds


def decode_text(data: bytes) -> str:
    """Decode bytes as UTF-8 (BOM tolerant), replacing invalid sequences."""
    try:
        return data.decode("utf-8-sig")
    except UnicodeDecodeError:
        return data.decode("utf-8", errors="replace")


def load_text_bytes(data: bytes) -> list[LoadedPage]:
    """Load plain text; form feeds mark page boundaries."""
    return split_form_feeds(decode_text(data))


def load_markdown_bytes(data: bytes) -> list[LoadedPage]:
    """Load markdown as text; headings are kept for the chunk separators."""
    return split_form_feeds(decode_text(data))
