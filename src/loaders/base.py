from __future__ import annotations

"""Shared loader types."""

from dataclasses import dataclass

from src.errors import ContentError


class LoaderError(ContentError):
    """Raised when a document cannot be parsed into text."""
    pass


@dataclass(frozen=True)
class LoadedPage:
    """A unit of extracted text with its page hint.

    ``paged`` is True when ``page`` comes from the source format itself; unpaged
    units get their page estimated from cumulative word counts during chunking.
    """
    text: str
    page: int = 1
    paged: bool = False


def split_form_feeds(text: str) -> list[LoadedPage]:
    """Split text on form feeds into paged units, or return a single unpaged unit."""
    normalized = text.replace("\r\n", "\n").replace("\r", "\n")
    if "\f" not in normalized:
        return [LoadedPage(text=normalized, page=1, paged=False)]
    pages: list[LoadedPage] = []
    for number, part in enumerate(normalized.split("\f"), start=1):
        if part.strip():
            pages.append(LoadedPage(text=part, page=number, paged=True))
    return pages
