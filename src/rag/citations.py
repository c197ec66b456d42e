from __future__ import annotations

"""Reference metadata attached to synthesized answers."""

import re
from dataclasses import dataclass
from typing import Any

from src.rag.prompts import clean_source_name, reference_label
from src.rag.types import ContextChunk

PREVIEW_CHARS = 150
_CITATION_RE = re.compile(r"\[Reference\s+\d+\s*-\s*Page\s+[^\]]+\]", re.IGNORECASE)


@dataclass(frozen=True)
class Reference:
    """One supporting chunk as shown to the user."""
    reference_id: int
    page: int | None
    source: str
    document_id: str
    chunk_id: str
    preview: str
    score: float

    @property
    def label(self) -> str:
        page = self.page if self.page else "Unknown"
        return f"[Reference {self.reference_id} - Page {page}]"

    def to_dict(self) -> dict[str, Any]:
        return {
            "reference_id": self.reference_id,
            "page": self.page,
            "source": self.source,
            "document_id": self.document_id,
            "chunk_id": self.chunk_id,
            "preview": self.preview,
            "score": self.score,
        }


def preview_text(content: str, limit: int = PREVIEW_CHARS) -> str:
    text = " ".join(content.split())
    if len(text) <= limit:
        return text
    return text[:limit] + "..."


def build_references(contexts: list[ContextChunk]) -> list[Reference]:
    """Build references in context order; reference ids match the prompt headers."""
    references: list[Reference] = []
    for idx, chunk in enumerate(contexts, start=1):
        references.append(
            Reference(
                reference_id=chunk.reference_id or idx,
                page=chunk.page or None,
                source=clean_source_name(chunk.metadata),
                document_id=str(chunk.metadata.get("document_id", "")),
                chunk_id=chunk.document_id,
                preview=preview_text(chunk.content),
                score=chunk.score,
            )
        )
    return references


def has_citations(answer: str) -> bool:
    return bool(_CITATION_RE.search(answer))


def append_reference_footer(answer: str, references: list[Reference]) -> str:
    """Append reference labels when the answer carries none of its own."""
    if not references or has_citations(answer):
        return answer
    lines = [f"{ref.label} {ref.source}" for ref in references]
    return f"{answer}\n\nSources:\n" + "\n".join(lines)


def cite(chunk: ContextChunk, index: int | None = None) -> str:
    return reference_label(chunk, index)
