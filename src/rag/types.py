from __future__ import annotations

"""Core data types for chunks and retrieval."""

from dataclasses import dataclass, field
from typing import Any


@dataclass(frozen=True)
class Document:
    """Indexed chunk with its enrichment metadata."""
    doc_id: str
    content: str
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def page(self) -> int:
        try:
            return int(self.metadata.get("page") or 0)
        except (TypeError, ValueError):
            return 0


@dataclass(frozen=True)
class SearchResult:
    """Vector search hit with similarity score."""
    document: Document
    score: float


@dataclass(frozen=True)
class Candidate:
    """Search hit tagged with the strategy that surfaced it."""
    document: Document
    similarity: float
    strategy: str


@dataclass(frozen=True)
class ContextChunk:
    """Ranked chunk handed to the synthesizer, carrying its reference index."""
    document_id: str
    content: str
    metadata: dict[str, Any]
    score: float
    strategy: str = "direct"
    reference_id: int = 0

    @property
    def page(self) -> int:
        try:
            return int(self.metadata.get("page") or 0)
        except (TypeError, ValueError):
            return 0

    def to_payload(self) -> dict[str, Any]:
        return {
            "document_id": self.document_id,
            "content": self.content,
            "metadata": dict(self.metadata),
            "score": self.score,
            "strategy": self.strategy,
            "reference_id": self.reference_id,
        }

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "ContextChunk":
        return cls(
            document_id=str(payload.get("document_id", "")),
            content=str(payload.get("content", "")),
            metadata=dict(payload.get("metadata") or {}),
            score=float(payload.get("score", 0.0)),
            strategy=str(payload.get("strategy", "direct")),
            reference_id=int(payload.get("reference_id", 0)),
        )
