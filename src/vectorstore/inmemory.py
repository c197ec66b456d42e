from __future__ import annotations

"""In-memory vector store for local testing and small corpora."""

import math
import threading
from dataclasses import dataclass, field

from src.errors import TransientInfraError
from src.rag.types import Document, SearchResult


class VectorStoreError(TransientInfraError):
    """Raised when the vector index cannot be reached or rejects a request."""
    pass


@dataclass
class InMemoryVectorStore:
    """Cosine-similarity store keyed by chunk id."""
    dimension: int
    documents: dict[str, Document] = field(default_factory=dict)
    vectors: dict[str, list[float]] = field(default_factory=dict)
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)

    def upsert(self, documents: list[Document], vectors: list[list[float]]) -> int:
        """Insert or overwrite chunks with their embeddings."""
        if len(documents) != len(vectors):
            raise VectorStoreError("documents and vectors must have the same length")
        with self._lock:
            for document, vector in zip(documents, vectors):
                if len(vector) != self.dimension:
                    raise VectorStoreError(
                        f"Vector dimension {len(vector)} does not match index dimension {self.dimension}"
                    )
                self.documents[document.doc_id] = document
                self.vectors[document.doc_id] = vector
        return len(documents)

    def search_by_vector(self, vector: list[float], top_k: int = 4) -> list[SearchResult]:
        with self._lock:
            items = list(self.documents.items())
            vectors = dict(self.vectors)
        scored = [
            SearchResult(document=doc, score=_cosine_similarity(vector, vectors[doc_id]))
            for doc_id, doc in items
        ]
        scored.sort(key=lambda item: item.score, reverse=True)
        return scored[:top_k]

    def delete_by_document(self, document_id: str) -> int:
        with self._lock:
            doomed = [
                doc_id
                for doc_id, doc in self.documents.items()
                if doc.metadata.get("document_id") == document_id
            ]
            for doc_id in doomed:
                del self.documents[doc_id]
                del self.vectors[doc_id]
        return len(doomed)

    def count(self) -> int:
        return len(self.documents)

    def stats(self) -> dict[str, int | str]:
        return {
            "backend": "memory",
            "document_count": len(self.documents),
            "embedding_dimension": self.dimension,
        }

    def health(self) -> dict[str, str | bool]:
        return {"backend": "memory", "ok": True}


def _cosine_similarity(a: list[float], b: list[float]) -> float:
    dot = sum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(y * y for y in b))
    if norm_a == 0.0 or norm_b == 0.0:
        return 0.0
    return dot / (norm_a * norm_b)
