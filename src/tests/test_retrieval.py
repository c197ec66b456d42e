from __future__ import annotations

"""Retrieval engine scenarios against an in-memory index."""

import pytest

from src.cache.backends import MemoryBackend
from src.cache.layer import CacheLayer
from src.errors import ValidationError
from src.rag.embeddings import CachedEmbedder, HashEmbedder
from src.rag.types import Document
from src.retrieval.engine import RetrievalEngine, query_cache_key
from src.tests.helpers import course_documents
from src.vectorstore.inmemory import InMemoryVectorStore, VectorStoreError

pytestmark = pytest.mark.anyio

UNRELATED_QUERY = "Explain quantum chromodynamics gluon confinement"


class UnavailableStore:
    def search_by_vector(self, vector: list[float], top_k: int = 4):
        raise VectorStoreError("Vector index unavailable: connection refused")

    def health(self) -> dict[str, object]:
        return {"ok": False, "detail": "connection refused"}


def build_engine(documents: list[Document], cache: CacheLayer | None = None) -> RetrievalEngine:
    cache = cache or CacheLayer(backend=MemoryBackend())
    embedder = CachedEmbedder(provider=HashEmbedder(dimension=256), cache=cache)
    store = InMemoryVectorStore(dimension=256)
    store.upsert(documents, embedder.embed_batch([doc.content for doc in documents]).vectors)
    return RetrievalEngine(embedder=embedder, vectorstore=store, cache=cache)


async def test_explicit_section_query_ranks_that_section_first() -> None:
    engine = build_engine(course_documents())

    result = await engine.retrieve("Section 3: Overview")

    assert not result.empty
    top = result.chunks[0]
    assert top.content.startswith("Section 3: Overview")
    assert top.reference_id == 1
    assert top.page == 4
    assert [chunk.reference_id for chunk in result.chunks] == list(range(1, len(result.chunks) + 1))
    scores = [chunk.score for chunk in result.chunks]
    assert scores == sorted(scores, reverse=True)


async def test_unrelated_question_returns_no_chunks() -> None:
    engine = build_engine(course_documents())

    result = await engine.retrieve(UNRELATED_QUERY)

    assert result.empty
    assert result.degraded is False
    assert result.intent == "explanation"


async def test_repeated_query_is_served_from_cache_with_identical_references() -> None:
    engine = build_engine(course_documents())

    first = await engine.retrieve("Section 3: Overview")
    second = await engine.retrieve("Section 3: Overview")

    assert first.cache_hit is False
    assert second.cache_hit is True
    assert [(c.document_id, c.reference_id, c.page, c.score) for c in second.chunks] == [
        (c.document_id, c.reference_id, c.page, c.score) for c in first.chunks
    ]


async def test_cached_results_are_kept_per_result_limit() -> None:
    engine = build_engine(course_documents())

    narrow = await engine.retrieve("Section 3: Overview", top_k=2)
    wide = await engine.retrieve("Section 3: Overview", top_k=8)
    narrow_again = await engine.retrieve("Section 3: Overview", top_k=2)

    assert len(narrow.chunks) <= 2
    assert wide.cache_hit is False
    assert len(wide.chunks) >= len(narrow.chunks)
    assert narrow_again.cache_hit is True


async def test_empty_results_are_not_cached() -> None:
    cache = CacheLayer(backend=MemoryBackend())
    engine = build_engine(course_documents(), cache=cache)

    await engine.retrieve(UNRELATED_QUERY)

    assert cache.get_query_result(query_cache_key(UNRELATED_QUERY, limit=engine.top_k)) is None


async def test_document_filter_only_returns_that_document() -> None:
    notes = [
        Document(doc.doc_id.replace("doc_course", "doc_notes"), f"Notes: {doc.content}", {
            **doc.metadata,
            "document_id": "doc_notes",
            "source": "1700000000001-7-notes.pdf",
            "source_name": "notes.pdf",
        })
        for doc in course_documents()
    ]
    engine = build_engine(course_documents() + notes)

    unfiltered = await engine.retrieve("Section 3: Overview")
    filtered = await engine.retrieve("Section 3: Overview", document_filter="notes.pdf")

    assert {chunk.metadata["document_id"] for chunk in unfiltered.chunks} == {"doc_course", "doc_notes"}
    assert filtered.cache_hit is False
    assert filtered.document_filter == "notes.pdf"
    assert filtered.chunks
    assert {chunk.metadata["document_id"] for chunk in filtered.chunks} == {"doc_notes"}
    assert filtered.chunks[0].page == 4


async def test_index_outage_degrades_to_empty_result() -> None:
    cache = CacheLayer(backend=MemoryBackend())
    embedder = CachedEmbedder(provider=HashEmbedder(dimension=256), cache=cache)
    engine = RetrievalEngine(embedder=embedder, vectorstore=UnavailableStore(), cache=cache)

    result = await engine.retrieve("Section 3: Overview")
    sample = await engine.sample("Section 3: Overview")

    assert result.empty
    assert result.degraded is True
    assert "connection refused" in result.detail
    assert sample == []


async def test_empty_query_is_rejected() -> None:
    engine = build_engine(course_documents())
    with pytest.raises(ValidationError):
        await engine.retrieve("   ")


async def test_sample_returns_unscored_neighbours() -> None:
    engine = build_engine(course_documents())

    sample = await engine.sample(UNRELATED_QUERY, limit=3)

    assert len(sample) == 3


def test_cache_key_separates_filtered_queries() -> None:
    assert query_cache_key("closures") == "closures"
    assert query_cache_key("closures", "notes.pdf") != query_cache_key("closures")
    assert query_cache_key("closures", limit=2) != query_cache_key("closures", limit=8)
