from __future__ import annotations

"""Chunking engine tests: coverage, quality filtering and page attribution."""

import pytest

from src.cache.backends import MemoryBackend
from src.cache.layer import CacheLayer
from src.chunking.engine import Chunk, ChunkingEngine
from src.chunking.splitter import RecursiveSplitter, plan_chunking, preprocess_text
from src.errors import ContentError
from src.loaders.base import LoadedPage, split_form_feeds


def sentence(index: int) -> str:
    return (
        f"Concept{index} describes how component{index} processes signal{index} "
        f"using method{index} and returns result{index} quickly."
    )


def paragraph(start: int, count: int = 5) -> str:
    return " ".join(sentence(index) for index in range(start, start + count))


def page_text(page: int, paragraphs: int = 6) -> str:
    base = page * 100
    return "\n\n".join(paragraph(base + idx * 5) for idx in range(paragraphs))


def three_page_document() -> str:
    return "\f".join(page_text(page) for page in (1, 2, 3))


def test_three_page_document_yields_chunks_on_every_page() -> None:
    text = three_page_document()
    assert 8000 < len(text) < 11000
    engine = ChunkingEngine()

    result = engine.chunk(split_form_feeds(text), "doc_1", source="1-2-notes.txt", source_name="notes.txt")

    assert len(result.chunks) >= 6
    assert all(len(chunk.content) >= 100 for chunk in result.chunks)
    assert {chunk.page for chunk in result.chunks} == {1, 2, 3}
    assert result.cache_hit is False
    first = result.chunks[0]
    assert first.metadata["source_name"] == "notes.txt"
    assert first.metadata["page_estimated"] is False
    assert first.chunk_id == "doc_1:0"


def test_spans_cover_the_whole_text() -> None:
    text = preprocess_text(page_text(1, paragraphs=12))
    splitter = RecursiveSplitter(chunk_size=1200, overlap=400)

    spans = splitter.split(text)

    assert len(spans) > 1
    assert spans[0].start == 0
    assert spans[-1].end == len(text)
    for span in spans:
        assert text[span.start : span.end] == span.text
    for previous, current in zip(spans, spans[1:]):
        assert current.start <= previous.end or not text[previous.end : current.start].strip()


def test_consecutive_spans_overlap_when_pieces_fit() -> None:
    text = paragraph(1, count=10)
    splitter = RecursiveSplitter(chunk_size=250, overlap=120)

    spans = splitter.split(text)

    assert len(spans) > 2
    assert any(current.start < previous.end for previous, current in zip(spans, spans[1:]))


def test_section_markers_are_preferred_split_points() -> None:
    text = preprocess_text(f"Section 1: Basics. {paragraph(1)} Section 2: Loops. {paragraph(20)}")
    splitter = RecursiveSplitter(chunk_size=len(text) - 50, overlap=0)

    spans = splitter.split(text)

    assert [span.text.split(":")[0] for span in spans] == ["Section 1", "Section 2"]
    assert spans[1].start == text.index("Section 2:")


def test_overlap_is_capped_at_a_third_of_the_chunk_size() -> None:
    plan = plan_chunking(["short text without any profile words"], overlap=900)
    assert plan.profile == "general"
    assert plan.overlap == plan.chunk_size // 3


def test_splitter_rejects_overlap_not_smaller_than_size() -> None:
    with pytest.raises(ValueError):
        RecursiveSplitter(chunk_size=100, overlap=100)


def test_unpaged_text_gets_estimated_pages() -> None:
    text = " ".join(sentence(index) for index in range(120))
    engine = ChunkingEngine(words_per_page=350)

    result = engine.chunk([LoadedPage(text=text)], "doc_2")

    pages = [chunk.page for chunk in result.chunks]
    assert pages == sorted(pages)
    assert pages[0] == 1
    assert max(pages) >= 4
    assert all(chunk.metadata["page_estimated"] for chunk in result.chunks)


def test_document_without_usable_text_raises_content_error() -> None:
    engine = ChunkingEngine()
    with pytest.raises(ContentError):
        engine.chunk([LoadedPage(text="   \n\n  ")], "doc_3")
    with pytest.raises(ContentError):
        engine.chunk([LoadedPage(text="Too short.")], "doc_3")


def test_low_quality_candidates_are_dropped() -> None:
    engine = ChunkingEngine()
    good = Chunk("doc", 0, 1, paragraph(1), {"word_count": 60, "semantic_density": 0.8, "readability": 0.9})
    ellipsis = Chunk(
        "doc", 1, 1, paragraph(10) + "...", {"word_count": 60, "semantic_density": 0.8, "readability": 0.9}
    )
    sparse = Chunk("doc", 2, 1, paragraph(20), {"word_count": 60, "semantic_density": 0.1, "readability": 0.9})

    assert engine.passes_quality(good)
    assert not engine.passes_quality(ellipsis)
    assert not engine.passes_quality(sparse)


def test_balance_keeps_every_page_when_truncating() -> None:
    engine = ChunkingEngine(target_total=3, min_per_page=1)
    chunks = [
        Chunk("doc", index, page, f"chunk {index}", {"semantic_density": density, "context_relevance": 0.5})
        for index, (page, density) in enumerate(
            [(1, 0.9), (1, 0.8), (1, 0.7), (1, 0.6), (2, 0.2), (3, 0.1)]
        )
    ]

    selected = engine.balance(chunks)

    assert len(selected) == 3
    assert {chunk.page for chunk in selected} == {1, 2, 3}
    assert [chunk.chunk_index for chunk in selected] == sorted(chunk.chunk_index for chunk in selected)
    assert selected[0].chunk_index == 0


def test_chunk_sets_are_served_from_cache() -> None:
    cache = CacheLayer(backend=MemoryBackend())
    engine = ChunkingEngine(cache=cache)
    pages = split_form_feeds(three_page_document())

    first = engine.chunk(pages, "doc_4")
    second = engine.chunk(pages, "doc_4")

    assert second.cache_hit is True
    assert [chunk.content for chunk in second.chunks] == [chunk.content for chunk in first.chunks]
    assert [chunk.page for chunk in second.chunks] == [chunk.page for chunk in first.chunks]
