from __future__ import annotations

"""Pure ranking functions: filters, deduplication, scoring, floors and page balance."""

from src.rag.intents import default_intent_table
from src.rag.types import Candidate, ContextChunk, Document
from src.retrieval.ranking import (
    RelevanceFloor,
    balance_pages,
    build_profile,
    deduplicate,
    matches_document_filter,
    passes_relevance_floor,
    score_candidate,
)
from src.tests.helpers import course_chunk

LONG_TEXT = "Closures capture variables from the surrounding scope and keep them alive after return."


def chunk(page: int, score: float, content: str | None = None) -> ContextChunk:
    return ContextChunk(
        document_id=f"doc:{page}:{score}",
        content=content or f"Page {page} chunk scored {score}",
        metadata={"page": page},
        score=score,
    )


def test_deduplicate_keeps_first_candidate_in_strategy_order() -> None:
    first = Candidate(Document("a:0", "Closures capture variables " + "x" * 120), 0.9, "direct")
    duplicate = Candidate(Document("a:1", "closures capture\tVARIABLES " + "x" * 120), 0.95, "keyword")
    other = Candidate(Document("a:2", "Promises resolve later."), 0.5, "variation")

    unique = deduplicate([first, duplicate, other])

    assert [candidate.strategy for candidate in unique] == ["direct", "variation"]


def test_document_filter_matches_stored_and_original_names() -> None:
    document = course_chunk(0, 1, LONG_TEXT, name="notes.pdf")

    assert matches_document_filter(document, "notes.pdf")
    assert matches_document_filter(document, "uploads/notes.pdf")
    assert matches_document_filter(document, "doc_course")
    assert not matches_document_filter(document, "other.pdf")
    assert not matches_document_filter(document, "  ")


def test_document_filter_strips_upload_prefix_from_source() -> None:
    document = Document(
        "doc:0",
        LONG_TEXT,
        {"source": "/data/uploads/1700000000000-42-notes.pdf", "chunk_index": 0},
    )
    assert matches_document_filter(document, "notes.pdf")


def test_document_filter_rejects_short_or_unindexed_chunks() -> None:
    short = course_chunk(0, 1, "Too short to cite.", name="notes.pdf")
    unindexed = Document("doc:0", LONG_TEXT, {"source_name": "notes.pdf"})

    assert not matches_document_filter(short, "notes.pdf")
    assert not matches_document_filter(unindexed, "notes.pdf")


def test_explicit_section_reference_dominates_the_score() -> None:
    profile = build_profile("Section 3: Overview", default_intent_table())
    target = course_chunk(2, 4, "Section 3: Overview. This section introduces asynchronous programming.")
    neighbour = course_chunk(1, 2, "Section 2: Variables. Variables hold values for later use.")

    assert profile.structural_refs == (("section", "3"),)
    assert score_candidate(target, profile) > 10
    assert score_candidate(target, profile) > score_candidate(neighbour, profile) + 10


def test_score_is_never_negative() -> None:
    profile = build_profile("closures", default_intent_table())
    document = Document("d:0", "x", {"readability": 0.0})
    assert score_candidate(document, profile) >= 0.0


def test_relevance_floor_rejects_unrelated_content() -> None:
    intents = default_intent_table()
    floor = RelevanceFloor()
    profile = build_profile("What is photosynthesis in plants?", intents)
    unrelated = Document("d:0", "The stock market closed higher today after a quiet session.", {})

    score = score_candidate(unrelated, profile)

    assert not passes_relevance_floor(unrelated, score, profile, floor, intents)


def test_relevance_floor_admits_structural_matches_regardless_of_score() -> None:
    intents = default_intent_table()
    profile = build_profile("Lesson 7 please", intents)
    document = Document("d:0", "Lesson 7 recap and exercises.", {})

    assert passes_relevance_floor(document, 0.0, profile, RelevanceFloor(), intents)


def test_relevance_floor_is_lower_for_open_ended_questions() -> None:
    intents = default_intent_table()
    floor = RelevanceFloor(min_score=1.0, min_score_open=0.5)
    open_profile = build_profile("Explain closures", intents)
    closed_profile = build_profile("closures scope rules", intents)

    assert open_profile.open_ended
    assert not closed_profile.open_ended
    assert floor.for_query(open_profile) == (0.5, floor.min_term_ratio_open)
    assert floor.for_query(closed_profile) == (1.0, floor.min_term_ratio)


def test_balance_pages_represents_every_page() -> None:
    ranked = [chunk(1, 9.0), chunk(1, 8.0), chunk(1, 7.0), chunk(1, 6.0), chunk(2, 2.0), chunk(3, 1.0)]

    selected = balance_pages(ranked, top_k=4)

    assert len(selected) == 4
    assert {item.page for item in selected} == {1, 2, 3}
    assert [item.score for item in selected] == [9.0, 8.0, 2.0, 1.0]


def test_balance_pages_backfills_by_score() -> None:
    ranked = [chunk(1, 9.0), chunk(1, 8.0), chunk(1, 7.0), chunk(2, 2.0)]

    selected = balance_pages(ranked, top_k=4)

    assert [item.score for item in selected] == [9.0, 8.0, 7.0, 2.0]


def test_balance_pages_breaks_ties_by_page() -> None:
    ranked = [chunk(2, 5.0), chunk(1, 5.0)]

    selected = balance_pages(ranked, top_k=2)

    assert [item.page for item in selected] == [1, 2]


def test_balance_pages_single_page_truncates() -> None:
    ranked = [chunk(1, 3.0), chunk(1, 2.0), chunk(1, 1.0)]
    assert [item.score for item in balance_pages(ranked, top_k=2)] == [3.0, 2.0]
    assert balance_pages(ranked, top_k=0) == []
