from __future__ import annotations

"""Pure ranking functions: filtering, deduplication, scoring and page balancing."""

import hashlib
import math
import re
from dataclasses import dataclass, field
from pathlib import PurePath

from src.rag.intents import IntentTable
from src.rag.types import Candidate, ContextChunk, Document

TERM_STOPWORDS = frozenset(
    {"the", "and", "or", "in", "on", "at", "to", "for", "of", "with", "by", "give", "me", "all", "show"}
)
_TIMESTAMP_PREFIX_RE = re.compile(r"^\d+-\d+-")
_WHITESPACE_RE = re.compile(r"\s+")
_STRUCTURAL_REF_RE = re.compile(r"\b(section|lesson|chapter|part|unit)\s*(\d+)\b", re.IGNORECASE)

MIN_FILTERED_CONTENT_CHARS = 50
MIN_CONTENT_CHARS = 15


@dataclass(frozen=True)
class QueryProfile:
    """Query features shared by scoring and the relevance floor."""
    query: str
    intent: str
    open_ended: bool
    financial: bool
    words: tuple[str, ...]
    terms: tuple[str, ...]
    structural_refs: tuple[tuple[str, str], ...] = field(default_factory=tuple)

    @property
    def lowered(self) -> str:
        return self.query.lower()


@dataclass(frozen=True)
class RelevanceFloor:
    """Score and term-overlap minimums; lower for open-ended questions."""
    min_score: float = 1.0
    min_term_ratio: float = 0.15
    min_score_open: float = 0.5
    min_term_ratio_open: float = 0.1

    def for_query(self, profile: QueryProfile) -> tuple[float, float]:
        if profile.open_ended:
            return self.min_score_open, self.min_term_ratio_open
        return self.min_score, self.min_term_ratio


def build_profile(query: str, intents: IntentTable) -> QueryProfile:
    lowered = query.lower()
    words = tuple(word for word in lowered.split() if word)
    terms = tuple(word for word in words if len(word) > 2 and word not in TERM_STOPWORDS)
    refs = tuple((kind.lower(), number) for kind, number in _STRUCTURAL_REF_RE.findall(query))
    intent = intents.classify(query)
    return QueryProfile(
        query=query,
        intent=intent,
        open_ended=intents.is_open_ended(query),
        financial=intent == "financial",
        words=words,
        terms=terms,
        structural_refs=refs,
    )


def content_hash(content: str) -> str:
    """Hash of the whitespace-free, lowercased first 100 characters."""
    prefix = _WHITESPACE_RE.sub("", content[:100]).lower()
    return hashlib.md5(prefix.encode("utf-8")).hexdigest()


def deduplicate(candidates: list[Candidate]) -> list[Candidate]:
    """Keep the first candidate per content hash, preserving strategy order."""
    seen: set[str] = set()
    unique: list[Candidate] = []
    for candidate in candidates:
        key = content_hash(candidate.document.content)
        if key in seen:
            continue
        seen.add(key)
        unique.append(candidate)
    return unique


def _basename(value: str) -> str:
    return PurePath(value.replace("\\", "/")).name.strip()


def matches_document_filter(document: Document, document_filter: str) -> bool:
    """True when the chunk belongs to the filtered document and carries usable content."""
    wanted = _basename(document_filter)
    if not wanted:
        return False
    metadata = document.metadata
    source = _basename(str(metadata.get("source") or ""))
    names = {
        source,
        str(metadata.get("source_name") or "").strip(),
        str(metadata.get("filename") or "").strip(),
        str(metadata.get("document_id") or "").strip(),
        _TIMESTAMP_PREFIX_RE.sub("", source),
    }
    names.discard("")
    if wanted not in names:
        return False
    if len(document.content.strip()) <= MIN_FILTERED_CONTENT_CHARS:
        return False
    return metadata.get("chunk_index") is not None or metadata.get("page") is not None


def structural_match(content: str, profile: QueryProfile) -> bool:
    """True when the content names a section or lesson the query explicitly asks for."""
    lowered = content.lower()
    for kind, number in profile.structural_refs:
        if re.search(rf"\b{kind}\s*{number}\b", lowered):
            return True
    return False


def term_ratio(content: str, profile: QueryProfile) -> float:
    if not profile.terms:
        return 1.0
    lowered = content.lower()
    hits = sum(1 for term in profile.terms if term in lowered)
    return hits / len(profile.terms)


def score_candidate(document: Document, profile: QueryProfile) -> float:
    """Composite relevance of one chunk for the query; never negative."""
    content = document.content
    lowered = content.lower()
    metadata = document.metadata
    score = 0.0

    for word in profile.words:
        if len(word) < 2:
            continue
        score += len(re.findall(rf"\b{re.escape(word)}\b", lowered)) * 0.5

    for kind, number in profile.structural_refs:
        if re.search(rf"\b{kind}\s*{number}\b", lowered):
            score += 10
            if kind == "section" and "lesson" in lowered:
                score += 5

    if profile.lowered.strip() and profile.lowered.strip() in lowered:
        score += 3

    if metadata.get("content_type", "general") == profile.intent:
        score += 2
    if float(metadata.get("structure_score") or 0) > 1:
        score += 1
    if float(metadata.get("semantic_density") or 0) > 0.6:
        score += 1

    terms = [str(term).lower() for term in metadata.get("technical_terms") or []]
    if terms and any(word in term for word in profile.words for term in terms):
        score += 1.5

    score += min(len(content) / 1000, 2)

    readability = metadata.get("readability")
    if readability is not None and float(readability) < 0.3:
        score -= 0.5

    if document.page > 0:
        score += 0.5

    score = max(0.0, score)
    return score if math.isfinite(score) else 0.0


def passes_relevance_floor(
    document: Document,
    score: float,
    profile: QueryProfile,
    floor: RelevanceFloor,
    intents: IntentTable,
) -> bool:
    content = document.content
    if len(content.strip()) < MIN_CONTENT_CHARS:
        return False
    if profile.financial and intents.has_financial_content(content):
        return True
    if structural_match(content, profile):
        return True
    min_score, min_ratio = floor.for_query(profile)
    if score < min_score:
        return False
    return term_ratio(content, profile) >= min_ratio


def balance_pages(ranked: list[ContextChunk], top_k: int) -> list[ContextChunk]:
    """Cap each page at its proportional share, then backfill by score.

    ``ranked`` must be sorted by descending score. Every page with a chunk is
    represented before any page receives a second slot (as long as
    ``top_k`` allows), and the result is ordered by score with ties broken
    by page.
    """
    if top_k <= 0 or not ranked:
        return []
    pages: list[int] = []
    for chunk in ranked:
        if chunk.page > 0 and chunk.page not in pages:
            pages.append(chunk.page)
    if len(pages) <= 1:
        return _order(ranked[:top_k])

    per_page_cap = max(1, math.ceil(top_k / len(pages)))
    selected: list[ContextChunk] = []
    taken: set[int] = set()

    for page in pages:
        for idx, chunk in enumerate(ranked):
            if chunk.page == page:
                selected.append(chunk)
                taken.add(idx)
                break

    counts = {page: 1 for page in pages}
    for idx, chunk in enumerate(ranked):
        if idx in taken or chunk.page <= 0:
            continue
        if counts[chunk.page] < per_page_cap:
            counts[chunk.page] += 1
            selected.append(chunk)
            taken.add(idx)

    for idx, chunk in enumerate(ranked):
        if idx not in taken:
            selected.append(chunk)
            taken.add(idx)

    return _order(selected[:top_k])


def _order(chunks: list[ContextChunk]) -> list[ContextChunk]:
    return sorted(chunks, key=lambda chunk: (-chunk.score, chunk.page))


def page_distribution(chunks: list[ContextChunk]) -> dict[int, int]:
    distribution: dict[int, int] = {}
    for chunk in chunks:
        distribution[chunk.page] = distribution.get(chunk.page, 0) + 1
    return distribution
