from __future__ import annotations

"""Search strategies run against the vector index for one query."""

import logging
import math
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable

from src.rag.intents import IntentTable
from src.rag.types import Candidate, SearchResult

logger = logging.getLogger(__name__)

SearchFn = Callable[[str, int], list[SearchResult]]

FINANCIAL_TERMS = (
    "liabilities", "shareholders equity", "stockholders equity", "revenue", "assets",
    "current assets", "cash", "debt", "balance sheet", "income statement",
    "net income", "operating income", "gross margin", "total revenue", "current liabilities",
    "long-term debt", "retained earnings", "comprehensive income", "accounts payable",
    "accounts receivable", "inventory", "property plant equipment", "goodwill",
    "intangible assets", "deferred tax", "common stock", "accumulated other comprehensive",
)

FINANCIAL_SYNONYMS: dict[str, tuple[str, ...]] = {
    "liabilities": ("debt", "obligations"),
    "equity": ("shareholders equity", "stockholders equity"),
    "revenue": ("sales", "income"),
    "assets": ("current assets", "total assets"),
}

FINANCIAL_EXPANSIONS: dict[str, str] = {
    "liabilities": "current liabilities long-term debt accounts payable",
    "equity": "retained earnings common stock capital",
    "revenue": "net revenue total revenue operating revenue",
    "assets": "cash inventory property equipment",
}

_FILLER_WORDS = frozenset(
    {"what", "where", "when", "which", "also", "tell", "about", "give", "show", "information", "the", "and", "for", "with"}
)
_SECTION_RE = re.compile(r"\b(section|lesson|chapter|part|unit)\s*(\d+)\b(?:[:\s]+(.+))?", re.IGNORECASE)
_TECH_TERMS_RE = re.compile(
    r"\b(node\.?js|javascript|python|express|api|server|module|function|class|method|database|sql)\b"
)
_EDU_TERMS_RE = re.compile(r"\b(section|lesson|chapter|exercise|example|tutorial|unit|part)\b")
_NUMBER_RE = re.compile(r"\b\d+\b")
_WORD_RE = re.compile(r"^[a-z][a-z0-9\-]*$")

_CONTEXT_TERMS: tuple[tuple[re.Pattern[str], tuple[str, ...]], ...] = (
    (re.compile(r"\b(?:node|javascript|js|python|code|programming)\b", re.IGNORECASE), ("programming", "development", "server", "backend")),
    (re.compile(r"\b(?:section|lesson|chapter|unit)\b", re.IGNORECASE), ("tutorial", "learning", "education", "course")),
    (re.compile(r"\b(?:function|method|class|syntax)\b", re.IGNORECASE), ("programming", "syntax", "implementation", "example")),
    (re.compile(r"\b(?:liabilities|equity|assets|balance)\b", re.IGNORECASE), ("balance sheet", "financial position")),
    (re.compile(r"\b(?:revenue|income|profit)\b", re.IGNORECASE), ("income statement", "profit", "earnings")),
)


@dataclass(frozen=True)
class SearchContext:
    """Everything a strategy needs to issue searches for one query."""
    query: str
    top_k: int
    fetch_k: int
    search: SearchFn
    intents: IntentTable

    @property
    def lowered(self) -> str:
        return self.query.lower()

    @property
    def financial(self) -> bool:
        return self.intents.is_financial(self.query)

    def structural_refs(self) -> list[tuple[str, str, str]]:
        """``(kind, number, trailing title)`` for each explicit section/lesson reference."""
        return [
            (match.group(1).lower(), match.group(2), (match.group(3) or "").strip())
            for match in _SECTION_RE.finditer(self.query)
        ]


class SearchStrategy(ABC):
    """One way of turning a query into candidate chunks."""

    name = "base"

    @abstractmethod
    def queries(self, ctx: SearchContext) -> list[tuple[str, int]]:
        """Return ``(search text, limit)`` pairs to run against the index."""

    def search(self, ctx: SearchContext) -> list[Candidate]:
        candidates: list[Candidate] = []
        seen: set[str] = set()
        for text, limit in self.queries(ctx):
            text = text.strip()
            if len(text) <= 2 or text in seen or limit <= 0:
                continue
            seen.add(text)
            for result in ctx.search(text, limit):
                candidates.append(Candidate(document=result.document, similarity=result.score, strategy=self.name))
        logger.debug("strategy_complete", extra={"strategy": self.name, "candidates": len(candidates)})
        return candidates


class DirectSimilarity(SearchStrategy):
    """The query as typed."""

    name = "direct"

    def queries(self, ctx: SearchContext) -> list[tuple[str, int]]:
        return [(ctx.query, ctx.fetch_k)]


class KeywordExpansion(SearchStrategy):
    """Per-keyword searches built from domain vocabulary and explicit references."""

    name = "keyword"

    def queries(self, ctx: SearchContext) -> list[tuple[str, int]]:
        keywords = self.keywords(ctx)
        if not keywords:
            return []
        limit = max(2, math.ceil(ctx.fetch_k / len(keywords)))
        searches = [(keyword, limit) for keyword in keywords]
        searches.append((expand_keywords(ctx.query), ctx.top_k))
        return searches

    def keywords(self, ctx: SearchContext) -> list[str]:
        lowered = ctx.lowered
        keywords: list[str] = []
        if ctx.financial:
            keywords.extend(
                term for term in FINANCIAL_TERMS
                if term in lowered or any(word in lowered.split() for word in term.split())
            )
            keywords.extend(
                word for word in lowered.split()
                if len(word) > 3 and word not in _FILLER_WORDS and _WORD_RE.match(word)
            )
            return list(dict.fromkeys(keywords))[:8]
        refs = ctx.structural_refs()
        if refs:
            for kind, number, title in refs:
                keywords.extend([f"{kind} {number}", f"{kind}{number}"])
                keywords.extend(
                    word for word in title.lower().split()
                    if len(word) > 3 and word not in _FILLER_WORDS
                )
            return list(dict.fromkeys(keywords))[:8]
        keywords = [
            word for word in lowered.split()
            if 2 < len(word) < 30 and _WORD_RE.match(word) and word not in _FILLER_WORDS
        ]
        return list(dict.fromkeys(keywords))[:6]


class SemanticVariation(SearchStrategy):
    """Paraphrases and synonym substitutions of the query."""

    name = "variation"

    def queries(self, ctx: SearchContext) -> list[tuple[str, int]]:
        limit = max(2, min(8, ctx.top_k))
        return [(variation, limit) for variation in semantic_variations(ctx.query)[:5]]


class ContextualTerms(SearchStrategy):
    """Slices of the query plus domain context words and explicit section lookups."""

    name = "context"

    def queries(self, ctx: SearchContext) -> list[tuple[str, int]]:
        words = ctx.query.split()
        searches: list[tuple[str, int]] = []
        for kind, number, _ in ctx.structural_refs():
            searches.append((f"{kind.capitalize()} {number}", ctx.top_k))
            searches.append((f"{kind} {number}", ctx.top_k))
        if len(words) > 3:
            searches.append((" ".join(words[:3]), 5))
            searches.append((" ".join(words[-3:]), 5))
            searches.append((" ".join(words[1:-1]), 5))
        searches.append((add_contextual_terms(ctx.query), max(2, min(10, ctx.top_k))))
        return searches


def default_strategies() -> list[SearchStrategy]:
    """Fixed evaluation order; later strategies never override earlier hits."""
    return [DirectSimilarity(), KeywordExpansion(), SemanticVariation(), ContextualTerms()]


def expand_keywords(query: str) -> str:
    lowered = query.lower()
    extras = _TECH_TERMS_RE.findall(lowered) + _EDU_TERMS_RE.findall(lowered) + _NUMBER_RE.findall(lowered)
    return f"{query} {' '.join(dict.fromkeys(extras))}".strip()


def add_contextual_terms(query: str) -> str:
    terms: list[str] = []
    for pattern, words in _CONTEXT_TERMS:
        if pattern.search(query):
            terms.extend(words)
    return f"{query} {' '.join(dict.fromkeys(terms))}".strip()


def semantic_variations(query: str) -> list[str]:
    lowered = query.lower()
    variations: list[str] = []
    for term, synonyms in FINANCIAL_SYNONYMS.items():
        if term in lowered:
            pattern = re.compile(re.escape(term), re.IGNORECASE)
            variations.extend(pattern.sub(synonym, query) for synonym in synonyms)
            variations.append(f"{query} {FINANCIAL_EXPANSIONS[term]}")
    for match in _SECTION_RE.finditer(query):
        kind, number = match.group(1).lower(), match.group(2)
        if kind in {"section", "chapter", "part", "unit"}:
            variations.extend(
                [f"{kind} {number} content", f"{kind} {number} lessons", f"chapter {number}", f"part {number}", f"unit {number}"]
            )
        else:
            variations.extend(
                [f"{kind} {number} content", f"{kind} {number} tutorial", f"exercise {number}", f"example {number}"]
            )
    if "content" in lowered:
        variations.extend(
            re.sub(r"content", replacement, query, flags=re.IGNORECASE)
            for replacement in ("information", "details", "material")
        )
    return [variation for variation in dict.fromkeys(variations) if variation.strip().lower() != lowered]
