from __future__ import annotations

"""Structural and semantic analysis of chunk text."""

import math
import re
from typing import Any

STOPWORDS = frozenset(
    {
        "the", "a", "an", "and", "or", "but", "in", "on", "at", "to", "for", "of",
        "with", "by", "is", "are", "was", "were", "be", "been", "have", "has", "had",
        "do", "does", "did", "will", "would", "could", "should",
    }
)

_TOPIC_STOPWORDS = STOPWORDS | {"this", "that", "these", "those", "from", "into", "than", "then", "there", "their", "which", "when", "what", "about"}

_LIST_RE = re.compile(r"^\s*[\d\-*•]\s+", re.MULTILINE)
_HEADER_RE = re.compile(r"^[A-Z][A-Za-z\s]+:?\s*$", re.MULTILINE)
_BULLET_RE = re.compile(r"^\s*[-*•]\s+", re.MULTILINE)
_NUMBER_RE = re.compile(r"\d")
_QUESTION_RE = re.compile(r"\?")

CONTENT_TYPE_PATTERNS: tuple[tuple[str, re.Pattern[str]], ...] = (
    ("definition", re.compile(r"\b(?:definition|means|refers to|is defined as|can be described as)\b", re.IGNORECASE)),
    ("example", re.compile(r"\b(?:example|for instance|such as|e\.g\.|i\.e\.|consider|suppose)", re.IGNORECASE)),
    ("procedure", re.compile(r"\b(?:step|process|procedure|method|algorithm|workflow|instructions)", re.IGNORECASE)),
    ("comparison", re.compile(r"\b(?:versus|compared to|difference|similarity|in contrast|however)\b", re.IGNORECASE)),
    ("explanation", re.compile(r"\b(?:because|therefore|thus|hence|as a result|consequently)\b", re.IGNORECASE)),
    ("list", _LIST_RE),
    ("table", re.compile(r"\|.*\||\t.*\t")),
    ("code", re.compile(r"```|`[^`]+`|\bfunction\b|\bclass\b|\bvar |\blet |\bconst ")),
    ("question", re.compile(r"\?|\b(?:what|how|when|where|why|who)\b", re.IGNORECASE)),
    ("summary", re.compile(r"\b(?:summary|conclusion|overview|recap|in summary)\b", re.IGNORECASE)),
    ("header", _HEADER_RE),
)

_DEFINITION_RE = CONTENT_TYPE_PATTERNS[0][1]
_EXAMPLE_RE = CONTENT_TYPE_PATTERNS[1][1]
_PROCEDURE_RE = CONTENT_TYPE_PATTERNS[2][1]

_STRUCTURE_BONUSES: tuple[tuple[re.Pattern[str], float], ...] = (
    (re.compile(r"\b(?:definition|example|procedure|step)\b", re.IGNORECASE), 2),
    (re.compile(r"\d+\.\s+"), 2),
    (re.compile(r"[.!?]\s*[A-Z]"), 1),
    (re.compile(r"\b(?:chapter|section|part|subsection)\b", re.IGNORECASE), 2),
    (re.compile(r"\b(?:introduction|conclusion|summary)\b", re.IGNORECASE), 1),
    (re.compile(r"\b(?:first|second|third|finally|lastly)\b", re.IGNORECASE), 1),
    (re.compile(r"\b\d+%"), 1),
    (re.compile(r"\$\d+"), 1),
    (re.compile(r"\b\d{4}\b"), 1),
    (re.compile(r"\b[A-Z]{2,}\b"), 1),
)

_TECH_TERM_PATTERNS = (
    re.compile(r"^[A-Z][a-z]+[A-Z]"),
    re.compile(r"[a-z]+_[a-z]+"),
    re.compile(r"\b[A-Z]{2,}\b"),
    re.compile(r"\b\w+\(\)"),
    re.compile(r"\b\d+\.\d+\b"),
)
_KEY_PHRASE_RE = re.compile(
    r"\b(?:important|key|main|primary|essential|critical|fundamental)\s+\w+(?:\s+\w+){0,3}",
    re.IGNORECASE,
)
_SENTENCE_SPLIT_RE = re.compile(r"[.!?]+")
_SECTION_MARKER_RE = re.compile(r"\b(?:section|lesson|chapter)\s+\d+", re.IGNORECASE)
_TECHNICAL_CONTEXT_RE = re.compile(
    r"\b(?:function|class|method|api|algorithm|code|programming|javascript|python|node|server|database)\b",
    re.IGNORECASE,
)
_EDU_BOOST_RE = re.compile(r"\b(?:section|lesson|chapter|exercise)\b", re.IGNORECASE)
_EXAMPLE_BOOST_RE = re.compile(r"\b(?:example|for instance|such as|like)\b", re.IGNORECASE)
_TOPIC_WORD_RE = re.compile(r"[a-z][a-z0-9_]{3,}")

KEY_TOPIC_PATTERNS: dict[str, re.Pattern[str]] = {
    "programming": re.compile(r"\b(?:programming|code|function|variable|algorithm)\b", re.IGNORECASE),
    "web development": re.compile(r"\b(?:html|css|javascript|frontend|backend|node)\b", re.IGNORECASE),
    "databases": re.compile(r"\b(?:database|sql|query|table|index)\b", re.IGNORECASE),
    "finance": re.compile(r"\b(?:assets|liabilities|equity|revenue|income|cash flow)\b", re.IGNORECASE),
    "mathematics": re.compile(r"\b(?:equation|theorem|formula|calculate|derivative)\b", re.IGNORECASE),
    "science": re.compile(r"\b(?:experiment|hypothesis|theory|molecule|energy)\b", re.IGNORECASE),
    "business": re.compile(r"\b(?:market|customer|strategy|management|sales)\b", re.IGNORECASE),
    "education": re.compile(r"\b(?:lesson|course|student|exercise|learning)\b", re.IGNORECASE),
}


def word_list(text: str) -> list[str]:
    return text.split()


def classify_content(text: str) -> str:
    """Return the first content type whose pattern matches, else ``general``."""
    for name, pattern in CONTENT_TYPE_PATTERNS:
        if pattern.search(text):
            return name
    return "general"


def structure_score(text: str) -> float:
    """Score structural richness: lists, headers, numbering, sentence shape."""
    score = 0.0
    if _LIST_RE.search(text):
        score += 3
    if _HEADER_RE.search(text):
        score += 3
    for pattern, bonus in _STRUCTURE_BONUSES:
        if pattern.search(text):
            score += bonus
    if len(text) < 50:
        score -= 2
    if not re.search(r"[.!?]", text):
        score -= 1
    return max(0.0, score)


def semantic_density(text: str) -> float:
    """Distinct non-stopword ratio, boosted by technical-looking words."""
    words = text.lower().split()
    if not words:
        return 0.0
    meaningful = [word for word in set(words) if len(word) > 3 and word not in STOPWORDS]
    technical = sum(1 for word in meaningful if "_" in word or len(word) > 6)
    return round(len(meaningful) / len(words) + technical * 0.1, 4)


def readability_score(text: str) -> float:
    """Inverse of average sentence length, clamped to [0, 1]."""
    sentences = len(_SENTENCE_SPLIT_RE.split(text))
    words = len(re.split(r"\s+", text))
    average = words / max(sentences, 1)
    return round(min(1.0, max(0.0, 1 - (average - 15) / 30)), 4)


def technical_terms(text: str, limit: int = 10) -> list[str]:
    terms: list[str] = []
    for word in text.split():
        if len(word) <= 2:
            continue
        if any(pattern.search(word) for pattern in _TECH_TERM_PATTERNS) and word not in terms:
            terms.append(word)
        if len(terms) >= limit:
            break
    return terms


def key_phrases(text: str, limit: int = 5) -> list[str]:
    phrases: list[str] = []
    for sentence in _SENTENCE_SPLIT_RE.split(text):
        for match in _KEY_PHRASE_RE.findall(sentence):
            phrase = match.strip()
            if phrase and phrase not in phrases:
                phrases.append(phrase)
            if len(phrases) >= limit:
                return phrases
    return phrases


def semantic_context(text: str) -> dict[str, Any]:
    markers = [match.group(0) for match in _SECTION_MARKER_RE.finditer(text)]
    educational = bool(markers)
    technical = bool(_TECHNICAL_CONTEXT_RE.search(text))
    if technical and educational:
        content_type = "educational-technical"
    elif technical:
        content_type = "technical"
    elif educational:
        content_type = "educational"
    else:
        content_type = "general"
    topics = [name for name, pattern in KEY_TOPIC_PATTERNS.items() if pattern.search(text)]
    return {
        "is_educational": educational,
        "section_markers": list(dict.fromkeys(markers))[:5],
        "semantic_type": content_type,
        "has_structure": bool(_LIST_RE.search(text) or _HEADER_RE.search(text)),
        "key_topics": topics,
    }


def _topic_words(text: str) -> set[str]:
    words = [word for word in _TOPIC_WORD_RE.findall(text.lower()) if word not in _TOPIC_STOPWORDS]
    return set(words[:10])


def topic_continuity(first: str, second: str) -> float:
    """Jaccard overlap of the leading topic words of two chunks."""
    a = _topic_words(first)
    b = _topic_words(second)
    if not a or not b:
        return 0.0
    return len(a & b) / len(a | b)


def context_relevance(text: str, previous: str | None, following: str | None) -> float:
    """Score how well a chunk stands within its neighbourhood."""
    score = 0.5
    if _EDU_BOOST_RE.search(text):
        score += 0.3
    if _LIST_RE.search(text):
        score += 0.2
    if _EXAMPLE_BOOST_RE.search(text):
        score += 0.15
    for neighbour in (previous, following):
        if neighbour and topic_continuity(text, neighbour) > 0.1:
            score += 0.1
    return round(min(score, 1.0), 4)


def analyze_chunk(
    text: str,
    previous: str | None = None,
    following: str | None = None,
) -> dict[str, Any]:
    """Build the enrichment bundle stored alongside a chunk."""
    words = word_list(text)
    bundle: dict[str, Any] = {
        "word_count": len(words),
        "has_numbers": bool(_NUMBER_RE.search(text)),
        "has_lists": bool(_LIST_RE.search(text)),
        "has_headers": bool(_HEADER_RE.search(text)),
        "has_bullets": bool(_BULLET_RE.search(text)),
        "has_definitions": bool(_DEFINITION_RE.search(text)),
        "has_examples": bool(_EXAMPLE_RE.search(text)),
        "has_procedures": bool(_PROCEDURE_RE.search(text)),
        "has_questions": bool(_QUESTION_RE.search(text)),
        "content_type": classify_content(text),
        "structure_score": structure_score(text),
        "semantic_density": semantic_density(text),
        "readability": readability_score(text),
        "technical_terms": technical_terms(text),
        "key_phrases": key_phrases(text),
        "context_relevance": context_relevance(text, previous, following),
    }
    bundle.update(semantic_context(text))
    return bundle


def quality_rank(metadata: dict[str, Any]) -> float:
    """Ranking used when selecting chunks per page."""
    density = float(metadata.get("semantic_density") or 0.0)
    relevance = float(metadata.get("context_relevance") or 0.0)
    bonus = 0.3 if metadata.get("is_educational") else 0.0
    value = density * 0.4 + relevance * 0.3 + bonus
    return value if math.isfinite(value) else 0.0
