from __future__ import annotations

"""Non-LLM answerer that stitches cited extracts from the ranked context."""

import re
from dataclasses import dataclass

from src.rag.citations import cite
from src.rag.types import ContextChunk

_SENTENCE_RE = re.compile(r"(?<=[.!?])\s+")
_WORD_RE = re.compile(r"[a-z0-9]+")
_STOPWORDS = frozenset({"the", "and", "for", "with", "what", "how", "about", "from", "this", "that", "give", "show", "tell"})

_DEPTH_LIMITS = {
    "quick": (1, 2, 400),
    "standard": (3, 2, 1200),
    "professional": (5, 3, 2400),
}


@dataclass
class ExtractiveAnswerer:
    """Pick the sentences that best overlap the query, each with its reference label."""
    max_chars: int = 1200

    def generate(self, query: str, contexts: list[ContextChunk], depth: str = "standard") -> str:
        """Generate an extractive answer from context."""
        if not contexts:
            return ""
        max_chunks, sentences_per_chunk, budget = _DEPTH_LIMITS.get(depth, _DEPTH_LIMITS["standard"])
        budget = min(budget, self.max_chars) if depth == "standard" else budget
        terms = {word for word in _WORD_RE.findall(query.lower()) if len(word) > 2 and word not in _STOPWORDS}
        ranked = sorted(contexts, key=lambda chunk: chunk.score, reverse=True)[:max_chunks]
        lines: list[str] = []
        used = 0
        for idx, chunk in enumerate(ranked, start=1):
            extract = self._best_sentences(chunk.content, terms, sentences_per_chunk)
            if not extract:
                continue
            line = f"{extract} {cite(chunk, chunk.reference_id or idx)}"
            if used + len(line) > budget and lines:
                break
            lines.append(self._truncate(line, budget))
            used += len(line)
        if not lines:
            return ""
        return "Based on your documents:\n\n" + "\n\n".join(f"- {line}" for line in lines)

    def _best_sentences(self, content: str, terms: set[str], limit: int) -> str:
        sentences = [s.strip() for s in _SENTENCE_RE.split(" ".join(content.split())) if s.strip()]
        if not sentences:
            return ""
        scored = [
            (sum(1 for word in _WORD_RE.findall(sentence.lower()) if word in terms), -idx, sentence)
            for idx, sentence in enumerate(sentences)
        ]
        best = sorted(scored, reverse=True)[:limit]
        best.sort(key=lambda item: -item[1])
        return " ".join(sentence for _, _, sentence in best)

    def _truncate(self, text: str, limit: int) -> str:
        """Trim text to the max character budget without cutting words."""
        if len(text) <= limit:
            return text
        return text[:limit].rsplit(" ", 1)[0] + "..."
