from __future__ import annotations

"""Query answering: greeting short-circuit, retrieval, topic checks, prompt and LLM call."""

import asyncio
import logging
import time
from collections import Counter
from dataclasses import dataclass, field
from typing import Any

from src.app.metrics import record_query
from src.errors import NoRelevantContentFound, ValidationError, describe_error
from src.monitoring.monitor import PerformanceMonitor
from src.rag.answerer import ExtractiveAnswerer
from src.rag.citations import Reference, append_reference_footer, build_references
from src.rag.intents import IntentTable, default_intent_table
from src.rag.llm import LLM_REMEDIES, Answerer, LLMError, LLMTimeoutError
from src.rag.prompts import build_prompt, normalize_depth, normalize_mode
from src.retrieval.engine import RetrievalEngine, RetrievalResult

logger = logging.getLogger(__name__)

GREETING_ANSWER = (
    "Hello! I'm your learning assistant. I answer questions using the documents you upload, "
    "with page references for everything I say. Upload a document and ask me about its content."
)
GREETING_SUGGESTIONS = [
    "Upload a document to get started",
    "Ask about specific topics in your documents",
    "Try: 'What is the main concept in this document?'",
    "Try: 'Explain [topic] from the uploaded material'",
]
NO_RESULTS_SUGGESTIONS = [
    "Upload a document first using the upload section",
    "Wait for document processing to complete",
    "Try rephrasing your question",
    "Use simpler or more specific keywords",
]
FILTERED_SUGGESTIONS = [
    "Remove the document filter to search all uploaded documents",
    "Select a different document that covers this topic",
    "Try rephrasing your question to match the document's content",
]
DEGRADED_SUGGESTIONS = [
    "Try again in a few moments",
    "Check that the vector index and embedding service are running",
]
TIMEOUT_SUGGESTIONS = [
    "Try a shorter or more specific question",
    "Use the quick response depth",
    "Try again in a few moments",
]

KNOWN_TOPICS = (
    "javascript", "node", "nodejs", "programming", "code", "software", "development",
    "human resource", "management", "hr", "employee", "business", "organization",
    "marketing", "strategy", "customer", "sales", "brand",
    "finance", "accounting", "money", "budget", "financial",
    "education", "learning", "teaching", "student", "course",
    "health", "medical", "medicine", "patient", "treatment",
    "legal", "law", "contract", "agreement", "regulation",
    "science", "research", "study", "analysis", "data",
)
FALLBACK_TOPICS = "various technical topics"

_EDUCATIONAL_MARKERS = ("section", "lesson", "document", "content", "give me", "show me", "chapter", "part")
_MISMATCH_STOPWORDS = frozenset(
    {"the", "and", "or", "in", "on", "at", "to", "for", "of", "with", "by", "is", "are", "a", "an"}
)
_MISMATCH_SAMPLE = 8
_MISMATCH_RATIO = 0.25


@dataclass
class SynthesisResult:
    query: str
    answer: str
    outcome: str
    intent: str
    references: list[Reference] = field(default_factory=list)
    suggestions: list[str] = field(default_factory=list)
    cache_hit: bool = False
    degraded: bool = False
    document_filter: str | None = None
    mode: str = "standard"
    depth: str = "standard"
    provider: str = "extractive"
    available_topics: list[str] = field(default_factory=list)
    timings: dict[str, float] = field(default_factory=dict)

    @property
    def total_time(self) -> float:
        return self.timings.get("total", 0.0)

    def performance(self) -> dict[str, Any]:
        return {
            "total_time": round(self.total_time, 4),
            "retrieval_time": round(self.timings.get("retrieval", 0.0), 4),
            "generation_time": round(self.timings.get("generation", 0.0), 4),
            "cache_hit": self.cache_hit,
            "context_sections": len(self.references),
        }


def is_educational_query(query: str) -> bool:
    lowered = query.lower()
    return any(marker in lowered for marker in _EDUCATIONAL_MARKERS)


def _mismatch_terms(query: str) -> list[str]:
    words = [word for word in query.lower().split() if len(word) > 2 and word not in _MISMATCH_STOPWORDS]
    return words[:6]


def context_matches_query(query: str, contents: list[str]) -> bool:
    """True when enough of the sampled context mentions the query's terms (or their stems)."""
    terms = _mismatch_terms(query)
    if not terms or not contents:
        return True
    sample = [content.lower() for content in contents[:_MISMATCH_SAMPLE]]
    relevant = 0
    for content in sample:
        if any(term in content or term[: max(4, len(term) - 1)] in content for term in terms):
            relevant += 1
    return relevant / len(sample) >= _MISMATCH_RATIO


def extract_topics(contents: list[str], limit: int = 3) -> list[str]:
    counts: Counter[str] = Counter()
    for content in contents:
        lowered = content.lower()
        for topic in KNOWN_TOPICS:
            if topic in lowered:
                counts[topic] += 1
    return [topic for topic, _ in counts.most_common(limit)]


def query_suggestions(query: str) -> list[str]:
    words = query.split()
    suggestions: list[str] = []
    if len(words) > 5:
        suggestions.append(f"Try using fewer keywords: {' '.join(words[:3])}")
    lowered = query.lower()
    if words and "what" not in lowered and "how" not in lowered:
        suggestions.append(f'Try: "What is {words[0]}?" or "How does {words[0]} work?"')
    suggestions.append("Try using more specific technical terms")
    suggestions.append("Try asking about definitions, procedures, or examples")
    return suggestions[:3]


def no_results_answer(outcome: NoRelevantContentFound) -> str:
    topics = ", ".join(outcome.available_topics)
    lines = [f'I couldn\'t find relevant information about "{outcome.query}" in the available documents.']
    if outcome.filtered:
        lines.append(
            f'I searched specifically within the selected document "{outcome.document_filter}", '
            "but it doesn't appear to contain information related to your question."
        )
        if topics:
            lines.append(f"The selected document appears to focus on: **{topics}**")
        lines.append(
            "You can remove the document filter to search across all your uploaded materials, "
            "or upload documents that cover the topic you're asking about."
        )
    else:
        if topics:
            lines.append(f"Your uploaded documents appear to focus on: **{topics}**")
        lines.append(
            "Your documents may not cover this topic, or the question may be outside the scope of "
            "your document collection. Try asking about the topics your uploaded documents cover."
        )
    return "\n\n".join(lines)


def topic_mismatch_answer(outcome: NoRelevantContentFound) -> str:
    topics = ", ".join(outcome.available_topics) or FALLBACK_TOPICS
    lines = [f'I cannot find information about "{outcome.query}" in the provided documents.']
    if outcome.filtered:
        lines.append(
            f'The selected document "{outcome.document_filter}" appears to focus on: **{topics}**\n\n'
            "Your question is about a different topic. Ask about the content of this document, "
            "select a different document, or upload one that covers the topic."
        )
    else:
        lines.append(
            f"Your uploaded documents appear to focus on: **{topics}**\n\n"
            f'To get answers about "{outcome.query}", upload documents that cover this topic '
            "or ask about the content of your uploaded documents."
        )
    return "\n\n".join(lines)


class Synthesizer:
    """Turn a question into a cited answer, or an explanatory outcome when that is not possible."""

    def __init__(
        self,
        retrieval: RetrievalEngine,
        llm: Answerer | None = None,
        extractive: ExtractiveAnswerer | None = None,
        intents: IntentTable | None = None,
        monitor: PerformanceMonitor | None = None,
        llm_timeout: float = 120.0,
        max_context_chars: int = 8000,
        max_query_chars: int = 1000,
        max_tokens: dict[str, int] | None = None,
    ) -> None:
        self.retrieval = retrieval
        self.llm = llm
        self.extractive = extractive or ExtractiveAnswerer()
        self.intents = intents or default_intent_table()
        self.monitor = monitor
        self.llm_timeout = llm_timeout
        self.max_context_chars = max_context_chars
        self.max_query_chars = max_query_chars
        self.max_tokens = max_tokens or {}

    @property
    def provider(self) -> str:
        if self.llm is None:
            return "extractive"
        return type(self.llm).__name__.replace("Answerer", "").lower()

    async def answer(
        self,
        query: str,
        document: str | None = None,
        mode: str | None = None,
        depth: str | None = None,
    ) -> SynthesisResult:
        started = time.monotonic()
        query = (query or "").strip()
        if not query:
            raise ValidationError("Query cannot be empty")
        if len(query) > self.max_query_chars:
            query = query[: self.max_query_chars]
        mode = normalize_mode(mode)
        depth = normalize_depth(depth)
        document = (document or "").strip() or None

        if self.intents.is_greeting(query):
            result = SynthesisResult(
                query=query,
                answer=GREETING_ANSWER,
                outcome="greeting",
                intent="greeting",
                suggestions=list(GREETING_SUGGESTIONS),
                document_filter=document,
                mode=mode,
                depth=depth,
                provider=self.provider,
            )
            return self._finish(result, started)

        retrieved = await self.retrieval.retrieve(query, document_filter=document)
        timings = {"retrieval": retrieved.duration_seconds}

        if retrieved.empty:
            result = await self._no_results(query, document, retrieved, mode, depth)
            result.timings.update(timings)
            return self._finish(result, started)

        contents = [chunk.content for chunk in retrieved.chunks]
        if not is_educational_query(query) and not context_matches_query(query, contents):
            outcome = NoRelevantContentFound(
                query=query, document_filter=document, available_topics=extract_topics(contents)
            )
            result = SynthesisResult(
                query=query,
                answer=topic_mismatch_answer(outcome),
                outcome="topic_mismatch",
                intent=retrieved.intent,
                suggestions=query_suggestions(query),
                cache_hit=retrieved.cache_hit,
                document_filter=document,
                mode=mode,
                depth=depth,
                provider=self.provider,
                available_topics=outcome.available_topics or [FALLBACK_TOPICS],
                timings=timings,
            )
            return self._finish(result, started)

        references = build_references(retrieved.chunks)
        generation_started = time.monotonic()
        try:
            text = await self._generate(query, retrieved, mode, depth)
        except (asyncio.TimeoutError, LLMTimeoutError) as exc:
            logger.warning("llm_timeout", extra={"timeout": self.llm_timeout, "provider": self.provider})
            detail = describe_error(exc) if isinstance(exc, LLMTimeoutError) else (
                f"LLM request timed out after {self.llm_timeout:g}s"
            )
            result = SynthesisResult(
                query=query,
                answer=f"The language model did not respond in time. {detail}",
                outcome="timeout",
                intent=retrieved.intent,
                references=references,
                suggestions=list(TIMEOUT_SUGGESTIONS),
                cache_hit=retrieved.cache_hit,
                document_filter=document,
                mode=mode,
                depth=depth,
                provider=self.provider,
                timings=timings,
            )
            return self._finish(result, started, error=detail)
        except LLMError as exc:
            detail = describe_error(exc)
            logger.error("llm_error", extra={"provider": self.provider, "detail": detail})
            result = SynthesisResult(
                query=query,
                answer=f"The language model could not generate an answer: {detail}",
                outcome="llm_error",
                intent=retrieved.intent,
                references=references,
                suggestions=list(LLM_REMEDIES),
                cache_hit=retrieved.cache_hit,
                document_filter=document,
                mode=mode,
                depth=depth,
                provider=self.provider,
                timings=timings,
            )
            return self._finish(result, started, error=detail)
        timings["generation"] = time.monotonic() - generation_started

        result = SynthesisResult(
            query=query,
            answer=append_reference_footer(text, references),
            outcome="answered",
            intent=retrieved.intent,
            references=references,
            cache_hit=retrieved.cache_hit,
            document_filter=document,
            mode=mode,
            depth=depth,
            provider=self.provider,
            timings=timings,
        )
        return self._finish(result, started)

    async def _generate(self, query: str, retrieved: RetrievalResult, mode: str, depth: str) -> str:
        if self.llm is None:
            text = self.extractive.generate(query, retrieved.chunks, depth=depth)
            if not text:
                raise LLMError("No extractable sentences in the retrieved context")
            return text
        prompt = build_prompt(query, retrieved.chunks, retrieved.intent, mode, depth, self.max_context_chars)
        response = await asyncio.wait_for(
            self.llm.generate(prompt, max_tokens=self.max_tokens.get(depth)),
            timeout=self.llm_timeout,
        )
        return response.answer

    async def _no_results(
        self,
        query: str,
        document: str | None,
        retrieved: RetrievalResult,
        mode: str,
        depth: str,
    ) -> SynthesisResult:
        topics: list[str] = []
        if not retrieved.degraded:
            sample = await self.retrieval.sample(query, document_filter=document)
            topics = extract_topics([doc.content for doc in sample])
        outcome = NoRelevantContentFound(query=query, document_filter=document, available_topics=topics)
        answer = no_results_answer(outcome)
        suggestions = list(FILTERED_SUGGESTIONS if outcome.filtered else NO_RESULTS_SUGGESTIONS)
        if retrieved.degraded:
            answer += "\n\nDocument search is temporarily unavailable, so this answer may be incomplete."
            suggestions = list(DEGRADED_SUGGESTIONS) + suggestions
        logger.info(
            "no_relevant_content",
            extra={"filtered": outcome.filtered, "degraded": retrieved.degraded, "topics": topics},
        )
        return SynthesisResult(
            query=query,
            answer=answer,
            outcome="no_results",
            intent=retrieved.intent,
            suggestions=suggestions,
            cache_hit=retrieved.cache_hit,
            degraded=retrieved.degraded,
            document_filter=document,
            mode=mode,
            depth=depth,
            provider=self.provider,
            available_topics=topics,
        )

    def _finish(self, result: SynthesisResult, started: float, error: str | None = None) -> SynthesisResult:
        result.timings["total"] = time.monotonic() - started
        record_query(result.outcome, result.total_time)
        if self.monitor is not None:
            self.monitor.record_query(result.total_time, result.intent, result.cache_hit, result.outcome)
            if error is not None:
                self.monitor.record_error(result.outcome, error, intent=result.intent)
        logger.info(
            "query_answered",
            extra={
                "outcome": result.outcome,
                "intent": result.intent,
                "references": len(result.references),
                "cache_hit": result.cache_hit,
                "duration": result.total_time,
            },
        )
        return result
