from __future__ import annotations

"""Multi-strategy retrieval with a query-result cache and page-balanced ranking."""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any

from src.cache.layer import CacheLayer
from src.errors import TransientInfraError, ValidationError, describe_error
from src.rag.embeddings import CachedEmbedder
from src.rag.intents import IntentTable, default_intent_table
from src.rag.types import Candidate, ContextChunk, Document, SearchResult
from src.retrieval.ranking import (
    QueryProfile,
    RelevanceFloor,
    balance_pages,
    build_profile,
    deduplicate,
    matches_document_filter,
    page_distribution,
    passes_relevance_floor,
    score_candidate,
)
from src.retrieval.strategies import SearchContext, SearchStrategy, default_strategies

logger = logging.getLogger(__name__)


def query_cache_key(query: str, document_filter: str | None = None, limit: int | None = None) -> str:
    key = f"{query}|doc:{document_filter}" if document_filter else query
    return f"{key}|k:{limit}" if limit else key


@dataclass
class RetrievalResult:
    query: str
    chunks: list[ContextChunk]
    cache_hit: bool = False
    degraded: bool = False
    document_filter: str | None = None
    intent: str = "comprehensive"
    candidates: int = 0
    duration_seconds: float = 0.0
    detail: str | None = None
    pages: dict[int, int] = field(default_factory=dict)

    @property
    def empty(self) -> bool:
        return not self.chunks


class RetrievalEngine:
    """Run every strategy, then filter, deduplicate, score, floor and balance."""

    def __init__(
        self,
        embedder: CachedEmbedder,
        vectorstore: Any,
        cache: CacheLayer | None = None,
        intents: IntentTable | None = None,
        floor: RelevanceFloor | None = None,
        top_k: int = 8,
        top_k_filtered: int = 15,
        strategies: list[SearchStrategy] | None = None,
        timeout: float = 30.0,
    ) -> None:
        self.embedder = embedder
        self.vectorstore = vectorstore
        self.cache = cache
        self.intents = intents or default_intent_table()
        self.floor = floor or RelevanceFloor()
        self.top_k = top_k
        self.top_k_filtered = top_k_filtered
        self.strategies = strategies if strategies is not None else default_strategies()
        self.timeout = timeout

    async def retrieve(
        self,
        query: str,
        document_filter: str | None = None,
        top_k: int | None = None,
    ) -> RetrievalResult:
        """Return ranked context for ``query``; index or embedding outages yield an empty, degraded result."""
        started = time.monotonic()
        query = query.strip()
        if not query:
            raise ValidationError("Query cannot be empty")
        document_filter = (document_filter or "").strip() or None
        limit = top_k or (self.top_k_filtered if document_filter else self.top_k)
        profile = build_profile(query, self.intents)
        key = query_cache_key(query, document_filter, limit)

        cached = self.cache.get_query_result(key) if self.cache is not None else None
        if cached is not None:
            chunks = [ContextChunk.from_payload(item) for item in cached["chunks"]]
            logger.info("retrieval_cache_hit", extra={"chunks": len(chunks), "filtered": bool(document_filter)})
            return RetrievalResult(
                query=query,
                chunks=chunks,
                cache_hit=True,
                document_filter=document_filter,
                intent=profile.intent,
                candidates=int(cached.get("candidates", len(chunks))),
                duration_seconds=time.monotonic() - started,
                pages=page_distribution(chunks),
            )

        ctx = SearchContext(
            query=query,
            top_k=limit,
            fetch_k=limit * (8 if document_filter else 4),
            search=self._search,
            intents=self.intents,
        )
        try:
            candidates = await asyncio.wait_for(self._run_strategies(ctx), timeout=self.timeout)
        except (TransientInfraError, asyncio.TimeoutError) as exc:
            detail = describe_error(exc) if not isinstance(exc, asyncio.TimeoutError) else (
                f"Retrieval timed out after {self.timeout:g}s"
            )
            logger.warning("retrieval_degraded", extra={"detail": detail, "error_type": type(exc).__name__})
            return RetrievalResult(
                query=query,
                chunks=[],
                degraded=True,
                document_filter=document_filter,
                intent=profile.intent,
                duration_seconds=time.monotonic() - started,
                detail=detail,
            )

        chunks = self.rank(candidates, profile, limit, document_filter)
        if chunks and self.cache is not None:
            self.cache.put_query_result(
                key,
                {"chunks": [chunk.to_payload() for chunk in chunks], "candidates": len(candidates)},
            )
        duration = time.monotonic() - started
        logger.info(
            "retrieval_complete",
            extra={
                "candidates": len(candidates),
                "results": len(chunks),
                "intent": profile.intent,
                "filtered": bool(document_filter),
                "duration": duration,
            },
        )
        return RetrievalResult(
            query=query,
            chunks=chunks,
            document_filter=document_filter,
            intent=profile.intent,
            candidates=len(candidates),
            duration_seconds=duration,
            pages=page_distribution(chunks),
        )

    def rank(
        self,
        candidates: list[Candidate],
        profile: QueryProfile,
        top_k: int,
        document_filter: str | None = None,
    ) -> list[ContextChunk]:
        if document_filter:
            candidates = [c for c in candidates if matches_document_filter(c.document, document_filter)]
        scored: list[ContextChunk] = []
        for candidate in deduplicate(candidates):
            document = candidate.document
            score = score_candidate(document, profile)
            if not passes_relevance_floor(document, score, profile, self.floor, self.intents):
                continue
            scored.append(
                ContextChunk(
                    document_id=document.doc_id,
                    content=document.content,
                    metadata=dict(document.metadata),
                    score=round(score, 4),
                    strategy=candidate.strategy,
                )
            )
        scored.sort(key=lambda chunk: (-chunk.score, chunk.page))
        balanced = balance_pages(scored, top_k)
        return [
            ContextChunk(
                document_id=chunk.document_id,
                content=chunk.content,
                metadata=chunk.metadata,
                score=chunk.score,
                strategy=chunk.strategy,
                reference_id=idx,
            )
            for idx, chunk in enumerate(balanced, start=1)
        ]

    async def _run_strategies(self, ctx: SearchContext) -> list[Candidate]:
        """Strategies are independent reads; they run concurrently and join before ranking."""
        results = await asyncio.gather(
            *(asyncio.to_thread(strategy.search, ctx) for strategy in self.strategies)
        )
        merged: list[Candidate] = []
        for batch in results:
            merged.extend(batch)
        return merged

    def _search(self, text: str, limit: int) -> list[SearchResult]:
        vector = self.embedder.embed(text)
        return self.vectorstore.search_by_vector(vector, limit)

    async def sample(self, query: str, document_filter: str | None = None, limit: int = 8) -> list[Document]:
        """Nearest chunks without scoring or floors; used to describe what the corpus covers."""
        try:
            hits = await asyncio.wait_for(
                asyncio.to_thread(self._search, query, limit * 4 if document_filter else limit),
                timeout=self.timeout,
            )
        except (TransientInfraError, asyncio.TimeoutError) as exc:
            logger.warning("retrieval_sample_failed", extra={"error_type": type(exc).__name__})
            return []
        documents = [hit.document for hit in hits]
        if document_filter:
            documents = [doc for doc in documents if matches_document_filter(doc, document_filter)]
        return documents[:limit]
