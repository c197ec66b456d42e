from __future__ import annotations

"""Chunking engine: split, enrich, filter and page-balance loaded text."""

import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any

from src.cache.layer import CacheLayer
from src.chunking.enrichment import analyze_chunk, quality_rank
from src.chunking.splitter import ChunkPlan, RecursiveSplitter, plan_chunking, preprocess_text
from src.errors import ContentError
from src.loaders.base import LoadedPage

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Chunk:
    """Indexed unit of document text with enrichment metadata."""
    document_id: str
    chunk_index: int
    page: int
    content: str
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def chunk_id(self) -> str:
        return f"{self.document_id}:{self.chunk_index}"

    def to_payload(self) -> dict[str, Any]:
        return {
            "document_id": self.document_id,
            "chunk_index": self.chunk_index,
            "page": self.page,
            "content": self.content,
            "metadata": self.metadata,
        }

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "Chunk":
        return cls(
            document_id=str(payload["document_id"]),
            chunk_index=int(payload["chunk_index"]),
            page=int(payload["page"]),
            content=str(payload["content"]),
            metadata=dict(payload.get("metadata") or {}),
        )


@dataclass(frozen=True)
class QualityThresholds:
    min_chars: int = 100
    min_words: int = 15
    min_density: float = 0.3
    min_readability: float = 0.4
    max_lines: int = 20


@dataclass(frozen=True)
class ChunkingResult:
    chunks: list[Chunk]
    cache_hit: bool
    profile: str = "cached"
    candidates: int = 0
    pages: int = 0


@dataclass
class ChunkingEngine:
    """Turns loaded text units into quality-ranked, page-balanced chunks."""
    cache: CacheLayer | None = None
    overlap: int = 400
    thresholds: QualityThresholds = field(default_factory=QualityThresholds)
    target_total: int = 800
    min_per_page: int = 15
    words_per_page: int = 350

    def chunk(
        self,
        pages: list[LoadedPage],
        document_id: str,
        source: str | None = None,
        source_name: str | None = None,
    ) -> ChunkingResult:
        if self.cache is not None:
            cached = self.cache.get_chunks(document_id)
            if cached:
                chunks = [Chunk.from_payload(item) for item in cached]
                logger.info("chunk_cache_hit", extra={"document_id": document_id, "chunks": len(chunks)})
                return ChunkingResult(chunks=chunks, cache_hit=True, pages=len({c.page for c in chunks}))

        units = [(preprocess_text(page.text), page) for page in pages]
        units = [(text, page) for text, page in units if text]
        if not units:
            raise ContentError("Document has no text to chunk; re-upload a file with readable content")
        plan = plan_chunking([text for text, _ in units], self.overlap)
        candidates = self._split_units(units, plan, document_id, source, source_name)
        selected = self._filter(candidates)
        if not selected:
            raise ContentError(
                "No content passed quality checks; the document may be too short, scanned or fragmented"
            )
        balanced = self.balance(selected)
        chunks = [
            Chunk(
                document_id=document_id,
                chunk_index=item.chunk_index,
                page=item.page,
                content=item.content,
                metadata=item.metadata,
            )
            for item in balanced
        ]
        logger.info(
            "chunking_complete",
            extra={
                "document_id": document_id,
                "profile": plan.profile,
                "chunk_size": plan.chunk_size,
                "candidates": len(candidates),
                "selected": len(chunks),
            },
        )
        if self.cache is not None:
            self.cache.put_chunks(document_id, [chunk.to_payload() for chunk in chunks])
        return ChunkingResult(
            chunks=chunks,
            cache_hit=False,
            profile=plan.profile,
            candidates=len(candidates),
            pages=len({chunk.page for chunk in chunks}),
        )

    def _split_units(
        self,
        units: list[tuple[str, LoadedPage]],
        plan: ChunkPlan,
        document_id: str,
        source: str | None,
        source_name: str | None,
    ) -> list[Chunk]:
        splitter = RecursiveSplitter(plan.chunk_size, plan.overlap)
        raw: list[tuple[str, int, bool, int, int]] = []
        words_before_unit = 0
        for text, unit in units:
            for span in splitter.split(text):
                if unit.paged:
                    page = unit.page
                else:
                    preceding = words_before_unit + len(text[: span.start].split())
                    page = preceding // max(self.words_per_page, 1) + 1
                raw.append((span.text, page, unit.paged, span.start, span.end))
            if not unit.paged:
                words_before_unit += len(text.split())

        chunks: list[Chunk] = []
        for index, (content, page, paged, start, end) in enumerate(raw):
            previous = raw[index - 1][0] if index > 0 else None
            following = raw[index + 1][0] if index + 1 < len(raw) else None
            metadata = analyze_chunk(content, previous, following)
            metadata.update(
                {
                    "document_id": document_id,
                    "chunk_index": index,
                    "page": page,
                    "page_estimated": not paged,
                    "start": start,
                    "end": end,
                    "chunk_profile": plan.profile,
                }
            )
            if source:
                metadata["source"] = source
            if source_name:
                metadata["source_name"] = source_name
            chunks.append(
                Chunk(
                    document_id=document_id,
                    chunk_index=index,
                    page=page,
                    content=content,
                    metadata=metadata,
                )
            )
        return chunks

    def passes_quality(self, chunk: Chunk) -> bool:
        limits = self.thresholds
        content = chunk.content.strip()
        metadata = chunk.metadata
        lines = [line for line in content.split("\n") if line.strip()]
        return (
            len(content) > limits.min_chars
            and metadata.get("word_count", 0) > limits.min_words
            and metadata.get("semantic_density", 0.0) > limits.min_density
            and any(char.isalnum() for char in content)
            and len(lines) < limits.max_lines
            and "..." not in content
            and metadata.get("readability", 0.0) > limits.min_readability
        )

    def _filter(self, candidates: list[Chunk]) -> list[Chunk]:
        kept = [chunk for chunk in candidates if self.passes_quality(chunk)]
        if kept:
            return kept
        # Keep non-trivial chunks rather than dropping a readable document entirely.
        fallback = [
            chunk
            for chunk in candidates
            if len(chunk.content) > self.thresholds.min_chars
            and chunk.metadata.get("word_count", 0) > self.thresholds.min_words
        ]
        if fallback:
            logger.warning("chunk_quality_fallback", extra={"candidates": len(candidates), "kept": len(fallback)})
        return fallback

    def balance(self, chunks: list[Chunk]) -> list[Chunk]:
        """Select a page-balanced subset capped at ``target_total``, in document order."""
        groups: OrderedDict[int, list[Chunk]] = OrderedDict()
        for chunk in chunks:
            groups.setdefault(chunk.page or 1, []).append(chunk)
        per_page = max(self.target_total // max(len(groups), 1), self.min_per_page)
        ranked_groups = [
            sorted(page_chunks, key=lambda c: quality_rank(c.metadata), reverse=True)[:per_page]
            for page_chunks in groups.values()
        ]
        # Round-robin across pages so truncation never drops a whole page.
        selected: list[Chunk] = []
        for tier in range(per_page):
            for group in ranked_groups:
                if tier < len(group):
                    selected.append(group[tier])
        chosen = {chunk.chunk_index for chunk in selected}
        slots = self.target_total - len(selected)
        if slots > 0:
            rest = [chunk for chunk in chunks if chunk.chunk_index not in chosen]
            rest.sort(key=lambda c: quality_rank(c.metadata), reverse=True)
            selected.extend(rest[:slots])
        selected = selected[: max(self.target_total, len(groups))]
        selected.sort(key=lambda c: c.chunk_index)
        return selected
