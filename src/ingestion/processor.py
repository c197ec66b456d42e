from __future__ import annotations

"""Per-job ingestion stages: load, chunk, embed, index, finalize."""

import asyncio
import logging
import time
from collections import Counter
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, TypeVar

from src.cache.layer import CacheLayer
from src.chunking.engine import Chunk, ChunkingEngine
from src.errors import TransientInfraError
from src.ingestion.jobs import JobRecord, JobStore, JobStoreError
from src.ingestion.retry import RetryPolicy, retry_async
from src.loaders.registry import load_path
from src.metadata.store import DocumentStore
from src.rag.embeddings import CachedEmbedder, EmbeddingError
from src.rag.types import Document
from src.vectorstore.inmemory import VectorStoreError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class ProcessorConfig:
    load_timeout: float = 60.0
    embedding_timeout: float = 30.0
    index_timeout: float = 60.0
    embedding_batch_size: int = 50
    index_batch_size: int = 25
    index_policy: RetryPolicy = RetryPolicy(attempts=3, base_delay=1.0)
    status_policy: RetryPolicy = RetryPolicy(attempts=3, base_delay=1.0, factor=1.0)
    delete_uploaded_files: bool = True


class DocumentProcessor:
    """Drives one job attempt end to end and reports progress to the job table."""

    def __init__(
        self,
        jobs: JobStore,
        documents: DocumentStore,
        chunker: ChunkingEngine,
        embedder: CachedEmbedder,
        vectorstore: Any,
        config: ProcessorConfig | None = None,
        cache: CacheLayer | None = None,
    ) -> None:
        self.jobs = jobs
        self.documents = documents
        self.chunker = chunker
        self.embedder = embedder
        self.vectorstore = vectorstore
        self.config = config or ProcessorConfig()
        self.cache = cache

    async def process(self, job: JobRecord, run_id: str) -> dict[str, Any]:
        """Run every stage for ``job``; raises the taxonomy errors on failure."""
        started = time.monotonic()
        await self._progress(job, run_id, 5, "Starting document processing")
        self._require_index()

        try:
            pages = await asyncio.wait_for(
                asyncio.to_thread(load_path, Path(job.stored_path), job.filename),
                timeout=self.config.load_timeout,
            )
        except asyncio.TimeoutError as exc:
            raise TransientInfraError(
                f"Document loading timed out after {self.config.load_timeout:g}s"
            ) from exc
        await self._progress(job, run_id, 20, f"Loaded {len(pages)} page(s)")

        result = await asyncio.to_thread(
            self.chunker.chunk,
            pages,
            job.document_id,
            Path(job.stored_path).name,
            job.filename,
        )
        chunks = result.chunks
        await self._progress(job, run_id, 40, f"Created {len(chunks)} chunks")

        # Re-delivery of the same job must not duplicate index entries.
        await self._call_index(self.vectorstore.delete_by_document, job.document_id)
        await self._heartbeat(job, run_id)

        vectors, cache_hits = await self._embed(job, run_id, chunks)
        indexed = await self._index(job, run_id, chunks, vectors)

        await self._progress(job, run_id, 90, "Finalizing document")
        await self._status(self.documents.mark_processed, job.document_id)

        duration = time.monotonic() - started
        stats = build_processing_stats(chunks, duration, cache_hits)
        stats.update(
            {
                "indexed": indexed,
                "candidate_chunks": result.candidates,
                "chunk_profile": result.profile,
                "chunk_cache_hit": result.cache_hit,
                "file_type": job.file_type,
            }
        )
        if self.cache is not None:
            self.cache.put_stats(job.document_id, stats)
        logger.info(
            "document_processed",
            extra={"job_id": job.id, "document_id": job.document_id, "chunks": len(chunks), "duration": duration},
        )
        return stats

    def cleanup(self, job: JobRecord) -> bool:
        """Remove the transient upload; failures are logged, never raised."""
        if not self.config.delete_uploaded_files:
            return False
        path = Path(job.stored_path)
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        except OSError as exc:
            logger.warning("upload_cleanup_failed", extra={"job_id": job.id, "detail": str(exc)})
            return False
        return True

    def _require_index(self) -> None:
        health = self.vectorstore.health()
        if not health.get("ok"):
            raise VectorStoreError(f"Vector index unavailable: {health.get('detail', 'unknown error')}")

    async def _embed(
        self, job: JobRecord, run_id: str, chunks: list[Chunk]
    ) -> tuple[list[list[float]], int]:
        size = max(1, self.config.embedding_batch_size)
        vectors: list[list[float]] = []
        cache_hits = 0
        batches = [chunks[idx : idx + size] for idx in range(0, len(chunks), size)]
        for number, batch in enumerate(batches, start=1):
            texts = [chunk.content for chunk in batch]
            try:
                embedded = await asyncio.wait_for(
                    asyncio.to_thread(self.embedder.embed_batch, texts),
                    timeout=self.config.embedding_timeout,
                )
            except asyncio.TimeoutError as exc:
                raise EmbeddingError(
                    f"Embedding request timed out after {self.config.embedding_timeout:g}s"
                ) from exc
            vectors.extend(embedded.vectors)
            cache_hits += embedded.cache_hits
            progress = 50 + int(20 * number / len(batches))
            await self._progress(job, run_id, progress, f"Embedded batch {number}/{len(batches)}")
        return vectors, cache_hits

    async def _index(
        self,
        job: JobRecord,
        run_id: str,
        chunks: list[Chunk],
        vectors: list[list[float]],
    ) -> int:
        size = max(1, self.config.index_batch_size)
        total = 0
        starts = list(range(0, len(chunks), size))
        for number, start in enumerate(starts, start=1):
            documents = [to_index_document(chunk) for chunk in chunks[start : start + size]]
            batch_vectors = vectors[start : start + size]

            async def _write() -> int:
                return await self._call_index(self.vectorstore.upsert, documents, batch_vectors)

            async def _beat(attempt: int) -> None:
                await self._heartbeat(job, run_id)

            total += await retry_async(
                _write,
                self.config.index_policy,
                retry_on=(VectorStoreError,),
                label="index_batch",
                on_retry=_beat,
            )
            progress = 70 + int(15 * number / len(starts))
            await self._progress(job, run_id, progress, f"Indexed batch {number}/{len(starts)}")
        return total

    async def _call_index(self, func: Callable[..., T], *args: Any) -> T:
        try:
            return await asyncio.wait_for(asyncio.to_thread(func, *args), timeout=self.config.index_timeout)
        except asyncio.TimeoutError as exc:
            raise VectorStoreError(
                f"Vector index request timed out after {self.config.index_timeout:g}s"
            ) from exc

    async def _progress(self, job: JobRecord, run_id: str, progress: int, message: str) -> None:
        await self._status(self.jobs.update_progress, job.id, run_id, progress, message)

    async def _heartbeat(self, job: JobRecord, run_id: str) -> None:
        await self._status(self.jobs.heartbeat, job.id, run_id)

    async def _status(self, func: Callable[..., T], *args: Any) -> T:
        async def _call() -> T:
            return func(*args)

        return await retry_async(
            _call, self.config.status_policy, retry_on=(JobStoreError,), label="status_update"
        )


def to_index_document(chunk: Chunk) -> Document:
    metadata = dict(chunk.metadata)
    metadata.setdefault("document_id", chunk.document_id)
    metadata.setdefault("chunk_index", chunk.chunk_index)
    metadata.setdefault("page", chunk.page)
    return Document(doc_id=chunk.chunk_id, content=chunk.content, metadata=metadata)


def build_processing_stats(
    chunks: list[Chunk], duration: float, embedding_cache_hits: int
) -> dict[str, Any]:
    """Summaries stored with a completed job."""
    count = len(chunks)
    types = Counter(str(chunk.metadata.get("content_type", "general")) for chunk in chunks)
    density = sum(float(chunk.metadata.get("semantic_density", 0.0)) for chunk in chunks)
    readability = sum(float(chunk.metadata.get("readability", 0.0)) for chunk in chunks)
    structured = sum(1 for chunk in chunks if chunk.metadata.get("structure_score", 0) > 1)
    return {
        "chunk_count": count,
        "pages": len({chunk.page for chunk in chunks}),
        "content_types": dict(types),
        "average_density": round(density / count, 4) if count else 0.0,
        "average_readability": round(readability / count, 4) if count else 0.0,
        "structured_ratio": round(structured / count, 4) if count else 0.0,
        "chunks_per_second": round(count / duration, 2) if duration > 0 else float(count),
        "embedding_cache_hits": embedding_cache_hits,
        "cache_hit_ratio": round(embedding_cache_hits / count, 4) if count else 0.0,
        "duration_seconds": round(duration, 3),
    }
