from __future__ import annotations

from functools import lru_cache
from typing import Any

from src.app.settings import settings
from src.cache.backends import MemoryBackend, RedisBackend
from src.cache.layer import CacheLayer
from src.chunking.engine import ChunkingEngine, QualityThresholds
from src.ingestion.jobs import JobStore
from src.ingestion.processor import DocumentProcessor, ProcessorConfig
from src.ingestion.queue import IngestionQueue
from src.ingestion.retry import RetryPolicy
from src.ingestion.service import IngestionService
from src.metadata.store import DocumentStore
from src.monitoring.monitor import PerformanceMonitor
from src.rag.answerer import ExtractiveAnswerer
from src.rag.embeddings import (
    CachedEmbedder,
    EmbeddingConfigError,
    EmbeddingProvider,
    GeminiEmbedder,
    HashEmbedder,
    OpenAIEmbedder,
    check_embedding_config,
)
from src.rag.intents import IntentTable, default_intent_table, load_intent_table
from src.rag.llm import build_llm_answerer, check_llm_config
from src.rag.synthesizer import Synthesizer
from src.retrieval.engine import RetrievalEngine
from src.retrieval.ranking import RelevanceFloor
from src.vectorstore.inmemory import InMemoryVectorStore
from src.vectorstore.milvus import MilvusConfig, MilvusVectorStore


@lru_cache
def get_cache() -> CacheLayer:
    backend_name = settings.cache_backend.lower().strip()
    if backend_name in {"none", "off", "disabled"}:
        return CacheLayer(backend=None, prefix=settings.cache_key_prefix, ttls=settings.cache_ttls, enabled=False)
    if backend_name == "redis":
        backend = RedisBackend(url=settings.redis_url)
    else:
        backend = MemoryBackend(maxsize=settings.cache_memory_maxsize)
    return CacheLayer(backend=backend, prefix=settings.cache_key_prefix, ttls=settings.cache_ttls)


@lru_cache
def get_embedder() -> CachedEmbedder:
    return CachedEmbedder(provider=build_embedder(), cache=get_cache())


@lru_cache
def get_vectorstore() -> InMemoryVectorStore | MilvusVectorStore:
    return build_vectorstore(get_embedder().dimension)


@lru_cache
def get_job_store() -> JobStore:
    return JobStore(settings.job_db_uri)


@lru_cache
def get_document_store() -> DocumentStore:
    return DocumentStore(settings.metadata_db_uri)


@lru_cache
def get_monitor() -> PerformanceMonitor:
    return PerformanceMonitor()


@lru_cache
def get_queue() -> IngestionQueue:
    chunker = ChunkingEngine(
        cache=get_cache(),
        overlap=settings.chunk_overlap,
        thresholds=QualityThresholds(
            min_chars=settings.chunk_min_chars,
            min_words=settings.chunk_min_words,
            min_density=settings.chunk_min_density,
            min_readability=settings.chunk_min_readability,
            max_lines=settings.chunk_max_lines,
        ),
        target_total=settings.chunk_target_total,
        min_per_page=settings.chunk_min_per_page,
        words_per_page=settings.words_per_page,
    )
    processor = DocumentProcessor(
        jobs=get_job_store(),
        documents=get_document_store(),
        chunker=chunker,
        embedder=get_embedder(),
        vectorstore=get_vectorstore(),
        cache=get_cache(),
        config=ProcessorConfig(
            load_timeout=settings.load_timeout,
            embedding_timeout=settings.embedding_timeout,
            index_timeout=settings.index_timeout,
            embedding_batch_size=settings.embedding_batch_size,
            index_batch_size=settings.index_batch_size,
            index_policy=RetryPolicy(
                attempts=settings.index_batch_attempts,
                base_delay=settings.index_batch_backoff,
            ),
            status_policy=RetryPolicy(
                attempts=settings.status_update_attempts,
                base_delay=settings.status_update_backoff,
                factor=1.0,
            ),
            delete_uploaded_files=settings.delete_uploaded_files,
        ),
    )
    return IngestionQueue(
        jobs=get_job_store(),
        processor=processor,
        concurrency=settings.worker_concurrency,
        policy=RetryPolicy(
            attempts=settings.job_max_attempts,
            base_delay=settings.job_backoff_seconds,
            max_delay=settings.job_backoff_max_seconds,
        ),
        stall_timeout=settings.stall_timeout,
        stall_check_interval=settings.stall_check_interval,
        max_stall_requeues=settings.max_stall_requeues,
        monitor=get_monitor(),
    )


@lru_cache
def get_ingestion_service() -> IngestionService:
    return IngestionService(
        jobs=get_job_store(),
        documents=get_document_store(),
        queue=get_queue(),
        vectorstore=get_vectorstore(),
        cache=get_cache(),
        upload_dir=settings.upload_dir,
        max_file_bytes=settings.file_max_bytes,
        retention_seconds=settings.job_retention_seconds,
        max_entries=settings.job_max_entries,
    )


@lru_cache
def get_retrieval_engine() -> RetrievalEngine:
    return RetrievalEngine(
        embedder=get_embedder(),
        vectorstore=get_vectorstore(),
        cache=get_cache(),
        intents=get_intent_table(),
        floor=RelevanceFloor(
            min_score=settings.min_score,
            min_term_ratio=settings.min_term_ratio,
            min_score_open=settings.min_score_open,
            min_term_ratio_open=settings.min_term_ratio_open,
        ),
        top_k=settings.top_k,
        top_k_filtered=settings.top_k_filtered,
        timeout=settings.retrieval_timeout,
    )


@lru_cache
def get_synthesizer() -> Synthesizer:
    return Synthesizer(
        retrieval=get_retrieval_engine(),
        llm=build_answerer(),
        extractive=ExtractiveAnswerer(),
        intents=get_intent_table(),
        monitor=get_monitor(),
        llm_timeout=settings.llm_timeout,
        max_context_chars=settings.llm_context_max_chars,
        max_query_chars=settings.query_max_chars,
        max_tokens={depth: settings.max_tokens_for(depth) for depth in ("quick", "standard", "professional")},
    )


@lru_cache
def get_intent_table() -> IntentTable:
    path = settings.intents_path
    return load_intent_table(path) if path else default_intent_table()


def reset_service_cache() -> None:
    """Drop every cached collaborator so the next request rebuilds them from settings."""
    for factory in (
        get_cache,
        get_embedder,
        get_vectorstore,
        get_job_store,
        get_document_store,
        get_monitor,
        get_queue,
        get_ingestion_service,
        get_retrieval_engine,
        get_synthesizer,
        get_intent_table,
    ):
        factory.cache_clear()
    default_intent_table.cache_clear()


def llm_provider() -> str:
    if settings.answerer_mode.lower().strip() == "extractive":
        return "extractive"
    return settings.llm_provider


def build_answerer() -> Any:
    """Language-model answerer, or None when answers are extracted directly from the context."""
    provider = llm_provider()
    if provider == "extractive":
        return None
    return build_llm_answerer(
        provider,
        api_key_openai=settings.openai_api_key,
        api_key_gemini=settings.gemini_api_key,
        openai_base_url=settings.openai_base_url,
        openai_model=settings.openai_chat_model,
        gemini_model=settings.gemini_chat_model,
        ollama_base_url=settings.ollama_base_url,
        ollama_model=settings.ollama_model,
        temperature=settings.llm_temperature,
        max_tokens=settings.max_tokens_standard,
        timeout=settings.llm_timeout,
    )


def get_llm_config_report() -> dict[str, Any]:
    return check_llm_config(
        llm_provider(),
        api_key_openai=settings.openai_api_key,
        api_key_gemini=settings.gemini_api_key,
        openai_model=settings.openai_chat_model,
        gemini_model=settings.gemini_chat_model,
        ollama_model=settings.ollama_model,
    )


def get_embedding_config_report() -> dict[str, Any]:
    provider = settings.embedding_provider
    model = None
    if provider.lower().strip() == "openai":
        model = settings.openai_embedding_model
    elif provider.lower().strip() in {"gemini", "google"}:
        model = settings.gemini_embedding_model
    return check_embedding_config(provider, model, settings.embedding_dimension)


def build_embedder() -> EmbeddingProvider:
    provider = settings.embedding_provider.lower().strip()
    if provider == "hash":
        return HashEmbedder(dimension=settings.embedding_dimension)
    if provider == "openai":
        return OpenAIEmbedder(
            api_key=settings.openai_api_key or "",
            model=settings.openai_embedding_model or "",
            dimension=settings.embedding_dimension,
        )
    if provider in {"gemini", "google"}:
        return GeminiEmbedder(
            api_key=settings.gemini_api_key or "",
            model=settings.gemini_embedding_model or "",
            dimension=settings.embedding_dimension,
        )
    raise EmbeddingConfigError(f"Unsupported embedding provider: {provider}")


def build_vectorstore(dimension: int) -> InMemoryVectorStore | MilvusVectorStore:
    backend = settings.vectorstore_backend.lower().strip()
    if backend == "milvus":
        config = MilvusConfig(
            uri=settings.milvus_uri,
            token=settings.milvus_token,
            collection=settings.milvus_collection,
            consistency=settings.milvus_consistency,
            index_type=settings.milvus_index_type,
            metric_type=settings.milvus_metric_type,
            nlist=settings.milvus_nlist,
            nprobe=settings.milvus_nprobe,
        )
        return MilvusVectorStore(dimension=dimension, config=config)
    return InMemoryVectorStore(dimension=dimension)
