from __future__ import annotations

import json
import os
from dataclasses import dataclass

try:
    from dotenv import load_dotenv
except ImportError:  # pragma: no cover - optional in minimal setups
    load_dotenv = None

if load_dotenv is not None:
    load_dotenv()


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in {"1", "true", "yes"}


@dataclass(frozen=True)
class Settings:
    log_level: str = os.getenv("RAG_LOG_LEVEL", "INFO")
    metrics_enabled: bool = _env_bool("RAG_METRICS_ENABLED", "true")
    upload_dir: str = os.getenv("RAG_UPLOAD_DIR", "uploads")
    file_max_bytes: int = int(os.getenv("RAG_FILE_MAX_BYTES", "52428800"))

    cache_backend: str = os.getenv("RAG_CACHE_BACKEND", "memory")
    redis_url: str = os.getenv("REDIS_URL", "redis://localhost:6379/0")
    cache_key_prefix: str = os.getenv("RAG_CACHE_PREFIX", "learninghub")
    cache_memory_maxsize: int = int(os.getenv("RAG_CACHE_MEMORY_MAXSIZE", "10000"))
    cache_ttl_embedding: int = int(os.getenv("RAG_CACHE_TTL_EMBEDDING", str(7 * 24 * 3600)))
    cache_ttl_query: int = int(os.getenv("RAG_CACHE_TTL_QUERY", str(2 * 3600)))
    cache_ttl_chunks: int = int(os.getenv("RAG_CACHE_TTL_CHUNKS", str(3 * 24 * 3600)))
    cache_ttl_stats: int = int(os.getenv("RAG_CACHE_TTL_STATS", "1800"))

    vectorstore_backend: str = os.getenv("RAG_VECTORSTORE", "memory")
    embedding_provider: str = os.getenv("EMBEDDING_PROVIDER", "hash")
    embedding_dimension: int = int(os.getenv("EMBEDDING_DIMENSION", "256"))
    embedding_timeout: float = float(os.getenv("RAG_EMBEDDING_TIMEOUT", "30"))
    embedding_batch_size: int = int(os.getenv("RAG_EMBEDDING_BATCH_SIZE", "50"))
    openai_api_key: str | None = os.getenv("OPENAI_API_KEY")
    openai_base_url: str = os.getenv("OPENAI_BASE_URL", "https://api.openai.com/v1")
    openai_embedding_model: str | None = os.getenv("OPENAI_EMBEDDING_MODEL")
    openai_chat_model: str = os.getenv("OPENAI_CHAT_MODEL", "gpt-4o-mini")
    gemini_api_key: str | None = os.getenv("GEMINI_API_KEY")
    gemini_embedding_model: str | None = os.getenv("GEMINI_EMBEDDING_MODEL")
    gemini_chat_model: str = os.getenv("GEMINI_CHAT_MODEL", "gemini-1.5-flash")
    ollama_base_url: str = os.getenv("OLLAMA_BASE_URL", "http://localhost:11434")
    ollama_model: str = os.getenv("OLLAMA_MODEL", "llama3.1")
    milvus_uri: str = os.getenv("MILVUS_URI", "http://localhost:19530")
    milvus_token: str | None = os.getenv("MILVUS_TOKEN")
    milvus_collection: str = os.getenv("MILVUS_COLLECTION", "learning_hub_chunks")
    milvus_consistency: str = os.getenv("MILVUS_CONSISTENCY", "Strong")
    milvus_index_type: str = os.getenv("MILVUS_INDEX_TYPE", "IVF_FLAT")
    milvus_metric_type: str = os.getenv("MILVUS_METRIC_TYPE", "COSINE")
    milvus_nlist: int = int(os.getenv("MILVUS_NLIST", "1024"))
    milvus_nprobe: int = int(os.getenv("MILVUS_NPROBE", "10"))

    chunk_overlap: int = int(os.getenv("RAG_CHUNK_OVERLAP", "400"))
    chunk_min_chars: int = int(os.getenv("RAG_CHUNK_MIN_CHARS", "100"))
    chunk_min_words: int = int(os.getenv("RAG_CHUNK_MIN_WORDS", "15"))
    chunk_min_density: float = float(os.getenv("RAG_CHUNK_MIN_DENSITY", "0.3"))
    chunk_min_readability: float = float(os.getenv("RAG_CHUNK_MIN_READABILITY", "0.4"))
    chunk_max_lines: int = int(os.getenv("RAG_CHUNK_MAX_LINES", "20"))
    chunk_target_total: int = int(os.getenv("RAG_CHUNK_TARGET_TOTAL", "800"))
    chunk_min_per_page: int = int(os.getenv("RAG_CHUNK_MIN_PER_PAGE", "15"))
    words_per_page: int = int(os.getenv("RAG_WORDS_PER_PAGE", "350"))

    worker_concurrency: int = int(os.getenv("RAG_WORKER_CONCURRENCY", "2"))
    job_max_attempts: int = int(os.getenv("RAG_JOB_MAX_ATTEMPTS", "3"))
    job_backoff_seconds: float = float(os.getenv("RAG_JOB_BACKOFF_SECONDS", "5"))
    job_backoff_max_seconds: float = float(os.getenv("RAG_JOB_BACKOFF_MAX_SECONDS", "120"))
    index_batch_size: int = int(os.getenv("RAG_INDEX_BATCH_SIZE", "25"))
    index_batch_attempts: int = int(os.getenv("RAG_INDEX_BATCH_ATTEMPTS", "3"))
    index_batch_backoff: float = float(os.getenv("RAG_INDEX_BATCH_BACKOFF", "1"))
    index_timeout: float = float(os.getenv("RAG_INDEX_TIMEOUT", "60"))
    load_timeout: float = float(os.getenv("RAG_LOAD_TIMEOUT", "60"))
    stall_timeout: float = float(os.getenv("RAG_STALL_TIMEOUT", "180"))
    stall_check_interval: float = float(os.getenv("RAG_STALL_CHECK_INTERVAL", "10"))
    max_stall_requeues: int = int(os.getenv("RAG_MAX_STALL_REQUEUES", "1"))
    status_update_attempts: int = int(os.getenv("RAG_STATUS_UPDATE_ATTEMPTS", "3"))
    status_update_backoff: float = float(os.getenv("RAG_STATUS_UPDATE_BACKOFF", "1"))
    job_retention_seconds: int = int(os.getenv("RAG_JOB_RETENTION_SECONDS", "86400"))
    job_max_entries: int = int(os.getenv("RAG_JOB_MAX_ENTRIES", "1000"))
    job_db_uri: str = os.getenv("RAG_JOB_DB_URI", "sqlite:///data/jobs.db")
    metadata_db_uri: str = os.getenv("RAG_METADATA_DB_URI", "sqlite:///data/documents.db")
    delete_uploaded_files: bool = _env_bool("RAG_DELETE_UPLOADED_FILES", "true")

    top_k: int = int(os.getenv("RAG_TOP_K", "8"))
    top_k_filtered: int = int(os.getenv("RAG_TOP_K_FILTERED", "15"))
    min_score: float = float(os.getenv("RAG_MIN_SCORE", "1.0"))
    min_score_open: float = float(os.getenv("RAG_MIN_SCORE_OPEN", "0.5"))
    min_term_ratio: float = float(os.getenv("RAG_MIN_TERM_RATIO", "0.15"))
    min_term_ratio_open: float = float(os.getenv("RAG_MIN_TERM_RATIO_OPEN", "0.1"))
    retrieval_timeout: float = float(os.getenv("RAG_RETRIEVAL_TIMEOUT", "30"))
    query_max_chars: int = int(os.getenv("RAG_QUERY_MAX_CHARS", "1000"))

    llm_provider: str = os.getenv("RAG_LLM_PROVIDER", "ollama")
    llm_temperature: float = float(os.getenv("RAG_LLM_TEMPERATURE", "0.2"))
    llm_timeout: float = float(os.getenv("RAG_LLM_TIMEOUT", "120"))
    request_timeout: float = float(os.getenv("RAG_REQUEST_TIMEOUT", "180"))
    llm_context_max_chars: int = int(os.getenv("RAG_LLM_CONTEXT_MAX_CHARS", "8000"))
    max_tokens_quick: int = int(os.getenv("RAG_MAX_TOKENS_QUICK", "600"))
    max_tokens_standard: int = int(os.getenv("RAG_MAX_TOKENS_STANDARD", "1500"))
    max_tokens_professional: int = int(os.getenv("RAG_MAX_TOKENS_PROFESSIONAL", "3000"))

    answerer_mode_raw: str = os.getenv("RAG_ANSWERER", "extractive")
    intents_path_raw: str = os.getenv("RAG_INTENTS_PATH", "")
    api_keys_raw: str = os.getenv("RAG_API_KEYS", "")
    api_key_map_raw: str = os.getenv("RAG_API_KEY_MAP", "")
    allow_anonymous: bool = _env_bool("RAG_ALLOW_ANONYMOUS", "false")

    def __post_init__(self) -> None:
        if self.stall_timeout <= self.longest_silent_stage:
            raise ValueError(
                f"RAG_STALL_TIMEOUT ({self.stall_timeout:g}s) must exceed the longest ingestion step "
                f"without a heartbeat ({self.longest_silent_stage:g}s)"
            )

    @property
    def longest_silent_stage(self) -> float:
        """Worst-case seconds a healthy job can go without touching its job row."""
        retry_gap = 0.0
        if self.index_batch_attempts > 1:
            retry_gap = min(60.0, self.index_batch_backoff * 2 ** (self.index_batch_attempts - 2))
        return max(self.load_timeout, self.embedding_timeout, self.index_timeout + retry_gap)

    @property
    def api_keys(self) -> set[str]:
        raw = os.getenv("RAG_API_KEYS", self.api_keys_raw)
        return {value.strip() for value in raw.split(",") if value.strip()}

    @property
    def api_key_map(self) -> dict[str, str]:
        raw = os.getenv("RAG_API_KEY_MAP", self.api_key_map_raw).strip()
        if not raw:
            return {}
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            return {}
        if not isinstance(data, dict):
            return {}
        return {
            key: value.strip().lower()
            for key, value in data.items()
            if isinstance(key, str) and isinstance(value, str) and value.strip()
        }

    @property
    def answerer_mode(self) -> str:
        return os.getenv("RAG_ANSWERER", self.answerer_mode_raw)

    @property
    def intents_path(self) -> str:
        return os.getenv("RAG_INTENTS_PATH", self.intents_path_raw)

    @property
    def cache_ttls(self) -> dict[str, int]:
        return {
            "embedding": self.cache_ttl_embedding,
            "query": self.cache_ttl_query,
            "chunks": self.cache_ttl_chunks,
            "stats": self.cache_ttl_stats,
        }

    def max_tokens_for(self, depth: str) -> int:
        mapping = {
            "quick": self.max_tokens_quick,
            "standard": self.max_tokens_standard,
            "professional": self.max_tokens_professional,
        }
        return mapping.get(depth.strip().lower(), self.max_tokens_standard)


settings = Settings()
