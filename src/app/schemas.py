from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, Field


class QueryRequest(BaseModel):
    query: str = Field(min_length=1)
    document: str | None = None
    response_mode: Literal["standard", "professional"] = "standard"
    response_depth: Literal["quick", "standard", "professional"] = "standard"


class ReferenceItem(BaseModel):
    reference_id: int
    page: int | None = None
    source: str
    document_id: str
    chunk_id: str
    preview: str
    score: float


class QueryPerformance(BaseModel):
    total_time: float
    retrieval_time: float = 0.0
    generation_time: float = 0.0
    cache_hit: bool = False
    context_sections: int = 0


class QueryResponse(BaseModel):
    query: str
    answer: str
    outcome: str
    intent: str
    references: list[ReferenceItem] = Field(default_factory=list)
    suggestions: list[str] = Field(default_factory=list)
    performance: QueryPerformance
    response_mode: str
    response_depth: str
    provider: str
    document: str | None = None
    degraded: bool = False
    available_topics: list[str] = Field(default_factory=list)
    request_id: str


class QueryTimeoutResponse(BaseModel):
    error: str = "timeout"
    detail: str
    query: str
    timeout_seconds: float
    suggestions: list[str]
    request_id: str


class UploadResponse(BaseModel):
    message: str = "File uploaded successfully and queued for processing"
    job_id: str
    document_id: str
    filename: str
    file_type: str
    file_size: int
    status: str = "queued"
    estimated_processing_time: str


class JobStatusResponse(BaseModel):
    job_id: str
    document_id: str
    filename: str
    file_type: str
    file_size: int
    status: Literal["queued", "processing", "completed", "failed"]
    progress: int = Field(ge=0, le=100)
    message: str | None = None
    error: str | None = None
    attempts: int = 0
    requeue_count: int = 0
    created_at: float
    updated_at: float
    finished_at: float | None = None
    metrics: dict[str, Any] = Field(default_factory=dict)


class DocumentItem(BaseModel):
    id: str
    name: str
    file_size: int
    file_type: str
    processed: bool
    course_id: str | None = None
    created_at: str
    processed_at: str | None = None


class DocumentListResponse(BaseModel):
    documents: list[DocumentItem]
    total: int


class DeleteDocumentResponse(BaseModel):
    document_id: str
    deleted: bool
    chunks_removed: int = 0
    file_removed: bool = False
    warnings: list[str] = Field(default_factory=list)


class DocumentStatsResponse(BaseModel):
    document_id: str
    processed: bool
    cache_hit: bool
    stats: dict[str, Any] = Field(default_factory=dict)


class CacheStatsResponse(BaseModel):
    backend: str
    enabled: bool
    entries: dict[str, int]
    classes: dict[str, dict[str, int]]
    hits: int
    misses: int
    hit_ratio: float
    ttls: dict[str, int]


class CacheClearResponse(BaseModel):
    cleared: dict[str, int]
    total: int


class QueueStatusResponse(BaseModel):
    depth: int
    workers: int
    concurrency: int
    active_jobs: list[str]
    jobs: dict[str, int]


class PerformanceResponse(BaseModel):
    uptime_seconds: float
    queries: int
    documents_processed: int
    documents_failed: int
    success_rate: float
    error_rate: float
    average_query_time: float
    average_processing_time: float | None = None
    cache_hit_ratio: float | None = None
    query_cache_hits: int
    memory_gb: float
    query_intents: dict[str, int]
    recent_errors: list[dict[str, Any]]
    recommendations: list[str]
    health_score: int = Field(ge=0, le=100)


class ServiceCheck(BaseModel):
    ok: bool
    detail: str | None = None
    info: dict[str, Any] = Field(default_factory=dict)


class AdminHealthResponse(BaseModel):
    status: Literal["healthy", "degraded"]
    health_score: int = Field(ge=0, le=100)
    services: dict[str, ServiceCheck]
