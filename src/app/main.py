from __future__ import annotations

"""FastAPI application entrypoint for the learning hub document service."""

import asyncio
import logging
import uuid
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, File, Form, HTTPException, Request, UploadFile
from fastapi.responses import JSONResponse

from src.app.dependencies import (
    get_cache,
    get_document_store,
    get_embedding_config_report,
    get_ingestion_service,
    get_job_store,
    get_llm_config_report,
    get_monitor,
    get_queue,
    get_synthesizer,
    get_vectorstore,
)
from src.app.metrics import metrics_middleware, metrics_response
from src.app.schemas import (
    AdminHealthResponse,
    CacheClearResponse,
    CacheStatsResponse,
    DeleteDocumentResponse,
    DocumentItem,
    DocumentListResponse,
    DocumentStatsResponse,
    JobStatusResponse,
    PerformanceResponse,
    QueryPerformance,
    QueryRequest,
    QueryResponse,
    QueryTimeoutResponse,
    QueueStatusResponse,
    ReferenceItem,
    ServiceCheck,
    UploadResponse,
)
from src.app.security import ADMIN_ROLES, WRITE_ROLES, AuthContext, require_api_key, require_roles
from src.app.settings import settings
from src.cache.layer import CACHE_CLASSES
from src.errors import ValidationError, describe_error
from src.loaders.registry import detect_file_type
from src.rag.synthesizer import TIMEOUT_SUGGESTIONS

logger = logging.getLogger(__name__)

UPLOAD_SUGGESTIONS = [
    "Upload a PDF, DOCX, DOC, TXT, MD, RTF or CSV file",
    "Keep uploads under the size limit",
    "Make sure the file contains selectable text",
]


def _configure_logging() -> None:
    """Configure root logging using environment settings."""
    level_name = settings.log_level.strip().upper()
    level = getattr(logging, level_name, logging.INFO)
    root_logger = logging.getLogger()
    if not root_logger.handlers:
        logging.basicConfig(
            level=level,
            format="%(asctime)s %(levelname)s %(name)s %(message)s",
        )
    logger.setLevel(level)


_configure_logging()


@asynccontextmanager
async def lifespan(app: FastAPI):
    await get_queue().start()
    yield
    await get_queue().stop()


app = FastAPI(title="Learning Hub RAG Service", version="0.1.0", lifespan=lifespan)


def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", None) or str(uuid.uuid4())


async def _read_upload_bytes(upload: UploadFile, max_bytes: int | None) -> bytes:
    """Stream upload bytes with a hard size limit."""
    if not max_bytes or max_bytes <= 0:
        return await upload.read()
    buffer = bytearray()
    while True:
        chunk = await upload.read(65536)
        if not chunk:
            break
        buffer.extend(chunk)
        if len(buffer) > max_bytes:
            raise ValidationError(f"File exceeds maximum size of {max_bytes} bytes")
    return bytes(buffer)


@app.exception_handler(ValidationError)
async def validation_error_handler(request: Request, exc: ValidationError) -> JSONResponse:
    logger.info("request_rejected", extra={"request_id": _request_id(request), "detail": describe_error(exc)})
    return JSONResponse(
        status_code=400,
        content={
            "error": "validation_error",
            "detail": describe_error(exc),
            "suggestions": UPLOAD_SUGGESTIONS if request.url.path == "/upload" else ["Check the request and try again"],
        },
    )


@app.middleware("http")
async def add_request_id(request: Request, call_next):
    """Attach or create a request ID for traceability."""
    request_id = request.headers.get("x-request-id") or str(uuid.uuid4())
    request.state.request_id = request_id
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response


@app.middleware("http")
async def record_metrics(request: Request, call_next):
    """Capture request metrics before returning the response."""
    return await metrics_middleware(request, call_next)


@app.get("/metrics")
async def metrics():
    """Expose Prometheus-style metrics."""
    return metrics_response()


@app.get("/health")
async def health() -> dict[str, str]:
    """Simple health probe for uptime checks."""
    return {"status": "ok"}


@app.post("/upload", response_model=UploadResponse)
async def upload(
    http_request: Request,
    file: UploadFile = File(...),
    course_id: str | None = Form(default=None),
    auth: AuthContext = Depends(require_api_key),
) -> UploadResponse:
    """Accept a document and queue it for ingestion."""
    require_roles(auth, WRITE_ROLES)
    request_id = _request_id(http_request)
    filename = file.filename or ""
    service = get_ingestion_service()
    detect_file_type(filename, file.content_type)
    data = await _read_upload_bytes(file, settings.file_max_bytes)
    job = await service.enqueue(filename, data, file.content_type, course_id=course_id)
    logger.info(
        "upload_accepted",
        extra={"request_id": request_id, "job_id": job.job_id, "document_id": job.document_id},
    )
    return UploadResponse(**job.to_dict())


@app.get("/status/{job_id}", response_model=JobStatusResponse)
async def job_status(job_id: str, auth: AuthContext = Depends(require_api_key)) -> JobStatusResponse:
    """Return job progress with elapsed, remaining and throughput metrics."""
    status = get_ingestion_service().get_status(job_id)
    if status is None:
        raise HTTPException(status_code=404, detail={"error": "Job not found", "job_id": job_id})
    return JobStatusResponse(**status)


@app.get("/documents", response_model=DocumentListResponse)
async def list_documents(
    course_id: str | None = None,
    auth: AuthContext = Depends(require_api_key),
) -> DocumentListResponse:
    records = get_document_store().list_documents(course_id)
    return DocumentListResponse(
        documents=[DocumentItem(**record.to_dict()) for record in records],
        total=len(records),
    )


@app.get("/documents/{document_id}/stats", response_model=DocumentStatsResponse)
async def document_stats(
    document_id: str,
    auth: AuthContext = Depends(require_api_key),
) -> DocumentStatsResponse:
    result = get_ingestion_service().processing_stats(document_id)
    if result is None:
        raise HTTPException(status_code=404, detail={"error": "Document not found", "document_id": document_id})
    return DocumentStatsResponse(**result)


@app.delete("/documents/{document_id}", response_model=DeleteDocumentResponse)
async def delete_document(
    document_id: str,
    http_request: Request,
    auth: AuthContext = Depends(require_api_key),
) -> DeleteDocumentResponse:
    """Delete the document record, then its chunks, upload and cached chunk set."""
    require_roles(auth, WRITE_ROLES)
    result = get_ingestion_service().delete_document(document_id)
    if result is None:
        raise HTTPException(status_code=404, detail={"error": "Document not found", "document_id": document_id})
    logger.info(
        "document_delete_requested",
        extra={"request_id": _request_id(http_request), "document_id": document_id},
    )
    return DeleteDocumentResponse(**result)


@app.post("/query", response_model=QueryResponse, responses={408: {"model": QueryTimeoutResponse}})
async def query(
    request: QueryRequest,
    http_request: Request,
    auth: AuthContext = Depends(require_api_key),
):
    """Answer a question from the indexed documents with page references."""
    request_id = _request_id(http_request)
    synthesizer = get_synthesizer()
    try:
        result = await asyncio.wait_for(
            synthesizer.answer(
                request.query,
                document=request.document,
                mode=request.response_mode,
                depth=request.response_depth,
            ),
            timeout=settings.request_timeout,
        )
    except asyncio.TimeoutError:
        logger.warning("query_timeout", extra={"request_id": request_id, "timeout": settings.request_timeout})
        get_monitor().record_error("timeout", "Query exceeded the request timeout", request_id=request_id)
        return JSONResponse(
            status_code=408,
            content=QueryTimeoutResponse(
                detail=f"The query did not complete within {settings.request_timeout:g} seconds",
                query=request.query[:200],
                timeout_seconds=settings.request_timeout,
                suggestions=TIMEOUT_SUGGESTIONS,
                request_id=request_id,
            ).model_dump(),
        )
    logger.info(
        "query_complete",
        extra={"request_id": request_id, "outcome": result.outcome, "references": len(result.references)},
    )
    return QueryResponse(
        query=result.query,
        answer=result.answer,
        outcome=result.outcome,
        intent=result.intent,
        references=[ReferenceItem(**ref.to_dict()) for ref in result.references],
        suggestions=result.suggestions,
        performance=QueryPerformance(**result.performance()),
        response_mode=result.mode,
        response_depth=result.depth,
        provider=result.provider,
        document=result.document_filter,
        degraded=result.degraded,
        available_topics=result.available_topics,
        request_id=request_id,
    )


@app.get("/admin/cache/stats", response_model=CacheStatsResponse)
async def cache_stats(auth: AuthContext = Depends(require_api_key)) -> CacheStatsResponse:
    require_roles(auth, ADMIN_ROLES)
    return CacheStatsResponse(**get_cache().stats())


@app.post("/admin/cache/clear", response_model=CacheClearResponse)
async def cache_clear(auth: AuthContext = Depends(require_api_key)) -> CacheClearResponse:
    require_roles(auth, ADMIN_ROLES)
    cleared = get_cache().invalidate()
    return CacheClearResponse(cleared=cleared, total=sum(cleared.values()))


@app.post("/admin/cache/clear/{cache_class}", response_model=CacheClearResponse)
async def cache_clear_class(
    cache_class: str,
    auth: AuthContext = Depends(require_api_key),
) -> CacheClearResponse:
    require_roles(auth, ADMIN_ROLES)
    if cache_class not in CACHE_CLASSES:
        raise ValidationError(f"Unknown cache class '{cache_class}'. Use one of: {', '.join(CACHE_CLASSES)}")
    cleared = get_cache().invalidate(cache_class)
    return CacheClearResponse(cleared=cleared, total=sum(cleared.values()))


@app.get("/admin/queue", response_model=QueueStatusResponse)
async def queue_status(auth: AuthContext = Depends(require_api_key)) -> QueueStatusResponse:
    require_roles(auth, ADMIN_ROLES)
    queue = get_queue()
    return QueueStatusResponse(
        depth=queue.depth(),
        workers=queue.worker_count,
        concurrency=queue.concurrency,
        active_jobs=queue.active_jobs(),
        jobs=get_job_store().counts(),
    )


@app.get("/admin/performance", response_model=PerformanceResponse)
async def performance(auth: AuthContext = Depends(require_api_key)) -> PerformanceResponse:
    require_roles(auth, ADMIN_ROLES)
    report = get_monitor().report(get_cache().hit_ratio())
    return PerformanceResponse(**report)


def _check(name: str, func) -> ServiceCheck:
    try:
        info = func()
    except Exception as exc:
        logger.warning("health_check_failed", extra={"service": name, "detail": describe_error(exc)})
        return ServiceCheck(ok=False, detail=describe_error(exc))
    if isinstance(info, dict):
        return ServiceCheck(ok=bool(info.get("ok", True)), detail=info.get("detail"), info=info)
    return ServiceCheck(ok=bool(info))


def _queue_health() -> dict[str, object]:
    queue = get_queue()
    workers = queue.worker_count
    ok = not queue.started or workers > 0
    report: dict[str, object] = {"ok": ok, "workers": workers, "depth": queue.depth()}
    if not ok:
        report["detail"] = "No ingestion workers are running"
    return report


@app.get("/admin/health", response_model=AdminHealthResponse)
async def admin_health(auth: AuthContext = Depends(require_api_key)):
    """Per-service checks plus the overall health score; 503 when any check fails."""
    require_roles(auth, ADMIN_ROLES)
    services = {
        "cache": _check("cache", lambda: get_cache().health_check()),
        "vector_index": _check("vector_index", lambda: get_vectorstore().health()),
        "job_store": _check("job_store", lambda: get_job_store().ping()),
        "document_store": _check("document_store", lambda: get_document_store().ping()),
        "embedding": _check("embedding", get_embedding_config_report),
        "llm": _check("llm", get_llm_config_report),
        "queue": _check("queue", _queue_health),
    }
    score = get_monitor().health_score(get_cache().hit_ratio())
    healthy = all(check.ok for check in services.values())
    body = AdminHealthResponse(
        status="healthy" if healthy else "degraded",
        health_score=score,
        services=services,
    )
    if not healthy:
        return JSONResponse(status_code=503, content=body.model_dump())
    return body

