from __future__ import annotations

import time

from fastapi import Request
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, Histogram, generate_latest
from starlette.responses import Response

from src.app.settings import settings

REQUEST_COUNT = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status"],
)
REQUEST_LATENCY = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "path"],
)
INGESTION_JOBS = Counter(
    "ingestion_jobs_total",
    "Ingestion jobs by terminal status",
    ["status"],
)
INGESTION_DURATION = Histogram(
    "ingestion_job_duration_seconds",
    "Wall-clock duration of successful ingestion jobs",
    buckets=(1, 5, 15, 30, 60, 120, 300, 600),
)
QUEUE_DEPTH = Gauge(
    "ingestion_queue_depth",
    "Jobs waiting for a worker",
)
QUERY_LATENCY = Histogram(
    "query_duration_seconds",
    "End-to-end query latency in seconds",
    ["outcome"],
)
CACHE_LOOKUPS = Counter(
    "cache_lookups_total",
    "Cache lookups by class and result",
    ["cache_class", "result"],
)


def record_cache_lookup(cache_class: str, hit: bool) -> None:
    if not settings.metrics_enabled:
        return
    CACHE_LOOKUPS.labels(cache_class, "hit" if hit else "miss").inc()


def record_job_finished(status: str, duration: float | None = None) -> None:
    if not settings.metrics_enabled:
        return
    INGESTION_JOBS.labels(status).inc()
    if duration is not None and status == "completed":
        INGESTION_DURATION.observe(duration)


def record_queue_depth(depth: int) -> None:
    if settings.metrics_enabled:
        QUEUE_DEPTH.set(depth)


def record_query(outcome: str, duration: float) -> None:
    if settings.metrics_enabled:
        QUERY_LATENCY.labels(outcome).observe(duration)


async def metrics_middleware(request: Request, call_next):
    if not settings.metrics_enabled:
        return await call_next(request)
    path = request.url.path
    if path == "/metrics":
        return await call_next(request)
    start = time.monotonic()
    status = 500
    try:
        response = await call_next(request)
        status = response.status_code
        return response
    finally:
        duration = time.monotonic() - start
        label = getattr(request.scope.get("route"), "path", path)
        REQUEST_COUNT.labels(request.method, label, str(status)).inc()
        REQUEST_LATENCY.labels(request.method, label).observe(duration)


def metrics_response() -> Response:
    if not settings.metrics_enabled:
        return Response(status_code=404)
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)
