from __future__ import annotations

"""Upload intake, job status polling and document deletion."""

import logging
import re
import secrets
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable

from src.cache.layer import CacheLayer
from src.errors import ValidationError
from src.ingestion.jobs import JobRecord, JobStore
from src.ingestion.queue import IngestionQueue, priority_for_size
from src.loaders.registry import detect_file_type
from src.metadata.store import DocumentStore

logger = logging.getLogger(__name__)

_UNSAFE_NAME_RE = re.compile(r"[^A-Za-z0-9._ -]+")

# Seconds of processing per megabyte, by file type.
_SECONDS_PER_MB = {
    ".pdf": 30,
    ".docx": 20,
    ".doc": 25,
    ".txt": 10,
    ".md": 10,
    ".csv": 15,
    ".rtf": 20,
}


def estimate_processing_seconds(file_size: int, file_type: str) -> int:
    per_mb = _SECONDS_PER_MB.get(file_type, 25)
    return round(max(30.0, per_mb * file_size / (1024 * 1024)))


def safe_filename(filename: str) -> str:
    name = Path((filename or "").replace("\\", "/")).name
    name = _UNSAFE_NAME_RE.sub("_", name).strip(" .")
    return name or "upload"


def _token() -> str:
    return secrets.token_hex(4)


@dataclass(frozen=True)
class EnqueuedJob:
    job_id: str
    document_id: str
    filename: str
    file_type: str
    file_size: int
    stored_path: str
    estimated_seconds: int
    status: str = "queued"

    def to_dict(self) -> dict[str, Any]:
        return {
            "job_id": self.job_id,
            "document_id": self.document_id,
            "filename": self.filename,
            "file_type": self.file_type.lstrip("."),
            "file_size": self.file_size,
            "status": self.status,
            "estimated_processing_time": f"{self.estimated_seconds}s",
        }


def job_status(job: JobRecord, now: float | None = None) -> dict[str, Any]:
    """Job snapshot plus elapsed, estimated total and remaining time and throughput."""
    now = time.time() if now is None else now
    end = job.finished_at if job.finished and job.finished_at else now
    elapsed = max(0.0, end - job.created_at)
    estimated_total = elapsed / job.progress * 100 if job.progress > 0 else None
    estimated_remaining = (
        max(0.0, estimated_total - elapsed) if estimated_total is not None and job.progress < 100 else None
    )
    return {
        "job_id": job.id,
        "document_id": job.document_id,
        "filename": job.filename,
        "file_type": job.file_type.lstrip("."),
        "file_size": job.file_size,
        "status": job.status,
        "progress": job.progress,
        "message": job.message,
        "error": job.error,
        "attempts": job.attempts,
        "requeue_count": job.requeue_count,
        "created_at": job.created_at,
        "updated_at": job.updated_at,
        "finished_at": job.finished_at,
        "metrics": {
            **job.stats,
            "elapsed_seconds": round(elapsed, 3),
            "estimated_total_seconds": round(estimated_total, 3) if estimated_total is not None else None,
            "estimated_remaining_seconds": (
                round(estimated_remaining, 3) if estimated_remaining is not None else None
            ),
            "throughput": round(job.progress / elapsed, 4) if elapsed > 0 else 0.0,
        },
    }


class IngestionService:
    """Accepts uploads, tracks their jobs and removes documents on request."""

    def __init__(
        self,
        jobs: JobStore,
        documents: DocumentStore,
        queue: IngestionQueue,
        vectorstore: Any,
        cache: CacheLayer | None = None,
        upload_dir: str | Path = "uploads",
        max_file_bytes: int = 50 * 1024 * 1024,
        retention_seconds: float = 86400,
        max_entries: int = 1000,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.jobs = jobs
        self.documents = documents
        self.queue = queue
        self.vectorstore = vectorstore
        self.cache = cache
        self.upload_dir = Path(upload_dir)
        self.max_file_bytes = max_file_bytes
        self.retention_seconds = retention_seconds
        self.max_entries = max_entries
        self._clock = clock

    def validate(self, filename: str, file_size: int, content_type: str | None = None) -> str:
        file_type = detect_file_type(filename, content_type)
        if file_size <= 0:
            raise ValidationError("Uploaded file is empty")
        if file_size > self.max_file_bytes:
            limit_mb = self.max_file_bytes / (1024 * 1024)
            raise ValidationError(f"File exceeds the {limit_mb:g} MB upload limit")
        return file_type

    async def enqueue(
        self,
        filename: str,
        data: bytes,
        content_type: str | None = None,
        course_id: str | None = None,
    ) -> EnqueuedJob:
        """Store the upload, record the document and queue its job; returns immediately."""
        file_type = self.validate(filename, len(data), content_type)
        stamp = int(self._clock() * 1000)
        name = safe_filename(filename)
        self.upload_dir.mkdir(parents=True, exist_ok=True)
        stored_path = self.upload_dir / f"{stamp}-{secrets.randbelow(10**9)}-{name}"
        stored_path.write_bytes(data)

        document_id = f"doc_{stamp}_{_token()}"
        job_id = f"job_{stamp}_{_token()}"
        priority = priority_for_size(len(data))
        self.documents.create(
            document_id=document_id,
            name=filename,
            file_size=len(data),
            file_type=file_type.lstrip("."),
            stored_path=str(stored_path),
            course_id=course_id,
        )
        self.jobs.create(
            job_id=job_id,
            document_id=document_id,
            filename=filename,
            stored_path=str(stored_path),
            file_type=file_type,
            file_size=len(data),
            priority=priority,
        )
        await self.queue.submit(job_id, priority)
        evicted = self.jobs.evict(self.retention_seconds, self.max_entries)
        logger.info(
            "upload_enqueued",
            extra={
                "job_id": job_id,
                "document_id": document_id,
                "file_type": file_type,
                "file_size": len(data),
                "evicted_jobs": evicted,
            },
        )
        return EnqueuedJob(
            job_id=job_id,
            document_id=document_id,
            filename=filename,
            file_type=file_type,
            file_size=len(data),
            stored_path=str(stored_path),
            estimated_seconds=estimate_processing_seconds(len(data), file_type),
        )

    def get_status(self, job_id: str) -> dict[str, Any] | None:
        """Status with derived metrics, or None for unknown or evicted jobs."""
        job = self.jobs.get(job_id)
        if job is None:
            return None
        return job_status(job, self._clock())

    def processing_stats(self, document_id: str) -> dict[str, Any] | None:
        """Processing stats for a document, from the stats cache or its last completed job."""
        record = self.documents.get(document_id)
        if record is None:
            return None
        cached = self.cache.get_stats(document_id) if self.cache is not None else None
        if cached is not None:
            return {"document_id": document_id, "processed": record.processed, "cache_hit": True, "stats": cached}
        job = self.jobs.latest_for_document(document_id)
        stats = dict(job.stats) if job is not None else {}
        if stats and self.cache is not None:
            self.cache.put_stats(document_id, stats)
        return {"document_id": document_id, "processed": record.processed, "cache_hit": False, "stats": stats}

    def delete_document(self, document_id: str) -> dict[str, Any] | None:
        """Remove the metadata record first; chunks, file and caches are best-effort."""
        record = self.documents.get(document_id)
        if record is None:
            return None
        self.documents.delete(document_id)
        result: dict[str, Any] = {
            "document_id": document_id,
            "deleted": True,
            "chunks_removed": 0,
            "file_removed": False,
            "warnings": [],
        }
        try:
            result["chunks_removed"] = self.vectorstore.delete_by_document(document_id)
        except Exception as exc:
            logger.warning("chunk_delete_failed", extra={"document_id": document_id, "detail": str(exc)})
            result["warnings"].append(f"Index entries could not be removed: {exc}")
        if record.stored_path:
            try:
                Path(record.stored_path).unlink()
                result["file_removed"] = True
            except FileNotFoundError:
                pass
            except OSError as exc:
                logger.warning("upload_delete_failed", extra={"document_id": document_id, "detail": str(exc)})
                result["warnings"].append(f"Uploaded file could not be removed: {exc}")
        if self.cache is not None:
            self.cache.delete("chunks", document_id)
            self.cache.delete("stats", document_id)
            self.cache.invalidate("query")
        logger.info(
            "document_deleted",
            extra={"document_id": document_id, "chunks_removed": result["chunks_removed"]},
        )
        return result
