from __future__ import annotations

"""Durable job-status table for ingestion work.

Each job row is written by the single worker that owns the current run; all
updates are single-statement and guarded in their WHERE clause, so pollers can
read without locks.
"""

import json
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable

from src.errors import TransientInfraError
from src.metadata.store import build_engine

QUEUED = "queued"
PROCESSING = "processing"
COMPLETED = "completed"
FAILED = "failed"
TERMINAL_STATUSES = frozenset({COMPLETED, FAILED})
STALL_MESSAGE = "Job stalled, retrying..."


class JobStoreError(TransientInfraError):
    """Raised when the job table cannot be read or written."""
    pass


@dataclass(frozen=True)
class JobRecord:
    """Snapshot of one ingestion job."""
    id: str
    document_id: str
    filename: str
    stored_path: str
    file_type: str
    file_size: int
    priority: int
    status: str
    progress: int
    attempts: int
    requeue_count: int
    created_at: float
    updated_at: float
    run_id: str | None = None
    message: str | None = None
    error: str | None = None
    started_at: float | None = None
    finished_at: float | None = None
    stats: dict[str, Any] = field(default_factory=dict)

    @property
    def finished(self) -> bool:
        return self.status in TERMINAL_STATUSES


class JobStore:
    """SQL-backed job table with atomic, monotonic progress updates."""
    def __init__(self, connection_uri: str, clock: Callable[[], float] = time.time) -> None:
        from sqlalchemy import Column, Float, Integer, MetaData, String, Table, Text

        self._clock = clock
        self._engine = build_engine(connection_uri)
        self._metadata = MetaData()
        self._table = Table(
            "ingestion_jobs",
            self._metadata,
            Column("id", String(64), primary_key=True),
            Column("document_id", String(64), nullable=False, index=True),
            Column("filename", String(255), nullable=False),
            Column("stored_path", Text, nullable=False),
            Column("file_type", String(16), nullable=False),
            Column("file_size", Integer, nullable=False),
            Column("priority", Integer, nullable=False),
            Column("status", String(16), nullable=False, index=True),
            Column("progress", Integer, nullable=False),
            Column("attempts", Integer, nullable=False),
            Column("requeue_count", Integer, nullable=False),
            Column("run_id", String(36), nullable=True),
            Column("message", Text, nullable=True),
            Column("error", Text, nullable=True),
            Column("stats", Text, nullable=True),
            Column("created_at", Float, nullable=False),
            Column("updated_at", Float, nullable=False),
            Column("started_at", Float, nullable=True),
            Column("finished_at", Float, nullable=True),
        )
        self._metadata.create_all(self._engine)

    def create(
        self,
        job_id: str,
        document_id: str,
        filename: str,
        stored_path: str,
        file_type: str,
        file_size: int,
        priority: int = 0,
    ) -> JobRecord:
        now = self._clock()
        values = {
            "id": job_id,
            "document_id": document_id,
            "filename": filename,
            "stored_path": stored_path,
            "file_type": file_type,
            "file_size": file_size,
            "priority": priority,
            "status": QUEUED,
            "progress": 0,
            "attempts": 0,
            "requeue_count": 0,
            "message": "Queued for processing",
            "created_at": now,
            "updated_at": now,
        }
        self._write(self._table.insert().values(**values))
        return self.get(job_id)

    def get(self, job_id: str) -> JobRecord | None:
        from sqlalchemy.exc import SQLAlchemyError

        try:
            with self._engine.connect() as conn:
                row = conn.execute(
                    self._table.select().where(self._table.c.id == job_id)
                ).mappings().first()
        except SQLAlchemyError as exc:
            raise JobStoreError(f"Job lookup failed: {exc}") from exc
        return _to_record(row) if row else None

    def list_jobs(self, statuses: set[str] | None = None) -> list[JobRecord]:
        query = self._table.select().order_by(self._table.c.created_at)
        if statuses:
            query = query.where(self._table.c.status.in_(sorted(statuses)))
        with self._engine.connect() as conn:
            rows = conn.execute(query).mappings().all()
        return [_to_record(row) for row in rows]

    def latest_for_document(self, document_id: str, status: str = COMPLETED) -> JobRecord | None:
        table = self._table
        query = (
            table.select()
            .where(table.c.document_id == document_id)
            .where(table.c.status == status)
            .order_by(table.c.updated_at.desc())
            .limit(1)
        )
        with self._engine.connect() as conn:
            row = conn.execute(query).mappings().first()
        return _to_record(row) if row is not None else None

    def start_attempt(self, job_id: str) -> str | None:
        """Move a job to processing under a fresh run id; returns None if the job is finished."""
        run_id = str(uuid.uuid4())
        now = self._clock()
        table = self._table
        rowcount = self._write(
            table.update()
            .where(table.c.id == job_id)
            .where(table.c.status.in_([QUEUED, PROCESSING]))
            .values(
                status=PROCESSING,
                run_id=run_id,
                attempts=table.c.attempts + 1,
                message="Processing started",
                started_at=now,
                updated_at=now,
            )
        )
        return run_id if rowcount else None

    def update_progress(self, job_id: str, run_id: str, progress: int, message: str | None = None) -> bool:
        """Raise progress for the owning run; lower values only refresh the heartbeat.

        Returns True when the stored progress changed. Safe to retry.
        """
        progress = max(0, min(100, int(progress)))
        now = self._clock()
        table = self._table
        owned = (table.c.id == job_id) & (table.c.run_id == run_id) & (table.c.status == PROCESSING)
        values: dict[str, Any] = {"progress": progress, "updated_at": now}
        if message is not None:
            values["message"] = message
        changed = self._write(
            table.update().where(owned).where(table.c.progress <= progress).values(**values)
        )
        if not changed:
            self._write(table.update().where(owned).values(updated_at=now))
        return bool(changed)

    def heartbeat(self, job_id: str, run_id: str) -> None:
        table = self._table
        self._write(
            table.update()
            .where((table.c.id == job_id) & (table.c.run_id == run_id) & (table.c.status == PROCESSING))
            .values(updated_at=self._clock())
        )

    def mark_retrying(self, job_id: str, attempt: int, delay: float, error: str) -> None:
        table = self._table
        self._write(
            table.update()
            .where(table.c.id == job_id)
            .where(table.c.status == PROCESSING)
            .values(
                status=QUEUED,
                run_id=None,
                message=f"Attempt {attempt} failed: {error}. Retrying in {delay:.1f}s",
                updated_at=self._clock(),
            )
        )

    def requeue_stalled(self, job_id: str, max_requeues: int = 1) -> bool:
        """Send a silent job back to the queue unless it has already been requeued."""
        table = self._table
        rowcount = self._write(
            table.update()
            .where(table.c.id == job_id)
            .where(table.c.status == PROCESSING)
            .where(table.c.requeue_count < max_requeues)
            .values(
                status=QUEUED,
                run_id=None,
                progress=0,
                attempts=0,
                requeue_count=table.c.requeue_count + 1,
                message=STALL_MESSAGE,
                updated_at=self._clock(),
            )
        )
        return bool(rowcount)

    def complete(self, job_id: str, run_id: str, stats: dict[str, Any]) -> bool:
        now = self._clock()
        table = self._table
        rowcount = self._write(
            table.update()
            .where((table.c.id == job_id) & (table.c.run_id == run_id) & (table.c.status == PROCESSING))
            .values(
                status=COMPLETED,
                progress=100,
                message="Document processed successfully",
                stats=json.dumps(stats, default=str),
                finished_at=now,
                updated_at=now,
            )
        )
        return bool(rowcount)

    def fail(self, job_id: str, error: str) -> bool:
        """Mark a job failed, keeping the error message exactly as raised."""
        now = self._clock()
        table = self._table
        rowcount = self._write(
            table.update()
            .where(table.c.id == job_id)
            .where(table.c.status.in_([QUEUED, PROCESSING]))
            .values(
                status=FAILED,
                run_id=None,
                error=error,
                message="Processing failed",
                finished_at=now,
                updated_at=now,
            )
        )
        return bool(rowcount)

    def find_stalled(self, timeout: float) -> list[JobRecord]:
        cutoff = self._clock() - timeout
        table = self._table
        with self._engine.connect() as conn:
            rows = conn.execute(
                table.select().where(table.c.status == PROCESSING).where(table.c.updated_at < cutoff)
            ).mappings().all()
        return [_to_record(row) for row in rows]

    def counts(self) -> dict[str, int]:
        from sqlalchemy import func, select

        with self._engine.connect() as conn:
            rows = conn.execute(
                select(self._table.c.status, func.count()).group_by(self._table.c.status)
            ).all()
        counts = {QUEUED: 0, PROCESSING: 0, COMPLETED: 0, FAILED: 0}
        counts.update({status: int(total) for status, total in rows})
        return counts

    def evict(self, retention_seconds: float, max_entries: int) -> int:
        """Drop finished jobs older than the retention window or beyond ``max_entries``."""
        from sqlalchemy import select

        table = self._table
        cutoff = self._clock() - retention_seconds
        finished = table.c.status.in_(sorted(TERMINAL_STATUSES))
        removed = self._write(table.delete().where(finished).where(table.c.finished_at < cutoff))
        with self._engine.connect() as conn:
            ids = conn.execute(
                select(table.c.id).where(finished).order_by(table.c.finished_at.desc())
            ).scalars().all()
        overflow = ids[max_entries:] if max_entries >= 0 else []
        if overflow:
            removed += self._write(table.delete().where(table.c.id.in_(list(overflow))))
        return removed

    def ping(self) -> bool:
        from sqlalchemy import text

        with self._engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True

    def _write(self, statement: Any) -> int:
        from sqlalchemy.exc import SQLAlchemyError

        try:
            with self._engine.begin() as conn:
                return conn.execute(statement).rowcount
        except SQLAlchemyError as exc:
            raise JobStoreError(f"Job status write failed: {exc}") from exc


def _to_record(row: Any) -> JobRecord:
    stats = json.loads(row["stats"]) if row["stats"] else {}
    return JobRecord(
        id=row["id"],
        document_id=row["document_id"],
        filename=row["filename"],
        stored_path=row["stored_path"],
        file_type=row["file_type"],
        file_size=int(row["file_size"]),
        priority=int(row["priority"]),
        status=row["status"],
        progress=int(row["progress"]),
        attempts=int(row["attempts"]),
        requeue_count=int(row["requeue_count"]),
        created_at=float(row["created_at"]),
        updated_at=float(row["updated_at"]),
        run_id=row["run_id"],
        message=row["message"],
        error=row["error"],
        started_at=row["started_at"],
        finished_at=row["finished_at"],
        stats=stats,
    )
