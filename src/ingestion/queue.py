from __future__ import annotations

"""Priority job queue with a bounded worker pool and stall recovery."""

import asyncio
import itertools
import logging
from dataclasses import dataclass, field
from typing import Any, Protocol

from src.app.metrics import record_job_finished, record_queue_depth
from src.errors import ContentError, TransientInfraError, ValidationError, describe_error
from src.ingestion.jobs import PROCESSING, QUEUED, JobRecord, JobStore
from src.ingestion.retry import RetryPolicy
from src.monitoring.monitor import PerformanceMonitor

logger = logging.getLogger(__name__)

SMALL_FILE_BYTES = 1024 * 1024


class JobProcessor(Protocol):
    async def process(self, job: JobRecord, run_id: str) -> dict[str, Any]:
        raise NotImplementedError

    def cleanup(self, job: JobRecord) -> bool:
        raise NotImplementedError


def priority_for_size(file_size: int) -> int:
    """Small uploads are served first; lower values run earlier."""
    return 0 if file_size < SMALL_FILE_BYTES else 1


@dataclass(order=True)
class _QueueItem:
    priority: int
    sequence: int
    job_id: str = field(compare=False)


class IngestionQueue:
    """At-least-once delivery of jobs to ``concurrency`` workers.

    The application starts the pool at startup; ``submit`` and ``join`` start it
    on demand otherwise. Jobs left ``queued`` or ``processing`` in the job table
    are re-submitted when the pool starts.
    """

    def __init__(
        self,
        jobs: JobStore,
        processor: JobProcessor,
        concurrency: int = 2,
        policy: RetryPolicy | None = None,
        stall_timeout: float = 60.0,
        stall_check_interval: float = 10.0,
        max_stall_requeues: int = 1,
        monitor: PerformanceMonitor | None = None,
    ) -> None:
        self.jobs = jobs
        self.processor = processor
        self.concurrency = max(1, concurrency)
        self.policy = policy or RetryPolicy(attempts=3, base_delay=5.0)
        self.stall_timeout = stall_timeout
        self.stall_check_interval = stall_check_interval
        self.max_stall_requeues = max_stall_requeues
        self.monitor = monitor
        self._sequence = itertools.count()
        self._loop: asyncio.AbstractEventLoop | None = None
        self._queue: asyncio.PriorityQueue[_QueueItem] | None = None
        self._workers: list[asyncio.Task] = []
        self._stall_task: asyncio.Task | None = None
        self._active: dict[str, asyncio.Task] = {}
        self._pending: set[str] = set()
        self._stalled: set[str] = set()

    @property
    def started(self) -> bool:
        return self._queue is not None

    @property
    def worker_count(self) -> int:
        return sum(1 for worker in self._workers if not worker.done())

    def depth(self) -> int:
        return self._queue.qsize() if self._queue is not None else 0

    def active_jobs(self) -> list[str]:
        return sorted(self._active)

    async def start(self) -> None:
        """Start the worker pool and resubmit unfinished jobs left in the job table."""
        await self._ensure_started()

    async def submit(self, job_id: str, priority: int = 0) -> None:
        """Enqueue without blocking on processing."""
        await self._ensure_started()
        self._put(job_id, priority)
        record_queue_depth(self.depth())
        logger.info("job_enqueued", extra={"job_id": job_id, "priority": priority})

    async def join(self) -> None:
        """Wait until every submitted job has finished its final attempt."""
        await self._ensure_started()
        await self._queue.join()

    async def stop(self) -> None:
        tasks = [*self._workers, *([self._stall_task] if self._stall_task else [])]
        for task in tasks:
            task.cancel()
        if tasks and self._loop is asyncio.get_running_loop():
            await asyncio.gather(*tasks, return_exceptions=True)
        self._workers = []
        self._stall_task = None
        self._queue = None
        self._loop = None
        self._active.clear()
        self._pending.clear()

    def _put(self, job_id: str, priority: int) -> None:
        # A job waiting in the queue or running is never queued a second time.
        if job_id in self._pending or job_id in self._active:
            return
        self._pending.add(job_id)
        self._queue.put_nowait(_QueueItem(priority, next(self._sequence), job_id))

    async def _ensure_started(self) -> None:
        loop = asyncio.get_running_loop()
        if self._loop is loop and self._queue is not None:
            return
        self._loop = loop
        self._queue = asyncio.PriorityQueue()
        self._active.clear()
        self._pending.clear()
        self._workers = [
            loop.create_task(self._worker(index), name=f"ingestion-worker-{index}")
            for index in range(self.concurrency)
        ]
        self._stall_task = loop.create_task(self._watch_stalls(), name="ingestion-stall-monitor")
        self._recover()
        logger.info("ingestion_workers_started", extra={"workers": self.concurrency})

    def _recover(self) -> None:
        for job in self.jobs.list_jobs({QUEUED, PROCESSING}):
            if job.status == PROCESSING and not self.jobs.requeue_stalled(job.id, self.max_stall_requeues):
                self.jobs.fail(job.id, "Job was interrupted and exceeded the stall retry limit")
                continue
            self._put(job.id, job.priority)
            logger.info("job_recovered", extra={"job_id": job.id})

    async def _worker(self, index: int) -> None:
        while True:
            item = await self._queue.get()
            self._pending.discard(item.job_id)
            try:
                await self._run(item)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("ingestion_worker_error", extra={"job_id": item.job_id, "worker": index})
                self.jobs.fail(item.job_id, "Internal error while processing the document")
                record_job_finished("failed")
            finally:
                self._queue.task_done()
                record_queue_depth(self.depth())

    async def _run(self, item: _QueueItem) -> None:
        job = self.jobs.get(item.job_id)
        if job is None or job.finished:
            return
        attempt = job.attempts
        while True:
            run_id = self.jobs.start_attempt(job.id)
            if run_id is None:
                return
            attempt += 1
            task = asyncio.create_task(self.processor.process(job, run_id))
            self._active[job.id] = task
            try:
                stats = await task
            except asyncio.CancelledError:
                if job.id in self._stalled:
                    self._stalled.discard(job.id)
                    return
                raise
            except (ValidationError, ContentError) as exc:
                self._fail(job, exc, attempt)
                return
            except TransientInfraError as exc:
                if attempt >= self.policy.attempts:
                    self._fail(job, exc, attempt)
                    return
                delay = self.policy.delay_for(attempt)
                self.jobs.mark_retrying(job.id, attempt, delay, describe_error(exc))
                logger.warning(
                    "job_attempt_failed",
                    extra={"job_id": job.id, "attempt": attempt, "delay": delay, "detail": describe_error(exc)},
                )
                await asyncio.sleep(delay)
                continue
            finally:
                if self._active.get(job.id) is task:
                    del self._active[job.id]
            if self.jobs.complete(job.id, run_id, stats):
                self.processor.cleanup(job)
                record_job_finished("completed", stats.get("duration_seconds"))
                if self.monitor is not None:
                    self.monitor.record_processing(stats.get("duration_seconds"), True)
                logger.info("job_completed", extra={"job_id": job.id, "attempt": attempt})
            return

    def _fail(self, job: JobRecord, exc: BaseException, attempt: int) -> None:
        message = describe_error(exc)
        self.jobs.fail(job.id, message)
        record_job_finished("failed")
        if self.monitor is not None:
            self.monitor.record_processing(None, False)
            self.monitor.record_error("ingestion", message, job_id=job.id, error_type=type(exc).__name__)
        logger.error(
            "job_failed",
            extra={"job_id": job.id, "attempt": attempt, "error_type": type(exc).__name__, "detail": message},
        )

    async def _watch_stalls(self) -> None:
        while True:
            await asyncio.sleep(self.stall_check_interval)
            self.check_stalls()

    def check_stalls(self) -> list[str]:
        """Requeue (once) or fail jobs whose heartbeat is older than the stall timeout."""
        handled: list[str] = []
        for job in self.jobs.find_stalled(self.stall_timeout):
            task = self._active.get(job.id)
            if task is not None:
                self._stalled.add(job.id)
                del self._active[job.id]
                task.cancel()
            if self.jobs.requeue_stalled(job.id, self.max_stall_requeues):
                logger.warning("job_stalled_requeued", extra={"job_id": job.id})
                if self._queue is not None:
                    self._put(job.id, job.priority)
            else:
                self.jobs.fail(job.id, f"Job stalled: no progress within {self.stall_timeout:g}s")
                record_job_finished("failed")
                logger.error("job_stalled_failed", extra={"job_id": job.id})
            handled.append(job.id)
        return handled
