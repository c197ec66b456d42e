from __future__ import annotations

"""Worker pool behaviour: retries, permanent failures, priority and stall recovery."""

import pytest

from src.errors import ContentError
from src.ingestion.jobs import COMPLETED, FAILED, QUEUED, STALL_MESSAGE, JobStore
from src.ingestion.queue import IngestionQueue, priority_for_size
from src.ingestion.retry import RetryPolicy, retry_async
from src.monitoring.monitor import PerformanceMonitor
from src.rag.embeddings import EmbeddingError
from src.tests.helpers import FakeClock

pytestmark = pytest.mark.anyio

FAST_RETRY = RetryPolicy(attempts=3, base_delay=0.001)


class ScriptedProcessor:
    """Raises the scripted errors in order, then succeeds."""

    def __init__(self, jobs: JobStore, errors: list[Exception] | None = None) -> None:
        self.jobs = jobs
        self.errors = list(errors or [])
        self.processed: list[str] = []
        self.cleaned: list[str] = []

    async def process(self, job, run_id: str) -> dict[str, object]:
        self.processed.append(job.id)
        self.jobs.update_progress(job.id, run_id, 50, "Embedding chunks")
        if self.errors:
            raise self.errors.pop(0)
        return {"chunk_count": 6, "duration_seconds": 0.2}

    def cleanup(self, job) -> bool:
        self.cleaned.append(job.id)
        return True


def create_job(jobs: JobStore, job_id: str, file_size: int = 2048) -> None:
    jobs.create(
        job_id,
        document_id=f"doc_{job_id}",
        filename=f"{job_id}.pdf",
        stored_path=f"/tmp/{job_id}.pdf",
        file_type="pdf",
        file_size=file_size,
        priority=priority_for_size(file_size),
    )


async def run_jobs(queue: IngestionQueue, *job_ids: str) -> None:
    for job_id in job_ids:
        job = queue.jobs.get(job_id)
        await queue.submit(job_id, job.priority)
    await queue.join()
    await queue.stop()


async def test_transient_failure_on_every_attempt_fails_with_the_last_error() -> None:
    jobs = JobStore("sqlite://")
    message = "Embedding request timed out after 30s"
    processor = ScriptedProcessor(jobs, [EmbeddingError(message) for _ in range(3)])
    monitor = PerformanceMonitor()
    queue = IngestionQueue(jobs, processor, concurrency=1, policy=FAST_RETRY, monitor=monitor)
    create_job(jobs, "job-1")

    await run_jobs(queue, "job-1")

    job = jobs.get("job-1")
    assert job.status == FAILED
    assert job.error == message
    assert job.attempts == 3
    assert processor.processed == ["job-1"] * 3
    assert processor.cleaned == []
    assert monitor.recent_errors()[-1]["message"] == message


async def test_transient_failure_then_success_completes() -> None:
    jobs = JobStore("sqlite://")
    processor = ScriptedProcessor(jobs, [EmbeddingError("Embedding service unavailable")])
    queue = IngestionQueue(jobs, processor, concurrency=1, policy=FAST_RETRY)
    create_job(jobs, "job-1")

    await run_jobs(queue, "job-1")

    job = jobs.get("job-1")
    assert job.status == COMPLETED
    assert job.progress == 100
    assert job.attempts == 2
    assert job.stats["chunk_count"] == 6
    assert processor.cleaned == ["job-1"]


async def test_content_errors_are_not_retried() -> None:
    jobs = JobStore("sqlite://")
    processor = ScriptedProcessor(jobs, [ContentError("Document contains no extractable text")])
    queue = IngestionQueue(jobs, processor, concurrency=1, policy=FAST_RETRY)
    create_job(jobs, "job-1")

    await run_jobs(queue, "job-1")

    job = jobs.get("job-1")
    assert job.status == FAILED
    assert job.error == "Document contains no extractable text"
    assert job.attempts == 1


async def test_small_files_run_before_large_ones() -> None:
    jobs = JobStore("sqlite://")
    processor = ScriptedProcessor(jobs)
    queue = IngestionQueue(jobs, processor, concurrency=1, policy=FAST_RETRY)
    create_job(jobs, "large", file_size=5 * 1024 * 1024)
    create_job(jobs, "small", file_size=1024)

    await run_jobs(queue, "large", "small")

    assert processor.processed == ["small", "large"]
    assert jobs.counts()[COMPLETED] == 2


async def test_each_job_is_processed_once_when_submitted_twice() -> None:
    jobs = JobStore("sqlite://")
    processor = ScriptedProcessor(jobs)
    queue = IngestionQueue(jobs, processor, concurrency=2, policy=FAST_RETRY)
    create_job(jobs, "job-1")

    await run_jobs(queue, "job-1", "job-1")

    assert processor.processed == ["job-1"]


def test_stalled_job_is_requeued_once_then_failed() -> None:
    clock = FakeClock()
    jobs = JobStore("sqlite://", clock=clock)
    queue = IngestionQueue(jobs, ScriptedProcessor(jobs), stall_timeout=60)
    create_job(jobs, "job-1")

    jobs.start_attempt("job-1")
    clock.advance(61)
    assert queue.check_stalls() == ["job-1"]
    job = jobs.get("job-1")
    assert job.status == QUEUED
    assert job.message == STALL_MESSAGE

    jobs.start_attempt("job-1")
    clock.advance(61)
    assert queue.check_stalls() == ["job-1"]
    job = jobs.get("job-1")
    assert job.status == FAILED
    assert job.error == "Job stalled: no progress within 60s"


def test_priority_for_size() -> None:
    assert priority_for_size(10) == 0
    assert priority_for_size(2 * 1024 * 1024) == 1


async def test_retry_async_reraises_the_last_error_unchanged() -> None:
    calls: list[int] = []
    delays: list[float] = []

    async def flaky() -> str:
        calls.append(1)
        raise EmbeddingError(f"attempt {len(calls)} failed")

    async def no_sleep(delay: float) -> None:
        delays.append(delay)

    with pytest.raises(EmbeddingError, match="attempt 3 failed"):
        await retry_async(flaky, RetryPolicy(attempts=3, base_delay=1.0), sleep=no_sleep)

    assert len(calls) == 3
    assert delays == [1.0, 2.0]


def test_backoff_is_capped() -> None:
    policy = RetryPolicy(attempts=10, base_delay=1.0, factor=2.0, max_delay=5.0)
    assert [policy.delay_for(n) for n in (1, 2, 3, 4)] == [1.0, 2.0, 4.0, 5.0]


async def test_retry_async_announces_each_retry_before_it_runs() -> None:
    announced: list[int] = []
    calls: list[int] = []

    async def flaky() -> str:
        calls.append(1)
        if len(calls) < 3:
            raise EmbeddingError("Embedding service unavailable")
        return "ok"

    async def no_sleep(delay: float) -> None:
        return None

    async def on_retry(attempt: int) -> None:
        announced.append(attempt)

    result = await retry_async(flaky, RetryPolicy(attempts=3), sleep=no_sleep, on_retry=on_retry)

    assert result == "ok"
    assert announced == [2, 3]
