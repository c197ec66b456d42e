from __future__ import annotations

"""Job table semantics: run ownership, monotonic progress and terminal states."""

from src.ingestion.jobs import COMPLETED, FAILED, PROCESSING, QUEUED, STALL_MESSAGE, JobStore
from src.tests.helpers import FakeClock


def make_store(clock: FakeClock | None = None) -> JobStore:
    return JobStore("sqlite://", clock=clock or FakeClock())


def create_job(store: JobStore, job_id: str = "job-1") -> None:
    store.create(
        job_id,
        document_id=f"doc_{job_id}",
        filename="course.pdf",
        stored_path=f"/tmp/{job_id}-course.pdf",
        file_type="pdf",
        file_size=2048,
    )


def test_new_job_is_queued() -> None:
    store = make_store()
    create_job(store)

    job = store.get("job-1")

    assert job.status == QUEUED
    assert job.progress == 0
    assert job.attempts == 0
    assert job.finished is False
    assert store.get("missing") is None


def test_progress_never_decreases() -> None:
    store = make_store()
    create_job(store)
    run_id = store.start_attempt("job-1")

    assert store.update_progress("job-1", run_id, 40, "Chunking")
    assert not store.update_progress("job-1", run_id, 20, "Late update")

    job = store.get("job-1")
    assert job.status == PROCESSING
    assert job.progress == 40
    assert job.message == "Chunking"


def test_progress_is_clamped() -> None:
    store = make_store()
    create_job(store)
    run_id = store.start_attempt("job-1")

    store.update_progress("job-1", run_id, 250)

    assert store.get("job-1").progress == 100


def test_stale_run_cannot_write() -> None:
    store = make_store()
    create_job(store)
    stale = store.start_attempt("job-1")
    store.mark_retrying("job-1", attempt=1, delay=0.5, error="Vector index unavailable")
    current = store.start_attempt("job-1")

    assert not store.update_progress("job-1", stale, 90)
    assert not store.complete("job-1", stale, {"chunk_count": 1})
    assert store.complete("job-1", current, {"chunk_count": 7})

    job = store.get("job-1")
    assert job.status == COMPLETED
    assert job.progress == 100
    assert job.attempts == 2
    assert job.stats == {"chunk_count": 7}


def test_retrying_job_goes_back_to_the_queue() -> None:
    store = make_store()
    create_job(store)
    store.start_attempt("job-1")

    store.mark_retrying("job-1", attempt=1, delay=2.0, error="Embedding request timed out after 30s")

    job = store.get("job-1")
    assert job.status == QUEUED
    assert job.run_id is None
    assert job.message == "Attempt 1 failed: Embedding request timed out after 30s. Retrying in 2.0s"


def test_fail_keeps_the_error_verbatim() -> None:
    store = make_store()
    create_job(store)
    store.start_attempt("job-1")

    assert store.fail("job-1", "Embedding request timed out after 30s")
    assert not store.fail("job-1", "second failure")

    job = store.get("job-1")
    assert job.status == FAILED
    assert job.error == "Embedding request timed out after 30s"
    assert job.finished
    assert store.start_attempt("job-1") is None


def test_stalled_jobs_are_requeued_only_once() -> None:
    clock = FakeClock()
    store = make_store(clock)
    create_job(store)
    run_id = store.start_attempt("job-1")
    store.update_progress("job-1", run_id, 60)

    clock.advance(301)
    stalled = store.find_stalled(timeout=300)

    assert [job.id for job in stalled] == ["job-1"]
    assert store.requeue_stalled("job-1", max_requeues=1)
    job = store.get("job-1")
    assert job.status == QUEUED
    assert job.progress == 0
    assert job.attempts == 0
    assert job.message == STALL_MESSAGE

    store.start_attempt("job-1")
    clock.advance(301)
    assert not store.requeue_stalled("job-1", max_requeues=1)


def test_heartbeat_keeps_a_slow_job_alive() -> None:
    clock = FakeClock()
    store = make_store(clock)
    create_job(store)
    run_id = store.start_attempt("job-1")

    clock.advance(200)
    store.heartbeat("job-1", run_id)
    clock.advance(200)

    assert store.find_stalled(timeout=300) == []


def test_counts_and_eviction() -> None:
    clock = FakeClock()
    store = make_store(clock)
    for job_id in ("job-1", "job-2", "job-3"):
        create_job(store, job_id)
    run_id = store.start_attempt("job-1")
    store.complete("job-1", run_id, {})
    store.fail("job-2", "Document contains no extractable text")

    assert store.counts() == {QUEUED: 1, PROCESSING: 0, COMPLETED: 1, FAILED: 1}

    clock.advance(3600)
    removed = store.evict(retention_seconds=1800, max_entries=100)

    assert removed == 2
    assert [job.id for job in store.list_jobs()] == ["job-3"]
    assert store.ping()


def test_eviction_caps_finished_entries() -> None:
    clock = FakeClock()
    store = make_store(clock)
    for job_id in ("job-1", "job-2", "job-3"):
        create_job(store, job_id)
        store.fail(job_id, "boom")
        clock.advance(1)

    removed = store.evict(retention_seconds=10_000, max_entries=1)

    assert removed == 2
    assert [job.id for job in store.list_jobs({FAILED})] == ["job-3"]
