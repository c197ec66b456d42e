from __future__ import annotations

import json
import os

import httpx
import pytest

from src.app.dependencies import get_document_store, get_job_store, get_queue, reset_service_cache
from src.app.main import app, lifespan
from src.ingestion.jobs import COMPLETED

pytestmark = pytest.mark.anyio


def get_client() -> httpx.AsyncClient:
    reset_service_cache()
    transport = httpx.ASGITransport(app=app)
    return httpx.AsyncClient(transport=transport, base_url="http://test")


def sentence(index: int) -> str:
    return (
        f"Concept{index} describes how component{index} processes signal{index} "
        f"using method{index} and returns result{index} quickly."
    )


def course_text() -> str:
    pages = []
    for page in (1, 2, 3):
        base = page * 100
        paragraphs = [
            " ".join(sentence(base + idx * 5 + offset) for offset in range(5)) for idx in range(6)
        ]
        pages.append(f"Section {page}: Signal processing basics.\n\n" + "\n\n".join(paragraphs))
    return "\f".join(pages)


async def upload(client: httpx.AsyncClient, name: str = "course.txt", body: bytes | None = None, headers=None):
    return await client.post(
        "/upload",
        files={"file": (name, body if body is not None else course_text().encode("utf-8"), "text/plain")},
        data={"course_id": "signals-101"},
        headers=headers,
    )


async def test_health_endpoint() -> None:
    async with get_client() as client:
        response = await client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


async def test_upload_is_processed_in_the_background() -> None:
    async with get_client() as client:
        response = await upload(client)
        assert response.status_code == 200
        payload = response.json()
        assert payload["status"] == "queued"
        assert payload["file_type"] == "txt"
        assert payload["estimated_processing_time"] == "30s"

        await get_queue().join()

        status = await client.get(f"/status/{payload['job_id']}")
        assert status.status_code == 200
        job = status.json()
        assert job["status"] == "completed"
        assert job["progress"] == 100
        assert job["error"] is None
        assert job["metrics"]["chunk_count"] >= 6
        assert job["metrics"]["pages"] == 3
        assert job["metrics"]["elapsed_seconds"] >= 0

        documents = await client.get("/documents", params={"course_id": "signals-101"})
        assert documents.status_code == 200
        listed = documents.json()
        assert listed["total"] == 1
        assert listed["documents"][0]["id"] == payload["document_id"]
        assert listed["documents"][0]["processed"] is True


async def test_unknown_job_is_not_found() -> None:
    async with get_client() as client:
        response = await client.get("/status/job_missing")
    assert response.status_code == 404
    assert response.json()["detail"]["error"] == "Job not found"


async def test_unsupported_upload_is_rejected() -> None:
    async with get_client() as client:
        response = await upload(client, name="budget.xlsx", body=b"not a spreadsheet")
    assert response.status_code == 400
    payload = response.json()
    assert payload["error"] == "validation_error"
    assert "Supported types" in payload["detail"]
    assert payload["suggestions"]


async def test_query_answers_with_page_references() -> None:
    async with get_client() as client:
        await upload(client)
        await get_queue().join()

        response = await client.post("/query", json={"query": "Explain Section 2"})
        assert response.status_code == 200
        payload = response.json()
        assert payload["outcome"] == "answered"
        assert payload["references"]
        assert payload["references"][0]["page"] == 2
        assert "[Reference 1 - Page 2]" in payload["answer"]
        assert payload["response_depth"] == "standard"

        repeat = await client.post("/query", json={"query": "Explain Section 2"})
        assert repeat.json()["performance"]["cache_hit"] is True
        assert [ref["chunk_id"] for ref in repeat.json()["references"]] == [
            ref["chunk_id"] for ref in payload["references"]
        ]


async def test_greeting_needs_no_documents() -> None:
    async with get_client() as client:
        response = await client.post("/query", json={"query": "Hello!"})
    assert response.status_code == 200
    payload = response.json()
    assert payload["outcome"] == "greeting"
    assert payload["references"] == []


async def test_query_without_documents_has_no_results() -> None:
    async with get_client() as client:
        response = await client.post("/query", json={"query": "Explain the causes of inflation"})
    assert response.status_code == 200
    payload = response.json()
    assert payload["outcome"] == "no_results"
    assert payload["references"] == []
    assert payload["suggestions"]


async def test_empty_query_is_rejected() -> None:
    async with get_client() as client:
        response = await client.post("/query", json={"query": ""})
    assert response.status_code == 422


async def test_delete_document() -> None:
    async with get_client() as client:
        uploaded = (await upload(client)).json()
        await get_queue().join()

        response = await client.delete(f"/documents/{uploaded['document_id']}")
        assert response.status_code == 200
        payload = response.json()
        assert payload["deleted"] is True
        assert payload["chunks_removed"] >= 6
        # The stored upload is removed once processing completes.
        assert payload["file_removed"] is False

        again = await client.delete(f"/documents/{uploaded['document_id']}")
        assert again.status_code == 404

        query = await client.post("/query", json={"query": "Explain Section 2"})
        assert query.json()["outcome"] == "no_results"


async def test_admin_cache_endpoints() -> None:
    async with get_client() as client:
        stats = await client.get("/admin/cache/stats")
        assert stats.status_code == 200
        assert stats.json()["backend"] == "memory"

        cleared = await client.post("/admin/cache/clear/query")
        assert cleared.status_code == 200
        assert set(cleared.json()["cleared"]) == {"query"}

        everything = await client.post("/admin/cache/clear")
        assert everything.status_code == 200
        assert "embedding" in everything.json()["cleared"]

        unknown = await client.post("/admin/cache/clear/bogus")
        assert unknown.status_code == 400
        assert unknown.json()["error"] == "validation_error"


async def test_admin_queue_performance_and_health() -> None:
    async with get_client() as client:
        queue = await client.get("/admin/queue")
        assert queue.status_code == 200
        assert queue.json()["jobs"] == {"queued": 0, "processing": 0, "completed": 0, "failed": 0}

        performance = await client.get("/admin/performance")
        assert performance.status_code == 200
        assert 0 <= performance.json()["health_score"] <= 100

        health = await client.get("/admin/health")
        assert health.status_code == 200
        payload = health.json()
        assert payload["status"] == "healthy"
        assert set(payload["services"]) >= {"cache", "vector_index", "job_store", "embedding", "llm", "queue"}


async def test_api_key_required_when_configured() -> None:
    original = os.environ.get("RAG_API_KEYS")
    os.environ["RAG_API_KEYS"] = "secret"
    try:
        async with get_client() as client:
            missing = await client.post("/query", json={"query": "Hello!"})
            assert missing.status_code == 401

            allowed = await client.get("/admin/queue", headers={"x-api-key": "secret"})
            assert allowed.status_code == 200

            bearer = await client.post(
                "/query", json={"query": "Hello!"}, headers={"Authorization": "Bearer secret"}
            )
            assert bearer.status_code == 200
    finally:
        if original is None:
            os.environ.pop("RAG_API_KEYS", None)
        else:
            os.environ["RAG_API_KEYS"] = original


async def test_readers_cannot_upload_or_administer() -> None:
    original = os.environ.get("RAG_API_KEY_MAP")
    os.environ["RAG_API_KEY_MAP"] = json.dumps({"reader-key": "reader", "writer-key": "writer"})
    try:
        async with get_client() as client:
            reader = {"x-api-key": "reader-key"}
            denied = await upload(client, headers=reader)
            assert denied.status_code == 403

            admin = await client.get("/admin/cache/stats", headers={"x-api-key": "writer-key"})
            assert admin.status_code == 403

            query = await client.post("/query", json={"query": "Hello!"}, headers=reader)
            assert query.status_code == 200
    finally:
        if original is None:
            os.environ.pop("RAG_API_KEY_MAP", None)
        else:
            os.environ["RAG_API_KEY_MAP"] = original


async def test_startup_resumes_jobs_left_by_a_previous_run(tmp_path) -> None:
    reset_service_cache()
    data = course_text().encode("utf-8")
    stored = tmp_path / "1700000000000-3-left.txt"
    stored.write_bytes(data)
    get_document_store().create(
        document_id="doc_left", name="left.txt", file_size=len(data), file_type="txt", stored_path=str(stored)
    )
    get_job_store().create(
        "job_left",
        document_id="doc_left",
        filename="left.txt",
        stored_path=str(stored),
        file_type=".txt",
        file_size=len(data),
    )

    async with lifespan(app):
        assert get_queue().started
        await get_queue().join()
        job = get_job_store().get("job_left")

    assert job.status == COMPLETED
    assert get_document_store().get("doc_left").processed is True


async def test_document_stats_are_served_from_cache_or_job_history() -> None:
    async with get_client() as client:
        uploaded = (await upload(client)).json()
        await get_queue().join()
        document_id = uploaded["document_id"]

        cached = await client.get(f"/documents/{document_id}/stats")
        assert cached.status_code == 200
        assert cached.json()["cache_hit"] is True
        assert cached.json()["stats"]["chunk_count"] >= 6

        await client.post("/admin/cache/clear/stats")
        rebuilt = await client.get(f"/documents/{document_id}/stats")
        assert rebuilt.json()["cache_hit"] is False
        assert rebuilt.json()["stats"] == cached.json()["stats"]

        again = await client.get(f"/documents/{document_id}/stats")
        assert again.json()["cache_hit"] is True

        await client.delete(f"/documents/{document_id}")
        missing = await client.get(f"/documents/{document_id}/stats")
        assert missing.status_code == 404
