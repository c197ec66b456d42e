from __future__ import annotations

from pathlib import Path

import pytest

from src.monitoring.monitor import MAX_ERRORS, PerformanceMonitor, peak_memory_gb, resident_memory_gb


def test_fresh_monitor_is_fully_healthy() -> None:
    monitor = PerformanceMonitor()

    assert monitor.health_score(None, memory_gb=0.1) == 100
    assert monitor.error_rate() == 0.0
    assert monitor.success_rate() == 1.0
    assert monitor.recommendations(None, memory_gb=0.1) == ["System is performing well"]


def test_penalties_accumulate() -> None:
    monitor = PerformanceMonitor()
    for _ in range(10):
        monitor.record_query(6.0, "definition", cache_hit=False)
    monitor.record_error("llm_error", "quota exceeded")

    # error rate 10% (-20), slow queries (-15), cold cache (-10), high memory (-15)
    assert monitor.health_score(0.1, memory_gb=0.9) == 40


def test_bonuses_are_clamped_to_one_hundred() -> None:
    monitor = PerformanceMonitor()
    monitor.record_processing(4.0, success=True)
    monitor.record_query(0.2, "summary", cache_hit=True)

    assert monitor.health_score(0.95, memory_gb=0.1) == 100


def test_error_log_keeps_only_the_latest_entries() -> None:
    monitor = PerformanceMonitor()
    for index in range(MAX_ERRORS + 10):
        monitor.record_error("ingestion", f"failure {index}", job_id=f"job-{index}")

    recent = monitor.recent_errors(limit=MAX_ERRORS + 10)

    assert len(recent) == MAX_ERRORS
    assert recent[0]["message"] == "failure 10"
    assert recent[-1]["context"] == {"job_id": f"job-{MAX_ERRORS + 9}"}
    assert len(monitor.recent_errors()) == 10


def test_failed_queries_and_jobs_lower_the_success_rate() -> None:
    monitor = PerformanceMonitor()
    monitor.record_query(1.0, "definition", cache_hit=False, outcome="answered")
    monitor.record_query(1.0, "definition", cache_hit=False, outcome="timeout")
    monitor.record_processing(None, success=False)
    monitor.record_processing(10.0, success=True)

    assert monitor.success_rate() == 0.5
    report = monitor.report(0.5, memory_gb=0.2)
    assert report["documents_processed"] == 1
    assert report["documents_failed"] == 1
    assert report["average_processing_time"] == 10.0
    assert report["query_intents"] == {"definition": 2}


def test_recommendations_name_the_problem() -> None:
    monitor = PerformanceMonitor()
    monitor.record_query(4.0, "summary", cache_hit=False)
    monitor.record_processing(90.0, success=True)

    tips = monitor.recommendations(0.1, memory_gb=0.7)

    assert any("Average query time is high" in tip for tip in tips)
    assert any("Cache hit ratio is low" in tip for tip in tips)
    assert any("Memory usage is high" in tip for tip in tips)
    assert any("Document processing is slow" in tip for tip in tips)


def test_reset_clears_samples() -> None:
    monitor = PerformanceMonitor()
    monitor.record_query(1.0, "summary", cache_hit=True)
    monitor.record_error("llm_error", "boom")

    monitor.reset()

    assert monitor.operations == 0
    assert monitor.recent_errors() == []


@pytest.mark.skipif(not Path("/proc/self/statm").exists(), reason="needs /proc")
def test_memory_reading_is_current_not_peak() -> None:
    current = resident_memory_gb()

    assert current > 0
    assert current <= peak_memory_gb() * 1.05
