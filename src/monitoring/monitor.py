from __future__ import annotations

"""In-process performance tracking and the derived 0-100 health score."""

import os
import resource
import sys
import time
from collections import Counter, deque
from dataclasses import dataclass, field
from typing import Any

MAX_ERRORS = 50
MAX_SAMPLES = 1000


@dataclass(frozen=True)
class QuerySample:
    duration: float
    intent: str
    cache_hit: bool
    outcome: str
    recorded_at: float


@dataclass(frozen=True)
class ErrorEntry:
    kind: str
    message: str
    recorded_at: float
    context: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "message": self.message,
            "timestamp": self.recorded_at,
            "context": dict(self.context),
        }


def peak_memory_gb() -> float:
    """Peak resident set size of this process in gigabytes."""
    usage = resource.getrusage(resource.RUSAGE_SELF).ru_maxrss
    # macOS reports bytes, Linux kilobytes.
    divisor = 1024 ** 3 if sys.platform == "darwin" else 1024 ** 2
    return usage / divisor


def resident_memory_gb() -> float:
    """Current resident set size in gigabytes; the peak where /proc is unavailable."""
    try:
        with open("/proc/self/statm", encoding="ascii") as handle:
            resident_pages = int(handle.read().split()[1])
    except (OSError, ValueError, IndexError):
        return peak_memory_gb()
    return resident_pages * os.sysconf("SC_PAGE_SIZE") / 1024 ** 3


class PerformanceMonitor:
    """Rolling query and processing samples plus the last errors."""

    def __init__(self, max_samples: int = MAX_SAMPLES, max_errors: int = MAX_ERRORS) -> None:
        self._queries: deque[QuerySample] = deque(maxlen=max_samples)
        self._processing: deque[float] = deque(maxlen=max_samples)
        self._errors: deque[ErrorEntry] = deque(maxlen=max_errors)
        self._processed_ok = 0
        self._processed_failed = 0
        self._error_total = 0
        self._started = time.time()

    def record_query(self, duration: float, intent: str, cache_hit: bool, outcome: str = "answered") -> None:
        self._queries.append(QuerySample(duration, intent, cache_hit, outcome, time.time()))

    def record_processing(self, duration: float | None, success: bool) -> None:
        if success:
            self._processed_ok += 1
            if duration is not None:
                self._processing.append(duration)
        else:
            self._processed_failed += 1

    def record_error(self, kind: str, message: str, **context: Any) -> None:
        self._error_total += 1
        self._errors.append(ErrorEntry(kind, message, time.time(), context))

    def reset(self) -> None:
        self._queries.clear()
        self._processing.clear()
        self._errors.clear()
        self._processed_ok = 0
        self._processed_failed = 0
        self._error_total = 0
        self._started = time.time()

    @property
    def operations(self) -> int:
        return len(self._queries) + self._processed_ok + self._processed_failed

    def error_rate(self) -> float:
        total = self.operations
        return self._error_total / total if total else 0.0

    def success_rate(self) -> float:
        total = self.operations
        if not total:
            return 1.0
        failed_queries = sum(1 for sample in self._queries if sample.outcome in {"timeout", "llm_error"})
        return (total - failed_queries - self._processed_failed) / total

    def average_query_time(self) -> float:
        if not self._queries:
            return 0.0
        return sum(sample.duration for sample in self._queries) / len(self._queries)

    def average_processing_time(self) -> float | None:
        if not self._processing:
            return None
        return sum(self._processing) / len(self._processing)

    def intent_distribution(self) -> dict[str, int]:
        return dict(Counter(sample.intent for sample in self._queries))

    def recent_errors(self, limit: int = 10) -> list[dict[str, Any]]:
        return [entry.to_dict() for entry in list(self._errors)[-limit:]]

    def health_score(self, cache_hit_ratio: float | None, memory_gb: float | None = None) -> int:
        """Start from 100 and apply penalties and bonuses, clamped to 0-100."""
        score = 100
        error_rate = self.error_rate()
        if error_rate > 0.05:
            score -= 20
        elif error_rate > 0.01:
            score -= 10

        avg_query = self.average_query_time()
        if avg_query > 5:
            score -= 15
        elif avg_query > 3:
            score -= 10
        elif avg_query > 2:
            score -= 5

        if cache_hit_ratio is not None:
            if cache_hit_ratio > 0.8:
                score += 5
            elif cache_hit_ratio < 0.3:
                score -= 10

        memory = resident_memory_gb() if memory_gb is None else memory_gb
        if memory > 0.8:
            score -= 15
        elif memory > 0.6:
            score -= 10

        avg_processing = self.average_processing_time()
        if avg_processing is not None and avg_processing < 30:
            score += 5
        return max(0, min(100, score))

    def recommendations(self, cache_hit_ratio: float | None, memory_gb: float | None = None) -> list[str]:
        tips: list[str] = []
        if self.error_rate() > 0.01:
            tips.append("Error rate is elevated: review recent errors and the status of external services")
        avg_query = self.average_query_time()
        if avg_query > 3:
            tips.append("Average query time is high: consider a faster language model or a smaller context budget")
        elif avg_query > 2:
            tips.append("Query latency is creeping up: check vector index and language model response times")
        if cache_hit_ratio is not None and cache_hit_ratio < 0.3:
            tips.append("Cache hit ratio is low: consider longer cache TTLs or a shared Redis cache")
        memory = resident_memory_gb() if memory_gb is None else memory_gb
        if memory > 0.6:
            tips.append("Memory usage is high: consider lowering worker concurrency or batch sizes")
        avg_processing = self.average_processing_time()
        if avg_processing is not None and avg_processing > 60:
            tips.append("Document processing is slow: consider smaller uploads or more workers")
        if not tips:
            tips.append("System is performing well")
        return tips

    def report(self, cache_hit_ratio: float | None, memory_gb: float | None = None) -> dict[str, Any]:
        memory = resident_memory_gb() if memory_gb is None else memory_gb
        avg_processing = self.average_processing_time()
        cache_hits = sum(1 for sample in self._queries if sample.cache_hit)
        return {
            "uptime_seconds": round(time.time() - self._started, 3),
            "queries": len(self._queries),
            "documents_processed": self._processed_ok,
            "documents_failed": self._processed_failed,
            "success_rate": round(self.success_rate(), 4),
            "error_rate": round(self.error_rate(), 4),
            "average_query_time": round(self.average_query_time(), 4),
            "average_processing_time": round(avg_processing, 4) if avg_processing is not None else None,
            "cache_hit_ratio": round(cache_hit_ratio, 4) if cache_hit_ratio is not None else None,
            "query_cache_hits": cache_hits,
            "memory_gb": round(memory, 4),
            "query_intents": self.intent_distribution(),
            "recent_errors": self.recent_errors(),
            "recommendations": self.recommendations(cache_hit_ratio, memory),
            "health_score": self.health_score(cache_hit_ratio, memory),
        }
