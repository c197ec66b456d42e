from __future__ import annotations

"""Cache layer behaviour: validation, expiry, invalidation and outages."""

import pytest

from src.cache.backends import CacheBackendError, MemoryBackend
from src.cache.layer import CacheLayer
from src.tests.helpers import FakeClock


class BrokenBackend:
    name = "broken"

    def get(self, key: str) -> str | None:
        raise CacheBackendError("connection refused")

    def set(self, key: str, value: str, ttl: int) -> None:
        raise CacheBackendError("connection refused")

    def delete(self, *keys: str) -> int:
        raise CacheBackendError("connection refused")

    def keys(self, pattern: str) -> list[str]:
        raise CacheBackendError("connection refused")

    def ping(self) -> bool:
        raise CacheBackendError("connection refused")


def make_cache(clock: FakeClock | None = None) -> CacheLayer:
    backend = MemoryBackend(clock=clock) if clock is not None else MemoryBackend()
    return CacheLayer(backend=backend, prefix="test")


def test_embedding_round_trip_is_stable() -> None:
    cache = make_cache()
    assert cache.get_embedding("closures", 3) is None
    assert cache.put_embedding("closures", [0.1, 0.2, 0.3])

    first = cache.get_embedding("closures", 3)
    second = cache.get_embedding("closures", 3)

    assert first == [0.1, 0.2, 0.3]
    assert first == second


def test_invalid_entry_is_evicted_and_reported_as_miss() -> None:
    cache = make_cache()
    cache.put_embedding("closures", [0.1, 0.2])

    assert cache.get_embedding("closures", 3) is None
    assert cache.stats()["entries"]["embedding"] == 0


def test_query_result_without_content_is_a_miss() -> None:
    cache = make_cache()
    cache.put_query_result("what is a closure", {"chunks": [{"content": "   "}]})
    assert cache.get_query_result("what is a closure") is None

    payload = {"chunks": [{"content": "A closure captures variables from its scope."}]}
    cache.put_query_result("what is a closure", payload)
    assert cache.get_query_result("what is a closure") == payload


def test_entries_expire_after_their_ttl() -> None:
    clock = FakeClock()
    cache = make_cache(clock)
    cache.put("stats", "daily", {"queries": 3}, ttl=10)

    clock.advance(5)
    assert cache.get_stats("daily") == {"queries": 3}

    clock.advance(6)
    assert cache.get_stats("daily") is None


def test_invalidate_one_class_leaves_the_others() -> None:
    cache = make_cache()
    cache.put_embedding("closures", [1.0, 0.0])
    cache.put_query_result("q", {"chunks": [{"content": "A closure captures variables."}]})

    cleared = cache.invalidate("query")

    assert cleared == {"query": 1}
    assert cache.get_query_result("q") is None
    assert cache.get_embedding("closures", 2) == [1.0, 0.0]


def test_invalidate_everything_reports_each_class() -> None:
    cache = make_cache()
    cache.put_embedding("closures", [1.0, 0.0])
    cache.put_chunks("doc_1", [{"content": "chunk text"}])

    cleared = cache.invalidate()

    assert cleared["embedding"] == 1
    assert cleared["chunks"] == 1
    assert sum(cleared.values()) == 2


def test_unknown_cache_class_is_rejected() -> None:
    cache = make_cache()
    with pytest.raises(ValueError):
        cache.invalidate("sessions")


def test_disabled_cache_never_stores() -> None:
    cache = CacheLayer(backend=None, enabled=False)

    assert cache.put_embedding("closures", [1.0]) is False
    assert cache.get("embedding", "closures") == (None, False)
    stats = cache.stats()
    assert stats["enabled"] is False
    assert stats["backend"] == "none"
    assert cache.health_check()["ok"] is True


def test_backend_outage_degrades_to_misses() -> None:
    cache = CacheLayer(backend=BrokenBackend())

    assert cache.get("query", "q") == (None, False)
    assert cache.put("query", "q", {"chunks": []}) is False
    assert cache.invalidate("query") == {"query": 0}
    health = cache.health_check()
    assert health["ok"] is False
    assert "connection refused" in health["detail"]


def test_hit_ratio_tracks_lookups() -> None:
    cache = make_cache()
    assert cache.hit_ratio() is None

    cache.put_embedding("closures", [1.0])
    cache.get_embedding("closures", 1)
    cache.get_embedding("promises", 1)

    assert cache.hit_ratio() == 0.5
    assert cache.hit_ratio("embedding") == 0.5
    stats = cache.stats()
    assert stats["hits"] == 1
    assert stats["misses"] == 1
    assert stats["classes"]["embedding"] == {"hits": 1, "misses": 1}


def test_memory_backend_is_bounded_per_class() -> None:
    backend = MemoryBackend(maxsize=5)
    cache = CacheLayer(backend=backend, prefix="test")
    for index in range(50):
        cache.put_embedding(f"text {index}", [float(index)])
    cache.put_chunks("doc_1", [{"content": "chunk text"}])

    stats = cache.stats()

    assert stats["entries"]["embedding"] == 5
    assert stats["entries"]["chunks"] == 1
    assert backend.size() == 6
    assert cache.get_embedding("text 49", 1) == [49.0]


def test_expired_entries_are_dropped_without_being_read() -> None:
    clock = FakeClock()
    backend = MemoryBackend(clock=clock)
    cache = CacheLayer(backend=backend, prefix="test")
    cache.put("query", "q", {"chunks": [{"content": "A closure captures variables."}]}, ttl=10)
    cache.put_embedding("closures", [1.0])

    clock.advance(11)

    assert cache.stats()["entries"]["query"] == 0
    assert backend.size() == 1
