from __future__ import annotations

"""Key-value backends for the cache layer."""

import fnmatch
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Protocol

from cachetools import TTLCache

from src.errors import TransientInfraError


class CacheBackendError(TransientInfraError):
    """Raised when the cache backend cannot be reached."""
    pass


class CacheBackend(Protocol):
    """Protocol for string key-value stores with per-key expiry."""
    name: str

    def get(self, key: str) -> str | None:
        raise NotImplementedError

    def set(self, key: str, value: str, ttl: int) -> None:
        raise NotImplementedError

    def delete(self, *keys: str) -> int:
        raise NotImplementedError

    def keys(self, pattern: str) -> list[str]:
        raise NotImplementedError

    def ping(self) -> bool:
        raise NotImplementedError


@dataclass
class MemoryBackend:
    """In-process backend holding one bounded ``TTLCache`` per cache class.

    The class is the second-to-last segment of ``prefix:class:hash`` keys. A
    write with a TTL other than the class default gets its own cache.
    """
    maxsize: int = 10_000
    clock: Callable[[], float] = time.monotonic
    name: str = "memory"
    _caches: dict[tuple[str, int], TTLCache] = field(default_factory=dict, init=False, repr=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)

    def get(self, key: str) -> str | None:
        bucket = _bucket(key)
        with self._lock:
            for (name, _), cache in self._caches.items():
                if name != bucket:
                    continue
                value = cache.get(key)
                if value is not None:
                    return value
        return None

    def set(self, key: str, value: str, ttl: int) -> None:
        bucket = _bucket(key)
        ttl = max(1, ttl)
        with self._lock:
            for (name, cache_ttl), cache in self._caches.items():
                if name == bucket and cache_ttl != ttl:
                    cache.pop(key, None)
            cache = self._caches.get((bucket, ttl))
            if cache is None:
                cache = TTLCache(maxsize=self.maxsize, ttl=ttl, timer=self.clock)
                self._caches[(bucket, ttl)] = cache
            cache[key] = value

    def delete(self, *keys: str) -> int:
        removed = 0
        with self._lock:
            for key in keys:
                for cache in self._caches.values():
                    if cache.pop(key, None) is not None:
                        removed += 1
        return removed

    def keys(self, pattern: str) -> list[str]:
        with self._lock:
            found: list[str] = []
            for cache in self._caches.values():
                cache.expire()
                found.extend(key for key in cache.keys() if fnmatch.fnmatchcase(key, pattern))
            return found

    def size(self) -> int:
        with self._lock:
            return sum(cache.currsize for cache in self._caches.values())

    def ping(self) -> bool:
        return True


def _bucket(key: str) -> str:
    parts = key.rsplit(":", 2)
    return parts[-2] if len(parts) == 3 else ""


@dataclass
class RedisBackend:
    """Redis backend using SETEX so expiry is enforced server-side."""
    url: str
    socket_timeout: float = 2.0
    name: str = "redis"
    client: Any = field(default=None, repr=False)

    def __post_init__(self) -> None:
        if self.client is not None:
            return
        import redis

        self.client = redis.Redis.from_url(
            self.url,
            decode_responses=True,
            socket_timeout=self.socket_timeout,
            socket_connect_timeout=self.socket_timeout,
        )

    def get(self, key: str) -> str | None:
        try:
            return self.client.get(key)
        except Exception as exc:
            raise CacheBackendError(f"Redis get failed: {exc}") from exc

    def set(self, key: str, value: str, ttl: int) -> None:
        try:
            self.client.setex(key, max(1, ttl), value)
        except Exception as exc:
            raise CacheBackendError(f"Redis set failed: {exc}") from exc

    def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        try:
            return int(self.client.delete(*keys))
        except Exception as exc:
            raise CacheBackendError(f"Redis delete failed: {exc}") from exc

    def keys(self, pattern: str) -> list[str]:
        try:
            return list(self.client.scan_iter(match=pattern, count=500))
        except Exception as exc:
            raise CacheBackendError(f"Redis scan failed: {exc}") from exc

    def ping(self) -> bool:
        try:
            return bool(self.client.ping())
        except Exception as exc:
            raise CacheBackendError(f"Redis ping failed: {exc}") from exc
