from __future__ import annotations

"""Content-addressed cache with per-class TTLs.

The cache is an optimisation only: every read path treats backend failures and
invalid payloads as misses so callers always regenerate.
"""

import hashlib
import json
import logging
import math
import threading
from dataclasses import dataclass, field
from typing import Any, Callable

from src.app.metrics import record_cache_lookup
from src.cache.backends import CacheBackend, CacheBackendError

logger = logging.getLogger(__name__)

CACHE_CLASSES = ("embedding", "query", "chunks", "stats")

DEFAULT_TTLS = {
    "embedding": 7 * 24 * 3600,
    "query": 2 * 3600,
    "chunks": 3 * 24 * 3600,
    "stats": 30 * 60,
}

Validator = Callable[[Any], bool]


def content_key(text: str) -> str:
    """Hash canonical input text into a stable key fragment."""
    return hashlib.md5(text.encode("utf-8")).hexdigest()


def embedding_validator(dimension: int) -> Validator:
    def _check(payload: Any) -> bool:
        if not isinstance(payload, list) or len(payload) != dimension:
            return False
        return all(
            isinstance(value, (int, float)) and math.isfinite(value) for value in payload
        )

    return _check


def query_result_validator(payload: Any) -> bool:
    """Accept cached retrieval results only when some chunk still has content."""
    if not isinstance(payload, dict):
        return False
    chunks = payload.get("chunks")
    if not isinstance(chunks, list) or not chunks:
        return False
    return any(
        isinstance(chunk, dict) and len(str(chunk.get("content", "")).strip()) > 10
        for chunk in chunks
    )


def chunk_set_validator(payload: Any) -> bool:
    if not isinstance(payload, list) or not payload:
        return False
    return all(isinstance(item, dict) and str(item.get("content", "")).strip() for item in payload)


@dataclass
class CacheLayer:
    """Get/put/invalidate over a pluggable backend, keyed by content hash."""
    backend: CacheBackend | None
    prefix: str = "learninghub"
    ttls: dict[str, int] = field(default_factory=lambda: dict(DEFAULT_TTLS))
    enabled: bool = True
    _hits: dict[str, int] = field(default_factory=dict, init=False, repr=False)
    _misses: dict[str, int] = field(default_factory=dict, init=False, repr=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)

    @property
    def active(self) -> bool:
        return self.enabled and self.backend is not None

    def key(self, cache_class: str, identifier: str) -> str:
        _check_class(cache_class)
        return f"{self.prefix}:{cache_class}:{content_key(identifier)}"

    def get(
        self,
        cache_class: str,
        identifier: str,
        validator: Validator | None = None,
    ) -> tuple[Any, bool]:
        """Return ``(payload, found)``; invalid payloads are evicted and reported as misses."""
        key = self.key(cache_class, identifier)
        if not self.active:
            return None, False
        try:
            raw = self.backend.get(key)
        except CacheBackendError as exc:
            logger.warning("cache_get_failed", extra={"cache_class": cache_class, "detail": str(exc)})
            self._record(cache_class, hit=False)
            return None, False
        if raw is None:
            self._record(cache_class, hit=False)
            return None, False
        try:
            payload = json.loads(raw)
        except json.JSONDecodeError:
            payload = None
            valid = False
        else:
            valid = validator(payload) if validator is not None else True
        if not valid:
            logger.info("cache_entry_invalid", extra={"cache_class": cache_class})
            self._safe_delete(key)
            self._record(cache_class, hit=False)
            return None, False
        self._record(cache_class, hit=True)
        return payload, True

    def put(self, cache_class: str, identifier: str, payload: Any, ttl: int | None = None) -> bool:
        key = self.key(cache_class, identifier)
        if not self.active:
            return False
        ttl_seconds = ttl if ttl is not None else self.ttls.get(cache_class, DEFAULT_TTLS[cache_class])
        try:
            encoded = json.dumps(payload, ensure_ascii=True, sort_keys=True, default=str)
            self.backend.set(key, encoded, ttl_seconds)
        except (CacheBackendError, TypeError, ValueError) as exc:
            logger.warning("cache_put_failed", extra={"cache_class": cache_class, "detail": str(exc)})
            return False
        return True

    def delete(self, cache_class: str, identifier: str) -> bool:
        if not self.active:
            return False
        return self._safe_delete(self.key(cache_class, identifier)) > 0

    def invalidate(self, cache_class: str | None = None) -> dict[str, int]:
        """Drop every entry of one class, or of all classes when ``cache_class`` is None."""
        classes = CACHE_CLASSES if cache_class is None else (cache_class,)
        for name in classes:
            _check_class(name)
        cleared: dict[str, int] = {}
        for name in classes:
            cleared[name] = 0
            if not self.active:
                continue
            try:
                keys = self.backend.keys(f"{self.prefix}:{name}:*")
                cleared[name] = self.backend.delete(*keys) if keys else 0
            except CacheBackendError as exc:
                logger.warning("cache_invalidate_failed", extra={"cache_class": name, "detail": str(exc)})
        logger.info("cache_invalidated", extra={"cleared": cleared})
        return cleared

    def stats(self) -> dict[str, Any]:
        entries: dict[str, int] = {}
        for name in CACHE_CLASSES:
            entries[name] = 0
            if not self.active:
                continue
            try:
                entries[name] = len(self.backend.keys(f"{self.prefix}:{name}:*"))
            except CacheBackendError:
                entries[name] = -1
        with self._lock:
            hits = sum(self._hits.values())
            misses = sum(self._misses.values())
            per_class = {
                name: {"hits": self._hits.get(name, 0), "misses": self._misses.get(name, 0)}
                for name in CACHE_CLASSES
            }
        total = hits + misses
        return {
            "backend": self.backend.name if self.backend is not None else "none",
            "enabled": self.active,
            "entries": entries,
            "classes": per_class,
            "hits": hits,
            "misses": misses,
            "hit_ratio": round(hits / total, 4) if total else 0.0,
            "ttls": dict(self.ttls),
        }

    def health_check(self) -> dict[str, Any]:
        """Round-trip a probe key through the backend."""
        if not self.active:
            return {"ok": True, "status": "disabled"}
        probe = f"{self.prefix}:health:probe"
        try:
            self.backend.set(probe, "ok", 10)
            value = self.backend.get(probe)
            self.backend.delete(probe)
        except CacheBackendError as exc:
            return {"ok": False, "status": "error", "detail": str(exc)}
        ok = value == "ok"
        return {"ok": ok, "status": "healthy" if ok else "error"}

    def hit_ratio(self, cache_class: str | None = None) -> float | None:
        with self._lock:
            if cache_class is None:
                hits = sum(self._hits.values())
                misses = sum(self._misses.values())
            else:
                hits = self._hits.get(cache_class, 0)
                misses = self._misses.get(cache_class, 0)
        total = hits + misses
        return hits / total if total else None

    def get_embedding(self, text: str, dimension: int) -> list[float] | None:
        payload, found = self.get("embedding", text, embedding_validator(dimension))
        return [float(value) for value in payload] if found else None

    def put_embedding(self, text: str, vector: list[float]) -> bool:
        return self.put("embedding", text, vector)

    def get_query_result(self, identifier: str) -> dict[str, Any] | None:
        payload, found = self.get("query", identifier, query_result_validator)
        return payload if found else None

    def put_query_result(self, identifier: str, payload: dict[str, Any]) -> bool:
        return self.put("query", identifier, payload)

    def get_chunks(self, document_id: str) -> list[dict[str, Any]] | None:
        payload, found = self.get("chunks", document_id, chunk_set_validator)
        return payload if found else None

    def put_chunks(self, document_id: str, chunks: list[dict[str, Any]]) -> bool:
        return self.put("chunks", document_id, chunks)

    def get_stats(self, identifier: str) -> dict[str, Any] | None:
        payload, found = self.get("stats", identifier, lambda value: isinstance(value, dict))
        return payload if found else None

    def put_stats(self, identifier: str, payload: dict[str, Any]) -> bool:
        return self.put("stats", identifier, payload)

    def _safe_delete(self, key: str) -> int:
        try:
            return self.backend.delete(key)
        except CacheBackendError as exc:
            logger.warning("cache_delete_failed", extra={"detail": str(exc)})
            return 0

    def _record(self, cache_class: str, hit: bool) -> None:
        with self._lock:
            bucket = self._hits if hit else self._misses
            bucket[cache_class] = bucket.get(cache_class, 0) + 1
        record_cache_lookup(cache_class, hit)


def _check_class(cache_class: str) -> None:
    if cache_class not in CACHE_CLASSES:
        raise ValueError(f"Unknown cache class: {cache_class}")
