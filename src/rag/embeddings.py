from __future__ import annotations

"""Embedding providers, configuration checks and the cache-aware wrapper."""

import hashlib
import logging
import math
import re
from dataclasses import dataclass, field
from typing import Any, Protocol

from src.cache.layer import CacheLayer
from src.errors import TransientInfraError

logger = logging.getLogger(__name__)

_TOKEN_RE = re.compile(r"[a-z0-9]+")

_OPENAI_DIMENSIONS = {
    "text-embedding-3-small": 1536,
    "text-embedding-3-large": 3072,
    "text-embedding-ada-002": 1536,
}


class EmbeddingError(TransientInfraError):
    """Raised when the embedding service fails or returns an invalid vector."""
    pass


class EmbeddingConfigError(RuntimeError):
    """Raised when embedding configuration is invalid."""
    pass


class EmbeddingProvider(Protocol):
    """Protocol for embedding providers."""
    dimension: int

    def embed(self, text: str) -> list[float]:
        """Return an embedding vector for the provided text."""
        raise NotImplementedError

    def embed_batch(self, texts: list[str]) -> list[list[float]]:
        raise NotImplementedError


def validate_vector(vector: list[float], dimension: int) -> list[float]:
    """Validate and normalize embedding vectors."""
    if len(vector) != dimension:
        raise EmbeddingError(
            f"Embedding dimension mismatch: expected {dimension}, got {len(vector)}"
        )
    cleaned: list[float] = []
    for value in vector:
        if not isinstance(value, (int, float)) or not math.isfinite(value):
            raise EmbeddingError("Embedding contains a non-numeric or non-finite value")
        cleaned.append(float(value))
    return cleaned


@dataclass
class HashEmbedder:
    """Deterministic token-hashing embedder for offline use and tests."""
    dimension: int = 256

    def embed(self, text: str) -> list[float]:
        tokens = _TOKEN_RE.findall(text.lower())
        vector = [0.0] * self.dimension
        for token in tokens:
            digest = hashlib.sha256(token.encode("utf-8")).digest()
            vector[int.from_bytes(digest[:4], "big") % self.dimension] += 1.0
        norm = math.sqrt(sum(value * value for value in vector))
        if norm:
            vector = [value / norm for value in vector]
        return validate_vector(vector, self.dimension)

    def embed_batch(self, texts: list[str]) -> list[list[float]]:
        return [self.embed(text) for text in texts]


@dataclass
class OpenAIEmbedder:
    """Embedding provider using the OpenAI embeddings API."""
    api_key: str
    model: str
    dimension: int
    client: Any = field(init=False, repr=False)

    def __post_init__(self) -> None:
        if not self.api_key:
            raise EmbeddingConfigError("OPENAI_API_KEY is required for OpenAIEmbedder")
        if not self.model:
            raise EmbeddingConfigError("OPENAI_EMBEDDING_MODEL is required for OpenAIEmbedder")
        expected = _OPENAI_DIMENSIONS.get(self.model)
        if self.dimension <= 0 and expected is None:
            raise EmbeddingConfigError(
                "EMBEDDING_DIMENSION must be set for OpenAI embeddings when model is unknown"
            )
        if expected is not None and self.dimension not in (0, expected):
            raise EmbeddingConfigError(f"EMBEDDING_DIMENSION should be {expected} for model {self.model}")
        self.dimension = self.dimension or expected or 0
        from openai import OpenAI

        self.client = OpenAI(api_key=self.api_key)

    def embed(self, text: str) -> list[float]:
        return self.embed_batch([text])[0]

    def embed_batch(self, texts: list[str]) -> list[list[float]]:
        try:
            response = self.client.embeddings.create(model=self.model, input=texts)
        except Exception as exc:
            raise EmbeddingError(f"OpenAI embedding request failed: {exc}") from exc
        ordered = sorted(response.data, key=lambda item: item.index)
        return [validate_vector(list(item.embedding), self.dimension) for item in ordered]


@dataclass
class GeminiEmbedder:
    """Embedding provider using Gemini embeddings API."""
    api_key: str
    model: str
    dimension: int
    client: Any = field(init=False, repr=False)

    def __post_init__(self) -> None:
        if not self.api_key:
            raise EmbeddingConfigError("GEMINI_API_KEY is required for GeminiEmbedder")
        if not self.model:
            raise EmbeddingConfigError("GEMINI_EMBEDDING_MODEL is required for GeminiEmbedder")
        if self.dimension <= 0:
            raise EmbeddingConfigError("EMBEDDING_DIMENSION must be set for Gemini embeddings")
        import google.generativeai as genai

        genai.configure(api_key=self.api_key)
        self.client = genai

    def embed(self, text: str) -> list[float]:
        try:
            result = self.client.embed_content(model=self.model, content=text)
        except Exception as exc:
            raise EmbeddingError(f"Gemini embedding request failed: {exc}") from exc
        embedding = result.get("embedding") if isinstance(result, dict) else getattr(result, "embedding", None)
        if embedding is None:
            raise EmbeddingError("Gemini embedding response missing embedding vector")
        return validate_vector(list(embedding), self.dimension)

    def embed_batch(self, texts: list[str]) -> list[list[float]]:
        return [self.embed(text) for text in texts]


def check_embedding_config(provider: str, model: str | None, dimension: int) -> dict[str, Any]:
    """Report whether the embedding settings are usable, with a fix when they are not."""
    normalized = provider.lower().strip() or "hash"
    if normalized == "hash":
        if dimension <= 0:
            return {"ok": False, "provider": "hash", "detail": "EMBEDDING_DIMENSION must be positive"}
        return {"ok": True, "provider": "hash", "dimension": dimension}
    if normalized not in {"openai", "gemini", "google"}:
        return {
            "ok": False,
            "provider": normalized,
            "detail": "Unsupported embedding provider; use hash, openai or gemini",
        }
    if not model:
        return {"ok": False, "provider": normalized, "detail": "Embedding model is not configured"}
    expected = _OPENAI_DIMENSIONS.get(model) if normalized == "openai" else None
    if expected is not None and dimension not in (0, expected):
        return {
            "ok": False,
            "provider": normalized,
            "model": model,
            "detail": f"EMBEDDING_DIMENSION should be {expected}",
        }
    if expected is None and dimension <= 0:
        return {"ok": False, "provider": normalized, "model": model, "detail": "EMBEDDING_DIMENSION must be set"}
    return {"ok": True, "provider": normalized, "model": model, "dimension": expected or dimension}


@dataclass
class EmbeddingBatch:
    vectors: list[list[float]]
    cache_hits: int
    generated: int


@dataclass
class CachedEmbedder:
    """Consult the embedding cache per text and write through on miss."""
    provider: EmbeddingProvider
    cache: CacheLayer | None = None

    @property
    def dimension(self) -> int:
        return self.provider.dimension

    def embed(self, text: str) -> list[float]:
        return self.embed_batch([text]).vectors[0]

    def embed_batch(self, texts: list[str]) -> EmbeddingBatch:
        vectors: list[list[float] | None] = [None] * len(texts)
        missing: list[int] = []
        for idx, text in enumerate(texts):
            cached = self.cache.get_embedding(text, self.dimension) if self.cache else None
            if cached is None:
                missing.append(idx)
            else:
                vectors[idx] = cached
        if missing:
            generated = self.provider.embed_batch([texts[idx] for idx in missing])
            if len(generated) != len(missing):
                raise EmbeddingError(
                    f"Embedding service returned {len(generated)} vectors for {len(missing)} inputs"
                )
            for idx, vector in zip(missing, generated):
                vectors[idx] = vector
                if self.cache is not None:
                    self.cache.put_embedding(texts[idx], vector)
        logger.debug(
            "embedding_batch",
            extra={"size": len(texts), "cache_hits": len(texts) - len(missing)},
        )
        return EmbeddingBatch(
            vectors=[vector for vector in vectors if vector is not None],
            cache_hits=len(texts) - len(missing),
            generated=len(missing),
        )
