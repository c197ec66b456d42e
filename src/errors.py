from __future__ import annotations

"""Error taxonomy shared by ingestion, retrieval and synthesis."""

from dataclasses import dataclass, field


class ValidationError(ValueError):
    """Bad input: unsupported format, empty query or oversized file. Never retried."""
    pass


class TransientInfraError(RuntimeError):
    """Queue, index or embedding service unavailable or timed out. Retried with backoff."""
    pass


class ContentError(RuntimeError):
    """Document yields no usable text or no chunk survives quality filtering."""
    pass


@dataclass(frozen=True)
class NoRelevantContentFound:
    """Outcome returned when retrieval succeeds but nothing clears the relevance floor."""
    query: str
    document_filter: str | None = None
    available_topics: list[str] = field(default_factory=list)

    @property
    def filtered(self) -> bool:
        return self.document_filter is not None


def describe_error(exc: BaseException) -> str:
    """Return the error message, falling back to the exception type name."""
    message = str(exc).strip()
    return message or type(exc).__name__
