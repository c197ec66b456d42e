from __future__ import annotations

"""Bounded retry with exponential backoff."""

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

from src.errors import TransientInfraError, describe_error

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Attempt ceiling and exponential backoff schedule."""
    attempts: int = 3
    base_delay: float = 1.0
    factor: float = 2.0
    max_delay: float = 60.0

    def delay_for(self, attempt: int) -> float:
        """Delay after the given failed attempt (1-based)."""
        return min(self.max_delay, self.base_delay * self.factor ** max(0, attempt - 1))


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    retry_on: tuple[type[BaseException], ...] = (TransientInfraError,),
    label: str = "operation",
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    on_retry: Callable[[int], Awaitable[None]] | None = None,
) -> T:
    """Run ``operation`` until it succeeds or the policy is exhausted.

    ``on_retry`` is awaited with the upcoming attempt number after each backoff
    sleep. The last exception is re-raised unchanged so callers can report it
    verbatim.
    """
    attempts = max(1, policy.attempts)
    for attempt in range(1, attempts + 1):
        try:
            return await operation()
        except retry_on as exc:
            if attempt >= attempts:
                raise
            delay = policy.delay_for(attempt)
            logger.warning(
                "retrying_after_error",
                extra={
                    "label": label,
                    "attempt": attempt,
                    "delay": delay,
                    "detail": describe_error(exc),
                },
            )
            await sleep(delay)
            if on_retry is not None:
                await on_retry(attempt + 1)
    raise RuntimeError("unreachable")  # pragma: no cover
