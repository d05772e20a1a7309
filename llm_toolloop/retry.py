"""Retry/backoff primitives for model calls."""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

from llm_toolloop.errors import (
    ModelAuthError,
    ModelContentFilterError,
    ModelNotFoundError,
    ModelQuotaExhaustedError,
    ModelRateLimitError,
    ModelTimeoutError,
    ModelTransientError,
    wrap_error,
)

T = TypeVar("T")

_RETRYABLE_PATTERNS = [
    "rate limit",
    "rate_limit",
    "connection reset",
    "connection error",
    "network error",
    "service unavailable",
    "internal server error",
    "server error",
    "overloaded",
    "http 500",
    "http 502",
    "http 503",
    "http 529",
    "temporary failure",
    "empty content",
]

# Never retried: retrying cannot change the outcome.
_PERMANENT_ERRORS = (
    ModelAuthError,
    ModelContentFilterError,
    ModelNotFoundError,
    ModelQuotaExhaustedError,
)


def exponential_backoff(attempt: int, base_delay: float = 1.0, max_delay: float = 30.0) -> float:
    """Exponential backoff with jitter, capped at *max_delay*."""
    delay = base_delay * (2 ** attempt)
    jitter = random.uniform(0.5, 1.5)
    return min(delay * jitter, max_delay)


def fixed_backoff(attempt: int, base_delay: float = 1.0, max_delay: float = 30.0) -> float:
    """Fixed delay (no escalation), capped at *max_delay*."""
    return min(base_delay, max_delay)


@dataclass
class RetryPolicy:
    """Reusable retry configuration for the completion adapter.

    Attributes:
        max_retries: How many times to retry on transient failure.
        base_delay: Starting delay for backoff (seconds).
        max_delay: Cap on backoff delay (seconds).
        retry_on: Extra retryable patterns (added to built-in defaults).
        backoff: ``(attempt, base_delay, max_delay) → delay``.
            Defaults to :func:`exponential_backoff`.
    """

    max_retries: int = 2
    base_delay: float = 1.0
    max_delay: float = 30.0
    retry_on: list[str] | None = None
    backoff: Callable[[int, float, float], float] | None = None

    def is_retryable(self, error: Exception) -> bool:
        classified = wrap_error(error)
        if isinstance(classified, _PERMANENT_ERRORS):
            return False
        if isinstance(classified, (ModelRateLimitError, ModelTimeoutError, ModelTransientError)):
            return True
        error_str = str(error).lower()
        patterns = list(_RETRYABLE_PATTERNS)
        if self.retry_on:
            patterns.extend(p.lower() for p in self.retry_on)
        return any(p in error_str for p in patterns)

    def delay(self, attempt: int) -> float:
        backoff_fn = self.backoff or exponential_backoff
        return backoff_fn(attempt, self.base_delay, self.max_delay)


NO_RETRY = RetryPolicy(max_retries=0)


async def run_async_with_retry(
    *,
    caller: str,
    model: str,
    policy: RetryPolicy,
    invoke: Callable[[int], Awaitable[T]],
    warning_sink: list[str],
    logger: logging.Logger,
) -> T:
    """Execute async attempts with shared retry behavior."""
    for attempt in range(policy.max_retries + 1):
        try:
            return await invoke(attempt)
        except Exception as exc:
            if not policy.is_retryable(exc) or attempt >= policy.max_retries:
                raise
            delay = policy.delay(attempt)
            warning_sink.append(
                f"RETRY {attempt + 1}/{policy.max_retries + 1}: "
                f"{model} ({type(exc).__name__}: {exc})"
            )
            logger.warning(
                "%s attempt %d/%d failed (retrying in %.1fs): %s",
                caller,
                attempt + 1,
                policy.max_retries + 1,
                delay,
                exc,
            )
            await asyncio.sleep(delay)

    raise RuntimeError("run_async_with_retry exhausted without returning")
