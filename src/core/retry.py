# src/core/retry.py — v1
"""Retry policy with capped exponential backoff.

Failures are classified once per attempt; only retryable errors are
retried. Cancellation is never classified and always propagates.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

from aether.config.models import RetryConfig
from aether.core.errors import ClassifiedError, RetryExhaustedError, classify

logger = logging.getLogger(__name__)

T = TypeVar("T")

OnRetry = Callable[[int, ClassifiedError, float], Awaitable[None] | None]


@dataclass(frozen=True)
class RetryPolicy:
    """Attempt limit and backoff bounds (milliseconds)."""

    max_attempts: int = 5
    initial_backoff_ms: int = 1000
    max_backoff_ms: int = 30000

    @classmethod
    def from_config(cls, config: RetryConfig) -> RetryPolicy:
        return cls(
            max_attempts=config.max_attempts,
            initial_backoff_ms=config.initial_backoff_ms,
            max_backoff_ms=config.max_backoff_ms,
        )


def compute_backoff(attempt: int, policy: RetryPolicy) -> int:
    """Backoff in ms before the retry that follows ``attempt`` (1-based)."""
    if attempt < 1:
        attempt = 1
    return min(policy.initial_backoff_ms * (2 ** (attempt - 1)), policy.max_backoff_ms)


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    *,
    on_retry: OnRetry | None = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """Run ``operation`` until it succeeds or attempts run out.

    Args:
        operation: Zero-argument coroutine factory, called once per attempt.
        policy: Attempt limit and backoff bounds.
        on_retry: Called as ``on_retry(attempt, error, delay_s)`` before each
            backoff sleep. May be sync or async.
        sleep: Awaitable sleep, injectable for tests.

    Raises:
        ClassifiedError: immediately for a non-retryable failure.
        RetryExhaustedError: when every attempt failed with a retryable error.
    """
    attempt = 0
    while True:
        attempt += 1
        try:
            return await operation()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            error = classify(e)
            if not error.retryable:
                if error is e:
                    raise
                raise error from e
            if attempt >= policy.max_attempts:
                logger.warning(
                    "Giving up after %d attempts: %s", attempt, error.message
                )
                raise RetryExhaustedError(error, attempt) from e

            delay_s = compute_backoff(attempt, policy) / 1000.0
            logger.info(
                "Attempt %d/%d failed (%s), retrying in %.1fs",
                attempt, policy.max_attempts, error.message, delay_s,
            )
            if on_retry is not None:
                result = on_retry(attempt, error, delay_s)
                if asyncio.iscoroutine(result):
                    await result
            await sleep(delay_s)
