"""Exponential backoff with jitter for retryable operations.

Shared by ledger transactions (balance version conflicts) and webhook
delivery (transient HTTP failures).
"""

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

__all__ = ["RetryPolicy", "backoff_delay", "with_retries"]

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Retry budget and backoff bounds.

    Attributes:
        max_retries: Retries after the first attempt (0 = try once).
        base_delay_ms: Delay before the first retry.
        max_delay_ms: Upper bound for any single delay.
        jitter: Fraction of the base delay added at random.
    """

    max_retries: int
    base_delay_ms: int
    max_delay_ms: int
    jitter: float = 0.1


def backoff_delay(policy: RetryPolicy, attempt: int) -> float:
    """Seconds to wait before retry number ``attempt + 1``.

    Args:
        policy: Backoff bounds.
        attempt: Zero-based index of the attempt that just failed.

    Returns:
        min(base * 2^attempt + jitter, max) converted to seconds.
    """
    base_delay = policy.base_delay_ms * (2**attempt)
    jitter = random.uniform(0, base_delay * policy.jitter) if policy.jitter else 0
    return min(base_delay + jitter, policy.max_delay_ms) / 1000


async def with_retries(
    func: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    retryable_errors: tuple[type[Exception], ...],
    *,
    operation: str = "operation",
) -> T:
    """Execute function with exponential backoff retry.

    Args:
        func: Async function to execute (no arguments).
        policy: Retry budget and backoff bounds.
        retryable_errors: Tuple of error types that should trigger retry.
        operation: Label used in log messages.

    Returns:
        Result from successful function execution.

    Raises:
        Exception: The last retryable error once retries are exhausted,
            or any non-retryable error immediately.
        RuntimeError: If retry loop exits unexpectedly without error or result.
    """
    last_error: Exception | None = None

    for attempt in range(policy.max_retries + 1):
        try:
            return await func()
        except retryable_errors as e:
            last_error = e

            if attempt == policy.max_retries:
                break  # No more retries

            delay = backoff_delay(policy, attempt)
            logger.warning(
                "%s failed (attempt %d/%d): %s. Retrying in %.3fs",
                operation,
                attempt + 1,
                policy.max_retries + 1,
                e,
                delay,
            )

            await asyncio.sleep(delay)

    # Should not reach here without an error, but satisfy type checker
    if last_error is not None:
        raise last_error
    raise RuntimeError("Retry loop exited without error or result")
