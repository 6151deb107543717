"""Bounded retry with exponential backoff for async operations."""

import asyncio
import logging
from dataclasses import dataclass, replace
from typing import Awaitable, Callable, TypeVar

from .config import (
    MAX_ATTEMPTS,
    RETRY_BACKOFF_MULTIPLIER,
    RETRY_INITIAL_DELAY,
    RETRY_MAX_DELAY,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """How many times to invoke an operation and how long to wait in between.

    Delays are in seconds. The delay after attempt n is
    min(initial_delay * backoff_multiplier ** (n - 1), max_delay).
    """

    max_attempts: int = MAX_ATTEMPTS
    initial_delay: float = RETRY_INITIAL_DELAY
    max_delay: float = RETRY_MAX_DELAY
    backoff_multiplier: float = RETRY_BACKOFF_MULTIPLIER
    label: str = "Operation"
    silent: bool = False

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {self.max_attempts}")
        if self.initial_delay < 0 or self.max_delay < 0:
            raise ValueError("Retry delays must be non-negative")

    def with_label(self, label: str) -> "RetryPolicy":
        return replace(self, label=label)


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy | None = None,
    *,
    retry_on: tuple[type[BaseException], ...] = (Exception,),
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """Invoke ``operation`` until it succeeds or the attempt budget is spent.

    Args:
        operation: Zero-argument coroutine function; called once per attempt.
        policy: Attempt budget, backoff and logging settings.
        retry_on: Exception types that count as retryable failures. Anything
            else propagates on the first occurrence.
        sleep: Awaitable used for the backoff wait (injectable for tests).

    Returns:
        The value of the first successful invocation.

    Raises:
        The exception of the final attempt, with a note naming the label and
        the number of attempts made.
    """
    policy = policy or RetryPolicy()
    delay = min(policy.initial_delay, policy.max_delay)

    for attempt in range(1, policy.max_attempts + 1):
        try:
            return await operation()
        except retry_on as e:
            if attempt == policy.max_attempts:
                if not policy.silent:
                    logger.error(f"{policy.label} failed after {attempt} attempts: {type(e).__name__}: {e}")
                e.add_note(f"{policy.label}: gave up after {attempt} attempt(s)")
                raise

            if not policy.silent:
                logger.warning(
                    f"{policy.label} failed (attempt {attempt}/{policy.max_attempts}): "
                    f"{type(e).__name__}: {e}; retrying in {delay:.2f}s"
                )
            await sleep(delay)
            delay = min(delay * policy.backoff_multiplier, policy.max_delay)

    raise AssertionError("unreachable")  # pragma: no cover
