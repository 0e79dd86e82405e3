"""
Bounded retries for the access router.

A read or write that hits a record mid-transition (ConflictError) or a flaky
adapter (TransientIOError) is retried a few times with exponential backoff
before the caller is told the record is temporarily unavailable. Retries
are local and short; the archival passes never retry inline, a failed
record is simply picked up by the next pass.
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryConfig:
    """
    Configuration for retry behavior.

    Attributes:
        max_attempts: Total attempts including the first one (>= 1)
        initial_delay: Delay in seconds before the first retry
        max_delay: Maximum delay in seconds between retries
        exponential_base: Base for exponential backoff calculation
        jitter: Fraction of delay to add as random jitter (0-1)

    Example:
        >>> config = RetryConfig(max_attempts=3, initial_delay=0.05)
    """

    max_attempts: int = 3
    initial_delay: float = 0.05
    max_delay: float = 2.0
    exponential_base: float = 2.0
    jitter: float = 0.1

    def __post_init__(self) -> None:
        """Validate configuration values."""
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {self.max_attempts}.")

        if self.initial_delay < 0:
            raise ValueError(f"initial_delay must be >= 0, got {self.initial_delay}.")

        if self.max_delay < self.initial_delay:
            raise ValueError(
                f"max_delay ({self.max_delay}) must be >= initial_delay ({self.initial_delay})."
            )

        if self.exponential_base < 1.0:
            raise ValueError(f"exponential_base must be >= 1.0, got {self.exponential_base}.")

        if not 0.0 <= self.jitter <= 1.0:
            raise ValueError(f"jitter must be between 0.0 and 1.0, got {self.jitter}.")

    def to_dict(self) -> dict[str, Any]:
        return {
            "max_attempts": self.max_attempts,
            "initial_delay": self.initial_delay,
            "max_delay": self.max_delay,
            "exponential_base": self.exponential_base,
            "jitter": self.jitter,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RetryConfig:
        return cls(
            max_attempts=data.get("max_attempts", 3),
            initial_delay=data.get("initial_delay", 0.05),
            max_delay=data.get("max_delay", 2.0),
            exponential_base=data.get("exponential_base", 2.0),
            jitter=data.get("jitter", 0.1),
        )


@dataclass
class RetryStats:
    """Counters filled in by retry_async, readable even when it raises."""

    attempts: int = 0
    failures: int = 0
    total_delay_seconds: float = 0.0
    last_error: str | None = None

    @property
    def retries(self) -> int:
        return max(0, self.attempts - 1)


def calculate_backoff(attempt: int, config: RetryConfig) -> float:
    """
    Delay before retry number ``attempt`` (0-based).

    ``initial_delay * exponential_base ** attempt``, capped at ``max_delay``,
    then spread by +/- ``jitter`` of itself so that routers retrying the same
    busy record do not wake up together.
    """
    base = min(config.initial_delay * config.exponential_base**attempt, config.max_delay)
    spread = base * config.jitter
    return max(0.0, base + random.uniform(-spread, spread))  # nosec B311 - not crypto


class RetriesExhausted(Exception):
    """
    Every attempt failed with a retryable error.

    Attributes:
        attempts: Number of attempts made
        last_error: The exception raised by the final attempt
    """

    def __init__(self, attempts: int, last_error: Exception) -> None:
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"Gave up after {attempts} attempts: {last_error}")


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    config: RetryConfig,
    retryable_exceptions: tuple[type[Exception], ...],
    operation_name: str = "operation",
    stats: RetryStats | None = None,
    on_retry: Callable[[int, Exception], None] | None = None,
) -> T:
    """
    Run ``operation`` until it succeeds or ``config.max_attempts`` is reached.

    Only ``retryable_exceptions`` are retried; anything else propagates from
    the attempt that raised it.

    Args:
        operation: Zero-argument coroutine factory, called once per attempt
        config: Attempt limit and backoff
        retryable_exceptions: Exception types worth another attempt
        operation_name: Label for log messages
        stats: Filled in place when given
        on_retry: Called with (retry number, error) before each backoff sleep

    Raises:
        RetriesExhausted: The last attempt failed with a retryable error
    """
    stats = stats if stats is not None else RetryStats()

    for attempt in range(config.max_attempts):
        stats.attempts += 1
        try:
            result = await operation()
        except retryable_exceptions as e:
            stats.failures += 1
            stats.last_error = str(e)
            if stats.attempts >= config.max_attempts:
                logger.warning(
                    "Giving up on %s after %d attempts: %s",
                    operation_name,
                    stats.attempts,
                    e,
                )
                raise RetriesExhausted(stats.attempts, e) from e

            delay = calculate_backoff(attempt, config)
            stats.total_delay_seconds += delay
            if on_retry is not None:
                on_retry(attempt + 1, e)
            logger.debug(
                "%s hit %s, retry %d/%d in %.3fs",
                operation_name,
                type(e).__name__,
                attempt + 1,
                config.max_attempts - 1,
                delay,
            )
            await asyncio.sleep(delay)
        else:
            if stats.failures:
                logger.info("%s succeeded on attempt %d", operation_name, stats.attempts)
            return result

    raise AssertionError("unreachable: max_attempts is at least 1")


__all__ = [
    "RetryConfig",
    "RetryStats",
    "RetriesExhausted",
    "calculate_backoff",
    "retry_async",
]
