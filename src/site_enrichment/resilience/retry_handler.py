"""Retry classification and exponential backoff with jitter."""

import asyncio
import random
from typing import Awaitable, Callable, Optional, Tuple


NON_RETRYABLE_MARKERS: Tuple[str, ...] = (
    "invalid_request",
    "invalid_response",
    "authentication",
    "authorization",
    "constraint",
    "validation",
)


def calculate_backoff_ms(
    attempt: int,
    base_ms: float = 1000,
    max_ms: float = 30000,
    jitter_ratio: float = 0.1
) -> float:
    """
    Calculate exponential backoff delay with jitter.

    Formula: min(max_ms, base_ms * 2 ** (attempt - 1) * (1 + uniform(0, jitter_ratio)))

    Args:
        attempt: Attempt that just failed (1-indexed)
        base_ms: Base delay in milliseconds
        max_ms: Maximum delay cap in milliseconds
        jitter_ratio: Maximum jitter as a fraction of the exponential delay

    Returns:
        Delay in milliseconds
    """
    exponential_delay = base_ms * (2 ** (attempt - 1))
    jitter = random.uniform(0, jitter_ratio) * exponential_delay
    return min(max_ms, exponential_delay + jitter)


def is_retryable_error(error: BaseException) -> bool:
    """An error is retryable unless its message names a terminal condition."""
    message = str(error).lower()
    return not any(marker in message for marker in NON_RETRYABLE_MARKERS)


class RetryHandler:
    """
    Classifies failures and waits between attempts.

    Terminal errors (validation, constraint, authentication, authorization,
    malformed request or response) are never retried. Everything else backs off
    exponentially, capped at ``max_ms``.
    """

    def __init__(
        self,
        base_ms: float = 1000,
        max_ms: float = 30000,
        jitter_ratio: float = 0.1,
        sleeper: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """
        Initialize retry handler.

        Args:
            base_ms: Default base delay when the strategy does not set one
            max_ms: Maximum delay cap
            jitter_ratio: Maximum jitter fraction
            sleeper: Async sleep function taking seconds (default: asyncio.sleep)
        """
        self.base_ms = base_ms
        self.max_ms = max_ms
        self.jitter_ratio = jitter_ratio
        self._sleep = sleeper

    def is_retryable(self, error: BaseException) -> bool:
        return is_retryable_error(error)

    def delay_for(self, attempt: int, base_ms: Optional[float] = None) -> float:
        """Backoff in milliseconds after ``attempt`` failed."""
        return calculate_backoff_ms(
            attempt,
            base_ms if base_ms is not None else self.base_ms,
            self.max_ms,
            self.jitter_ratio
        )

    async def wait(self, attempt: int, base_ms: Optional[float] = None) -> float:
        """
        Sleep for the backoff delay of ``attempt``.

        Returns:
            The delay slept, in milliseconds
        """
        delay_ms = self.delay_for(attempt, base_ms)
        await self.sleep(delay_ms)
        return delay_ms

    async def sleep(self, delay_ms: float) -> None:
        await self._sleep(delay_ms / 1000)
