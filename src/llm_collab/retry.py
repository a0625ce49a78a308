"""Retry with exponential backoff for provider calls."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
import logging
import random
from typing import TypeVar

from .errors import CollabError, RateLimitError, is_retryable

T = TypeVar("T")

LOGGER = logging.getLogger(__name__)

JITTER_RATIO = 0.25

RetryCallback = Callable[[int, BaseException, float], None]


@dataclass(frozen=True)
class RetryPolicy:
    max_retries: int = 3
    base_delay_s: float = 1.0
    max_delay_s: float = 30.0

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if self.base_delay_s < 0 or self.max_delay_s < 0:
            raise ValueError("delays must be >= 0")


class RetryHandler:
    """Run an async operation, retrying only errors classified as retryable.

    The delay before retry ``n`` (0-based) is ``min(max_delay, base * 2**n)`` plus
    a uniform jitter of up to a quarter of that delay. A rate limit carrying
    ``retry_after`` raises the delay to at least that value.
    """

    def __init__(
        self,
        *,
        sleep: Callable[[float], Awaitable[None]] | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self._sleep = sleep or asyncio.sleep
        self._rng = rng or random.Random()

    def delay_for(self, retry_index: int, policy: RetryPolicy, error: BaseException) -> float:
        delay = min(policy.max_delay_s, policy.base_delay_s * (2**retry_index))
        delay += self._rng.uniform(0.0, delay * JITTER_RATIO)
        if isinstance(error, RateLimitError) and error.retry_after is not None:
            delay = max(delay, error.retry_after)
        return delay

    async def execute(
        self,
        operation: Callable[[], Awaitable[T]],
        policy: RetryPolicy,
        *,
        on_retry: RetryCallback | None = None,
    ) -> T:
        attempt = 0
        while True:
            attempt += 1
            try:
                return await operation()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                retries_used = attempt - 1
                if not is_retryable(exc) or retries_used >= policy.max_retries:
                    if isinstance(exc, CollabError):
                        exc.attempts = attempt
                    raise
                delay = self.delay_for(retries_used, policy, exc)
                LOGGER.debug(
                    "retrying after %s (attempt %d, delay %.3fs)",
                    type(exc).__name__,
                    attempt,
                    delay,
                    extra={"event": "retry_scheduled", "attempt": attempt, "delay_s": delay},
                )
                if on_retry is not None:
                    on_retry(attempt, exc, delay)
                await self._sleep(delay)


__all__ = ["JITTER_RATIO", "RetryCallback", "RetryHandler", "RetryPolicy"]
