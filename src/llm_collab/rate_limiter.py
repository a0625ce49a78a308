"""Per-provider token buckets."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
import threading
import time

from .config import RateLimitConfig
from .errors import RateLimitError

__all__ = ["RateLimitDecision", "RateLimitState", "RateLimiter"]


@dataclass(frozen=True)
class RateLimitState:
    tokens: float
    reset_at: float


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    remaining: int
    reset_at: float
    retry_after: float


class _Bucket:
    __slots__ = ("capacity", "refill_rate", "tokens", "updated_at")

    def __init__(self, config: RateLimitConfig, now: float) -> None:
        if config.tokens_per_minute <= 0:
            raise ValueError("tokens_per_minute must be positive")
        if config.burst <= 0:
            raise ValueError("burst must be positive")
        self.refill_rate = float(config.tokens_per_minute) / 60.0
        self.capacity = float(config.burst)
        self.tokens = self.capacity
        self.updated_at = now

    def refill(self, now: float) -> None:
        elapsed = now - self.updated_at
        if elapsed > 0.0:
            self.tokens = min(self.capacity, self.tokens + elapsed * self.refill_rate)
            self.updated_at = now

    def reset_at(self, now: float) -> float:
        missing = self.capacity - self.tokens
        return now + max(0.0, missing) / self.refill_rate

    def wait_time(self) -> float:
        if self.tokens >= 1.0:
            return 0.0
        return (1.0 - self.tokens) / self.refill_rate


class RateLimiter:
    """Token bucket per provider; refill is ``tokens_per_minute / 60`` per second."""

    def __init__(self, *, clock: Callable[[], float] | None = None) -> None:
        self._clock = clock or time.monotonic
        self._buckets: dict[str, _Bucket] = {}
        self._lock = threading.Lock()

    def configure(self, provider_id: str, config: RateLimitConfig | None) -> None:
        """Install (or clear, with ``None``) the bucket for ``provider_id``."""

        with self._lock:
            if config is None:
                self._buckets.pop(provider_id, None)
                return
            self._buckets[provider_id] = _Bucket(config, self._clock())

    def remove(self, provider_id: str) -> None:
        with self._lock:
            self._buckets.pop(provider_id, None)

    def admit(self, provider_id: str) -> RateLimitDecision:
        """Report whether a call would be admitted, without consuming a token."""

        with self._lock:
            now = self._clock()
            bucket = self._buckets.get(provider_id)
            if bucket is None:
                return RateLimitDecision(True, remaining=-1, reset_at=now, retry_after=0.0)
            bucket.refill(now)
            wait = bucket.wait_time()
            return RateLimitDecision(
                allowed=wait <= 0.0,
                remaining=int(bucket.tokens),
                reset_at=bucket.reset_at(now),
                retry_after=wait,
            )

    def consume(self, provider_id: str) -> RateLimitDecision:
        """Take one token or raise :class:`RateLimitError` with ``retry_after``."""

        with self._lock:
            now = self._clock()
            bucket = self._buckets.get(provider_id)
            if bucket is None:
                return RateLimitDecision(True, remaining=-1, reset_at=now, retry_after=0.0)
            bucket.refill(now)
            wait = bucket.wait_time()
            if wait <= 0.0:
                bucket.tokens -= 1.0
                return RateLimitDecision(
                    allowed=True,
                    remaining=int(bucket.tokens),
                    reset_at=bucket.reset_at(now),
                    retry_after=0.0,
                )
        raise RateLimitError(
            f"local rate limit reached for {provider_id}",
            retry_after=wait,
            provider=provider_id,
        )

    def state(self, provider_id: str) -> RateLimitState | None:
        with self._lock:
            bucket = self._buckets.get(provider_id)
            if bucket is None:
                return None
            now = self._clock()
            bucket.refill(now)
            return RateLimitState(tokens=bucket.tokens, reset_at=bucket.reset_at(now))
