"""Result cache contract, in-memory backend and request coalescing."""

from __future__ import annotations

import asyncio
from collections import OrderedDict
from collections.abc import Awaitable, Callable, Mapping, Sequence
from dataclasses import asdict, dataclass, is_dataclass
import hashlib
import itertools
import json
import logging
from threading import Lock
import time
from typing import Any, Generic, Protocol, TypeVar

from .provider_spi import Request

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")

EVICTION_POLICIES = ("lru", "lfu", "fifo")


class Cache(Protocol):
    """Opaque key/value store; eviction belongs to the backend."""

    async def get(self, key: str) -> Any | None: ...
    async def set(self, key: str, value: Any, ttl: float | None = None) -> None: ...


def fingerprint(
    request: Request,
    strategy: Any,
    provider_ids: Sequence[str],
    extra: Mapping[str, Any] | None = None,
) -> str:
    """Stable hash of request content, strategy settings and the provider list.

    The request id is excluded, so two calls with identical content coalesce.
    """

    strategy_payload: dict[str, Any] = {"name": getattr(strategy, "name", str(strategy))}
    if is_dataclass(strategy) and not isinstance(strategy, type):
        strategy_payload.update(asdict(strategy))
    payload = {
        "prompt": request.prompt,
        "model": request.model,
        "temperature": request.temperature,
        "max_tokens": request.max_tokens,
        "stop": list(request.stop) if request.stop is not None else None,
        "system_prompt": request.system_prompt,
        "context": list(request.context),
        "strategy": strategy_payload,
        "providers": list(provider_ids),
        "extra": dict(extra or {}),
    }
    encoded = json.dumps(payload, sort_keys=True, ensure_ascii=False, default=str)
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()


@dataclass
class _Entry:
    value: Any
    expires_at: float | None
    hits: int
    order: int


@dataclass(frozen=True)
class CacheStats:
    size: int
    hits: int
    misses: int
    evictions: int


class MemoryCache:
    """Bounded in-process cache with TTL and LRU, LFU or FIFO eviction."""

    def __init__(
        self,
        *,
        max_size: int = 1000,
        default_ttl: float | None = 3600.0,
        eviction: str = "lru",
        clock: Callable[[], float] | None = None,
    ) -> None:
        if max_size <= 0:
            raise ValueError("max_size must be positive")
        if eviction not in EVICTION_POLICIES:
            raise ValueError(f"unsupported eviction policy: {eviction}")
        self._max_size = max_size
        self._default_ttl = default_ttl
        self._eviction = eviction
        self._clock = clock or time.monotonic
        self._entries: OrderedDict[str, _Entry] = OrderedDict()
        self._lock = Lock()
        self._counter = itertools.count()
        self._hits = 0
        self._misses = 0
        self._evictions = 0

    def _expired(self, entry: _Entry, now: float) -> bool:
        return entry.expires_at is not None and entry.expires_at <= now

    def get_nowait(self, key: str) -> Any | None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._misses += 1
                return None
            if self._expired(entry, self._clock()):
                del self._entries[key]
                self._misses += 1
                return None
            entry.hits += 1
            if self._eviction == "lru":
                self._entries.move_to_end(key)
            self._hits += 1
            return entry.value

    def set_nowait(self, key: str, value: Any, ttl: float | None = None) -> None:
        effective_ttl = self._default_ttl if ttl is None else ttl
        with self._lock:
            now = self._clock()
            expires_at = now + effective_ttl if effective_ttl is not None else None
            existing = self._entries.pop(key, None)
            self._entries[key] = _Entry(
                value=value,
                expires_at=expires_at,
                hits=existing.hits if existing is not None else 0,
                order=existing.order if existing is not None else next(self._counter),
            )
            if self._eviction == "fifo" and existing is not None:
                self._reorder_fifo()
            self._evict(now)

    def _reorder_fifo(self) -> None:
        ordered = sorted(self._entries.items(), key=lambda item: item[1].order)
        self._entries = OrderedDict(ordered)

    def _evict(self, now: float) -> None:
        for key in [key for key, entry in self._entries.items() if self._expired(entry, now)]:
            del self._entries[key]
        while len(self._entries) > self._max_size:
            if self._eviction == "lfu":
                victim = min(
                    self._entries.items(), key=lambda item: (item[1].hits, item[1].order)
                )[0]
                del self._entries[victim]
            else:
                self._entries.popitem(last=False)
            self._evictions += 1

    async def get(self, key: str) -> Any | None:
        return self.get_nowait(key)

    async def set(self, key: str, value: Any, ttl: float | None = None) -> None:
        self.set_nowait(key, value, ttl)

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def stats(self) -> CacheStats:
        with self._lock:
            return CacheStats(
                size=len(self._entries),
                hits=self._hits,
                misses=self._misses,
                evictions=self._evictions,
            )

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, key: object) -> bool:
        with self._lock:
            entry = self._entries.get(key) if isinstance(key, str) else None
            return entry is not None and not self._expired(entry, self._clock())


@dataclass
class _Flight(Generic[T]):
    task: asyncio.Future[T]
    waiters: int = 0


class SingleFlight(Generic[T]):
    """Coalesce concurrent computations that share a key onto one task.

    The computation runs as its own task. A cancelled caller only detaches;
    the task is cancelled once no caller is left waiting on it.
    """

    def __init__(self) -> None:
        self._inflight: dict[str, _Flight[T]] = {}

    def __len__(self) -> int:
        return len(self._inflight)

    def _forget(self, key: str, flight: _Flight[T]) -> None:
        if self._inflight.get(key) is flight:
            del self._inflight[key]

    async def run(self, key: str, factory: Callable[[], Awaitable[T]]) -> tuple[T, bool]:
        """Return ``(value, shared)``; ``shared`` is true for coalesced callers."""

        flight = self._inflight.get(key)
        shared = flight is not None
        if flight is None:
            flight = _Flight(asyncio.ensure_future(factory()))
            self._inflight[key] = flight
            flight.task.add_done_callback(lambda _task: self._forget(key, flight))
        else:
            LOGGER.debug("joining in-flight computation", extra={"event": "single_flight_join"})
        flight.waiters += 1
        try:
            return await asyncio.shield(flight.task), shared
        finally:
            flight.waiters -= 1
            if flight.waiters == 0 and not flight.task.done():
                LOGGER.debug(
                    "cancelling abandoned computation", extra={"event": "single_flight_abandoned"}
                )
                flight.task.cancel()


__all__ = [
    "Cache",
    "CacheStats",
    "EVICTION_POLICIES",
    "MemoryCache",
    "SingleFlight",
    "fingerprint",
]
