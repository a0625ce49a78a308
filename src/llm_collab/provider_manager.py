"""Provider registry with health, statistics, rate limiting and retries."""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, replace
import logging
from threading import Lock
import time
from urllib.parse import urlparse

from .config import ProviderConfig
from .errors import (
    CollabError,
    ErrorKind,
    ProviderInitError,
    ProviderTimeoutError,
    RateLimitError,
    UnknownProviderError,
    ValidationError,
    classify_error,
)
from .metrics import MetricsSink, NullMetricsSink
from .models import ProviderHealth, ProviderOutcome, ProviderStats, ProviderStatsSnapshot
from .observability import EventLogger
from .provider_spi import ProviderAdapter, Request, Response
from .providers import AdapterFactory, create_adapter
from .rate_limiter import RateLimiter
from .retry import RetryHandler, RetryPolicy

LOGGER = logging.getLogger(__name__)

DEFAULT_MAX_CONCURRENT_PROVIDERS = 2


@dataclass
class _ProviderEntry:
    config: ProviderConfig
    adapter: ProviderAdapter
    stats: ProviderStats
    health: ProviderHealth
    policy: RetryPolicy


def validate_provider_config(config: ProviderConfig, *, requires_api_key: bool = True) -> list[str]:
    """Return every problem found in ``config``."""

    problems: list[str] = []
    if not config.id or not config.id.strip():
        problems.append("provider id must be a non-empty string")
    if config.timeout_s <= 0:
        problems.append("timeout must be positive")
    if config.max_retries < 0:
        problems.append("max_retries must be >= 0")
    if requires_api_key:
        if not config.api_key or not config.api_key.strip():
            problems.append(f"{config.id}: api_key must be set")
        parsed = urlparse(config.base_url or "")
        if parsed.scheme not in {"http", "https"} or not parsed.netloc:
            problems.append(f"{config.id}: base_url must be an absolute http(s) URL")
    return problems


def _elapsed_ms(start: float) -> int:
    return max(0, int((time.perf_counter() - start) * 1000))


class ProviderManager:
    """Owns adapters and the per-provider health, statistics and rate buckets."""

    def __init__(
        self,
        *,
        rate_limiter: RateLimiter | None = None,
        retry_handler: RetryHandler | None = None,
        metrics: MetricsSink | None = None,
        event_logger: EventLogger | None = None,
        max_concurrent_providers: int = DEFAULT_MAX_CONCURRENT_PROVIDERS,
        adapter_factories: Mapping[str, AdapterFactory] | None = None,
        clock: Callable[[], float] | None = None,
    ) -> None:
        if max_concurrent_providers <= 0:
            raise ValueError("max_concurrent_providers must be positive")
        self._rate_limiter = rate_limiter or RateLimiter()
        self._retry = retry_handler or RetryHandler()
        self._metrics: MetricsSink = metrics or NullMetricsSink()
        self._event_logger = event_logger
        self._max_concurrent_providers = max_concurrent_providers
        self._adapter_factories = adapter_factories
        self._clock = clock or time.time
        self._entries: dict[str, _ProviderEntry] = {}
        self._lock = Lock()

    @property
    def max_concurrent_providers(self) -> int:
        return self._max_concurrent_providers

    # registration -----------------------------------------------------------

    async def register_provider(
        self, config: ProviderConfig, adapter: ProviderAdapter | None = None
    ) -> None:
        with self._lock:
            if config.id in self._entries:
                raise ProviderInitError(
                    f"provider already registered: {config.id}", provider=config.id
                )
        if adapter is None:
            adapter = create_adapter(config, factories=self._adapter_factories)
        problems = validate_provider_config(
            config, requires_api_key=getattr(adapter, "requires_api_key", True)
        )
        if problems:
            raise ProviderInitError("; ".join(problems), provider=config.id)

        try:
            await adapter.initialize(config)
        except ProviderInitError:
            raise
        except Exception as exc:
            raise ProviderInitError(
                f"{config.id}: initialization failed: {exc}", provider=config.id
            ) from exc

        try:
            status = await adapter.get_health_status()
        except Exception as exc:
            await adapter.dispose()
            raise ProviderInitError(
                f"{config.id}: health probe failed: {exc}", provider=config.id
            ) from exc
        if not status.healthy:
            await adapter.dispose()
            raise ProviderInitError(
                f"{config.id}: health probe failed: {status.detail or 'unhealthy'}",
                provider=config.id,
            )

        entry = _ProviderEntry(
            config=config,
            adapter=adapter,
            stats=ProviderStats(),
            health=ProviderHealth(
                healthy=True, last_latency_ms=status.latency_ms, last_checked=self._clock()
            ),
            policy=RetryPolicy(
                max_retries=config.max_retries,
                base_delay_s=config.retry.base_delay_s,
                max_delay_s=config.retry.max_delay_s,
            ),
        )
        with self._lock:
            if config.id in self._entries:
                raise ProviderInitError(
                    f"provider already registered: {config.id}", provider=config.id
                )
            self._entries[config.id] = entry
        self._rate_limiter.configure(config.id, config.rate_limit)
        LOGGER.info(
            "registered provider %s (%s)",
            config.id,
            config.name,
            extra={"event": "provider_registered", "provider": config.id},
        )

    async def unregister_provider(self, provider_id: str) -> None:
        with self._lock:
            entry = self._entries.pop(provider_id, None)
        if entry is None:
            raise UnknownProviderError(provider_id)
        self._rate_limiter.remove(provider_id)
        await entry.adapter.dispose()
        LOGGER.info(
            "unregistered provider %s",
            provider_id,
            extra={"event": "provider_unregistered", "provider": provider_id},
        )

    async def dispose(self) -> None:
        with self._lock:
            entries = list(self._entries.items())
            self._entries.clear()
        for provider_id, entry in entries:
            self._rate_limiter.remove(provider_id)
            await entry.adapter.dispose()

    # lookups ----------------------------------------------------------------

    def _entry(self, provider_id: str) -> _ProviderEntry:
        with self._lock:
            entry = self._entries.get(provider_id)
        if entry is None:
            raise UnknownProviderError(provider_id)
        return entry

    def has_provider(self, provider_id: str) -> bool:
        with self._lock:
            return provider_id in self._entries

    def provider_ids(self, *, healthy_only: bool = False) -> list[str]:
        with self._lock:
            return [
                provider_id
                for provider_id, entry in self._entries.items()
                if not healthy_only or entry.health.healthy
            ]

    def is_healthy(self, provider_id: str) -> bool:
        with self._lock:
            entry = self._entries.get(provider_id)
            return entry is not None and entry.health.healthy

    def config(self, provider_id: str) -> ProviderConfig:
        return self._entry(provider_id).config

    def adapter(self, provider_id: str) -> ProviderAdapter:
        return self._entry(provider_id).adapter

    def health(self, provider_id: str) -> ProviderHealth:
        return self._entry(provider_id).health

    def stats(self, provider_id: str) -> ProviderStatsSnapshot:
        return self._entry(provider_id).stats.snapshot()

    def reset_stats(self, provider_id: str | None = None) -> None:
        if provider_id is not None:
            self._entry(provider_id).stats.reset()
            return
        with self._lock:
            entries = list(self._entries.values())
        for entry in entries:
            entry.stats.reset()

    async def check_health(self, provider_id: str) -> ProviderHealth:
        entry = self._entry(provider_id)
        try:
            status = await entry.adapter.get_health_status()
        except Exception as exc:
            LOGGER.warning(
                "health probe for %s raised %s",
                provider_id,
                type(exc).__name__,
                extra={"event": "provider_health_error", "provider": provider_id},
            )
            return self._update_health(
                entry, healthy=False, error=f"{type(exc).__name__}: {exc}"
            )
        return self._update_health(
            entry, healthy=status.healthy, latency_ms=status.latency_ms, error=status.detail
        )

    def _update_health(
        self,
        entry: _ProviderEntry,
        *,
        healthy: bool | None,
        latency_ms: int | None = None,
        error: str | None = None,
    ) -> ProviderHealth:
        with self._lock:
            current = entry.health
            updated = replace(
                current,
                healthy=current.healthy if healthy is None else healthy,
                last_latency_ms=latency_ms if latency_ms is not None else current.last_latency_ms,
                last_checked=self._clock(),
                last_error=error if healthy is not True else None,
            )
            entry.health = updated
        return updated

    # calls ------------------------------------------------------------------

    async def call(self, provider_id: str, request: Request) -> ProviderOutcome:
        """Call one provider with rate limiting, validation, timeout and retry.

        Provider failures come back as a failed :class:`ProviderOutcome`;
        only an unregistered ``provider_id`` raises.
        """

        entry = self._entry(provider_id)
        config = entry.config
        adapter = entry.adapter
        tags = {"provider": provider_id}

        async def attempt() -> Response:
            try:
                self._rate_limiter.consume(provider_id)
            except RateLimitError:
                entry.stats.record_rate_limit_hit()
                self._metrics.increment("rate_limit_hit_total", tags=tags)
                raise
            validation = adapter.validate_request(request)
            if not validation.valid:
                raise ValidationError(validation.errors, provider=provider_id)
            try:
                return await asyncio.wait_for(
                    adapter.generate_response(request), timeout=config.timeout_s
                )
            except asyncio.TimeoutError:
                raise ProviderTimeoutError(
                    f"{provider_id} did not answer within {config.timeout_s:g}s",
                    provider=provider_id,
                ) from None

        def on_retry(attempt_no: int, exc: BaseException, delay: float) -> None:
            entry.stats.record_retry()
            self._metrics.increment("provider_retry_total", tags=tags)

        start = time.perf_counter()
        try:
            response = await self._retry.execute(attempt, entry.policy, on_retry=on_retry)
        except asyncio.CancelledError:
            entry.stats.record_failure()
            raise
        except Exception as exc:
            elapsed = _elapsed_ms(start)
            entry.stats.record_failure()
            kind = classify_error(exc)
            message = f"{type(exc).__name__}: {exc}"
            self._update_health(
                entry, healthy=False if kind is ErrorKind.AUTHENTICATION else None, error=message
            )
            if not isinstance(exc, CollabError):
                LOGGER.exception(
                    "unexpected error from provider %s",
                    provider_id,
                    extra={"event": "provider_call_error", "provider": provider_id},
                )
            else:
                LOGGER.warning(
                    "provider %s failed: %s",
                    provider_id,
                    message,
                    extra={"event": "provider_call_failed", "provider": provider_id},
                )
            self._metrics.increment(
                "provider_call_total", tags={"provider": provider_id, "status": kind.value}
            )
            self._emit(
                {
                    "provider": provider_id,
                    "request_id": request.id,
                    "status": "error",
                    "error_kind": kind.value,
                    "error_message": str(exc),
                    "attempts": getattr(exc, "attempts", 1),
                    "latency_ms": elapsed,
                }
            )
            return ProviderOutcome.failed(provider_id, exc, elapsed)

        elapsed = _elapsed_ms(start)
        latency = response.latency_ms or elapsed
        entry.stats.record_success(latency)
        self._update_health(entry, healthy=True, latency_ms=latency)
        usage = response.token_usage
        self._metrics.increment(
            "provider_call_total", tags={"provider": provider_id, "status": "ok"}
        )
        self._metrics.observe("provider_call_latency_ms", float(latency), tags=tags)
        self._metrics.increment(
            "provider_tokens_total", float(usage.prompt), {"provider": provider_id, "direction": "in"}
        )
        self._metrics.increment(
            "provider_tokens_total",
            float(usage.completion),
            {"provider": provider_id, "direction": "out"},
        )
        self._emit(
            {
                "provider": provider_id,
                "request_id": request.id,
                "status": "ok",
                "latency_ms": latency,
                "tokens_in": usage.prompt,
                "tokens_out": usage.completion,
            }
        )
        return ProviderOutcome.ok(provider_id, response, elapsed)

    async def fan_out(
        self,
        provider_ids: Sequence[str],
        request: Request,
        deadline_s: float | None = None,
    ) -> list[ProviderOutcome]:
        """Call every provider concurrently and return outcomes in input order.

        At most ``max_concurrent_providers`` calls run at once. Calls still
        outstanding when ``deadline_s`` elapses are cancelled and reported as
        timeouts.
        """

        ids = list(provider_ids)
        if not ids:
            return []
        semaphore = asyncio.Semaphore(self._max_concurrent_providers)

        async def run(provider_id: str) -> ProviderOutcome:
            async with semaphore:
                return await self.call(provider_id, request)

        start = time.perf_counter()
        tasks = [asyncio.create_task(run(provider_id)) for provider_id in ids]
        try:
            _, pending = await asyncio.wait(tasks, timeout=deadline_s)
        except asyncio.CancelledError:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
            LOGGER.warning(
                "deadline of %.3fs elapsed with %d provider call(s) outstanding",
                deadline_s,
                len(pending),
                extra={"event": "fan_out_deadline", "pending": len(pending)},
            )

        outcomes: list[ProviderOutcome] = []
        for provider_id, task in zip(ids, tasks):
            if task in pending or task.cancelled():
                elapsed = _elapsed_ms(start)
                timeout_error = ProviderTimeoutError(
                    f"{provider_id} cancelled at the deadline after {elapsed}ms",
                    provider=provider_id,
                )
                outcomes.append(ProviderOutcome.failed(provider_id, timeout_error, elapsed))
                continue
            error = task.exception()
            if error is not None:
                outcomes.append(ProviderOutcome.failed(provider_id, error, _elapsed_ms(start)))
                continue
            outcomes.append(task.result())
        return outcomes

    def _emit(self, record: Mapping[str, object]) -> None:
        if self._event_logger is None:
            return
        payload = dict(record)
        payload.setdefault("ts", self._clock())
        self._event_logger.emit("provider_call", payload)


__all__ = [
    "DEFAULT_MAX_CONCURRENT_PROVIDERS",
    "ProviderManager",
    "validate_provider_config",
]
