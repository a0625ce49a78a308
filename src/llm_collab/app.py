"""Wire an :class:`AppConfig` into a ready-to-use orchestrator."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import replace
import logging
from pathlib import Path

from .cache import MemoryCache
from .config import AppConfig, ProviderConfig, StrategiesConfig
from .errors import ConfigError, ProviderInitError
from .loader import load_config
from .metrics import MetricsSink, NullMetricsSink, PrometheusMetricsSink
from .observability import CompositeLogger, EventLogger, JsonlLogger, configure_logging
from .orchestrator import AdmissionController, CollaborationOrchestrator
from .pricing import PricingTable
from .provider_manager import ProviderManager
from .providers import AdapterFactory
from .quality import QualityWeights
from .rate_limiter import RateLimiter
from .synthesis import SynthesisEngine, SynthesisOptions

LOGGER = logging.getLogger(__name__)

__all__ = ["build_orchestrator", "effective_provider_config", "effective_strategies", "from_file"]


def _min_defined(*values: float | None) -> float | None:
    defined = [value for value in values if value is not None]
    return min(defined) if defined else None


def effective_provider_config(config: ProviderConfig, app: AppConfig) -> ProviderConfig:
    """Cap the provider timeout with the global request/provider timeouts."""

    cap = _min_defined(app.timeouts.provider_s, app.timeouts.request_s)
    if cap is None or cap >= config.timeout_s:
        return config
    return replace(config, timeout_s=cap)


def effective_strategies(app: AppConfig) -> StrategiesConfig:
    budget = _min_defined(app.strategies.timeout_s, app.timeouts.strategy_s, app.timeouts.total_s)
    if budget is None or budget == app.strategies.timeout_s:
        return app.strategies
    return replace(app.strategies, timeout_s=budget)


async def build_orchestrator(
    config: AppConfig,
    *,
    metrics: MetricsSink | None = None,
    event_logger: EventLogger | None = None,
    adapter_factories: Mapping[str, AdapterFactory] | None = None,
    setup_logging: bool = True,
) -> CollaborationOrchestrator:
    """Register enabled providers and assemble the orchestrator.

    Providers that fail validation, initialization or the first health probe
    are logged and skipped; the remaining ones serve requests.
    """

    if setup_logging:
        configure_logging(config.logging.level, config.logging.format, file=config.logging.file)

    if event_logger is None and config.logging.events_path is not None:
        event_logger = CompositeLogger([JsonlLogger(config.logging.events_path)])
    if metrics is None:
        if config.metrics.enabled:
            metrics = PrometheusMetricsSink(config.metrics.namespace)
        else:
            metrics = NullMetricsSink()

    manager = ProviderManager(
        rate_limiter=RateLimiter(),
        metrics=metrics,
        event_logger=event_logger,
        max_concurrent_providers=config.concurrency.max_concurrent_providers,
        adapter_factories=adapter_factories,
    )
    enabled = config.enabled_providers()
    for provider in enabled:
        try:
            await manager.register_provider(effective_provider_config(provider, config))
        except ProviderInitError as exc:
            LOGGER.warning(
                "skipping provider %s: %s",
                provider.id,
                exc,
                extra={"event": "provider_skipped", "provider": provider.id},
            )
    registered = manager.provider_ids()
    LOGGER.info(
        "%d of %d enabled provider(s) registered",
        len(registered),
        len(enabled),
        extra={"event": "providers_registered", "providers": registered},
    )

    strategies = effective_strategies(config)
    engine = SynthesisEngine(
        SynthesisOptions(
            max_insights=config.synthesis.max_insights,
            max_sentences=config.synthesis.max_sentences,
            similarity_threshold=strategies.similarity_threshold,
            quality_threshold=config.synthesis.quality_threshold,
            weights=QualityWeights.from_mapping(config.synthesis.weights),
        )
    )
    cache = None
    if config.cache.enabled:
        if config.cache.type != "memory":
            raise ConfigError(f"unsupported cache type: {config.cache.type}")
        cache = MemoryCache(
            max_size=config.cache.max_size,
            default_ttl=config.cache.ttl_s,
            eviction=config.cache.eviction,
        )
    return CollaborationOrchestrator(
        manager,
        engine,
        strategy_defaults=strategies,
        default_synthesis_method=config.synthesis.default_method,
        synthesis_enabled=config.synthesis.enabled,
        summarizer_provider=config.synthesis.summarizer_provider,
        cache=cache,
        cache_ttl=config.cache.ttl_s,
        admission=AdmissionController(
            config.concurrency.max_concurrent_requests, config.concurrency.queue_size
        ),
        metrics=metrics,
        pricing=PricingTable.from_providers(config.providers),
        event_logger=event_logger,
    )


async def from_file(path: str | Path, *overlays: str | Path) -> CollaborationOrchestrator:
    return await build_orchestrator(load_config(path, *overlays))
