"""End-to-end collaboration: validate, resolve, run a strategy, synthesize."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Mapping, Sequence
from contextlib import asynccontextmanager
from dataclasses import fields, replace
import logging
import time
from typing import Any
import uuid

from .cache import Cache, SingleFlight, fingerprint
from .config import StrategiesConfig
from .errors import (
    CapacityExceededError,
    CollabError,
    NoValidProvidersError,
    StrategyExecutionError,
    SynthesisError,
    ValidationError,
)
from .metrics import MetricsSink, NullMetricsSink
from .models import (
    CollaborationResult,
    ErrorInfo,
    PerformanceMetrics,
    ProviderOutcome,
    SynthesisMethod,
    SynthesisResult,
    success_flags,
    successful,
)
from .observability import EventLogger
from .pricing import PricingTable
from .provider_manager import ProviderManager
from .provider_spi import Request, TokenUsage, validate_request
from .strategies import (
    STRATEGY_CONFIGS,
    StrategyConfig,
    StrategyRun,
    execute_strategy,
    strategy_from_name,
)
from .synthesis import SynthesisEngine, SynthesisOptions, Summarizer, parse_method, with_prompt

LOGGER = logging.getLogger(__name__)

__all__ = [
    "AdmissionController",
    "CollaborationOrchestrator",
    "new_collaboration_id",
]

_SUMMARY_PROMPT = (
    "Several assistants answered the question below. Write one concise answer that "
    "combines their points and resolves disagreements.\n\nQuestion:\n{prompt}\n\n{answers}"
)


def new_collaboration_id() -> str:
    return f"collab_{uuid.uuid4().hex}"


def _elapsed_ms(start: float) -> int:
    return max(0, int((time.perf_counter() - start) * 1000))


class AdmissionController:
    """Server-wide cap: ``max_concurrent_requests`` running, ``queue_size`` waiting."""

    def __init__(self, max_concurrent_requests: int = 5, queue_size: int = 50) -> None:
        if max_concurrent_requests <= 0:
            raise ValueError("max_concurrent_requests must be positive")
        if queue_size < 0:
            raise ValueError("queue_size must be >= 0")
        self._semaphore = asyncio.Semaphore(max_concurrent_requests)
        self._queue_size = queue_size
        self._waiting = 0
        self._active = 0

    @property
    def active(self) -> int:
        return self._active

    @property
    def waiting(self) -> int:
        return self._waiting

    @asynccontextmanager
    async def slot(self) -> AsyncIterator[None]:
        if self._semaphore.locked() and self._waiting >= self._queue_size:
            raise CapacityExceededError(
                f"request queue is full ({self._waiting} waiting, {self._active} running)"
            )
        self._waiting += 1
        try:
            await self._semaphore.acquire()
        finally:
            self._waiting -= 1
        self._active += 1
        try:
            yield
        finally:
            self._active -= 1
            self._semaphore.release()


class CollaborationOrchestrator:
    """Runs collaborations and never raises for collaboration errors."""

    def __init__(
        self,
        manager: ProviderManager,
        synthesis_engine: SynthesisEngine | None = None,
        *,
        strategy_defaults: StrategiesConfig | None = None,
        default_synthesis_method: SynthesisMethod | str = SynthesisMethod.CONSENSUS,
        synthesis_enabled: bool = True,
        summarizer_provider: str | None = None,
        cache: Cache | None = None,
        cache_ttl: float | None = None,
        admission: AdmissionController | None = None,
        metrics: MetricsSink | None = None,
        pricing: PricingTable | None = None,
        event_logger: EventLogger | None = None,
    ) -> None:
        self._manager = manager
        self._engine = synthesis_engine or SynthesisEngine()
        self._strategy_defaults = strategy_defaults or StrategiesConfig()
        self._default_method = parse_method(default_synthesis_method)
        self._synthesis_enabled = synthesis_enabled
        self._summarizer_provider = summarizer_provider
        self._cache = cache
        self._cache_ttl = cache_ttl
        self._admission = admission or AdmissionController()
        self._metrics: MetricsSink = metrics or NullMetricsSink()
        self._pricing = pricing
        self._event_logger = event_logger
        self._single_flight: SingleFlight[CollaborationResult] = SingleFlight()

    @property
    def manager(self) -> ProviderManager:
        return self._manager

    @property
    def synthesis_engine(self) -> SynthesisEngine:
        return self._engine

    @property
    def strategy_defaults(self) -> StrategiesConfig:
        return self._strategy_defaults

    @property
    def admission(self) -> AdmissionController:
        return self._admission

    async def aclose(self) -> None:
        await self._manager.dispose()

    # resolution -------------------------------------------------------------

    def resolve_strategy(
        self,
        strategy: StrategyConfig | str | None,
        options: Mapping[str, Any] | None = None,
    ) -> StrategyConfig:
        """Turn a name (plus options layered over configured defaults) into a config."""

        if strategy is None:
            strategy = self._strategy_defaults.default
        if not isinstance(strategy, str):
            if options:
                try:
                    return replace(strategy, **dict(options))
                except TypeError as exc:
                    raise ValidationError([f"invalid options for {strategy.name}: {exc}"]) from None
            return strategy
        name = strategy.strip().lower()
        config_cls = STRATEGY_CONFIGS.get(name)
        if config_cls is None:
            raise ValidationError([f"unknown strategy: {strategy}"])
        defaults = self._strategy_defaults
        candidates: dict[str, Any] = {
            "timeout_s": defaults.timeout_s,
            "max_iterations": defaults.max_iterations,
            "consensus_threshold": defaults.consensus_threshold,
            "similarity_threshold": defaults.similarity_threshold,
            "improvement_threshold": defaults.improvement_threshold,
        }
        accepted = {item.name for item in fields(config_cls)}
        merged = {key: value for key, value in candidates.items() if key in accepted}
        merged.update(options or {})
        return strategy_from_name(name, **merged)

    def resolve_providers(self, provider_ids: Sequence[str] | None) -> list[str]:
        if provider_ids is None:
            resolved = self._manager.provider_ids(healthy_only=True)
            if not resolved:
                raise NoValidProvidersError("no healthy providers are registered")
            return resolved
        resolved = []
        dropped = []
        for provider_id in provider_ids:
            if provider_id in resolved:
                continue
            if self._manager.is_healthy(provider_id):
                resolved.append(provider_id)
            else:
                dropped.append(provider_id)
        if dropped:
            LOGGER.info(
                "dropping unknown or unhealthy providers: %s",
                ", ".join(dropped),
                extra={"event": "providers_dropped", "providers": dropped},
            )
        if not resolved:
            requested = ", ".join(provider_ids) or "<none>"
            raise NoValidProvidersError(f"none of the requested providers are available: {requested}")
        return resolved

    def _summarizer(self) -> Summarizer | None:
        provider_id = self._summarizer_provider
        if provider_id is None:
            return None

        async def summarize(prompt: str, texts: Sequence[str]) -> str:
            answers = "\n\n".join(f"Answer {index}:\n{text}" for index, text in enumerate(texts, 1))
            request = Request(prompt=_SUMMARY_PROMPT.format(prompt=prompt, answers=answers))
            outcome = await self._manager.call(provider_id, request)
            if not outcome.success or outcome.content is None:
                message = outcome.error.message if outcome.error else "no content"
                raise SynthesisError(f"summarizer {provider_id} failed: {message}")
            return outcome.content

        return summarize

    def _synthesis_options(
        self, options: SynthesisOptions | None, request: Request
    ) -> SynthesisOptions:
        resolved = with_prompt(options or self._engine.default_options, request.prompt)
        if resolved.summarizer is None:
            summarizer = self._summarizer()
            if summarizer is not None:
                resolved = replace(resolved, summarizer=summarizer)
        return resolved

    # execution --------------------------------------------------------------

    async def execute(
        self,
        request: Request,
        strategy: StrategyConfig | str | None = None,
        provider_ids: Sequence[str] | None = None,
        strategy_config: Mapping[str, Any] | None = None,
        synthesis_options: SynthesisOptions | None = None,
        *,
        synthesis_method: SynthesisMethod | str | None = None,
        use_cache: bool = True,
    ) -> CollaborationResult:
        start = time.perf_counter()
        collaboration_id = new_collaboration_id()
        strategy_name = strategy if isinstance(strategy, str) else getattr(
            strategy, "name", self._strategy_defaults.default
        )
        try:
            validation = validate_request(request)
            if not validation.valid:
                raise ValidationError(validation.errors)
            config = self.resolve_strategy(strategy, strategy_config)
            strategy_name = config.name
            method = parse_method(synthesis_method or self._default_method)
            options = self._synthesis_options(synthesis_options, request)
            providers = self.resolve_providers(provider_ids)

            key = fingerprint(
                request,
                config,
                providers,
                {
                    "synthesis_method": method.value,
                    "synthesis_enabled": self._synthesis_enabled,
                    "weights": options.weights.as_dict(),
                    "max_insights": options.max_insights,
                    "max_sentences": options.max_sentences,
                    "similarity_threshold": options.similarity_threshold,
                    "quality_threshold": options.quality_threshold,
                },
            )
            if self._cache is not None and use_cache:
                cached = await self._cache.get(key)
                if isinstance(cached, CollaborationResult):
                    self._metrics.increment("cache_requests_total", tags={"result": "hit"})
                    return self._reissue(cached, collaboration_id)
                self._metrics.increment("cache_requests_total", tags={"result": "miss"})

            async def compute() -> CollaborationResult:
                async with self._admission.slot():
                    computed = await self._run(
                        collaboration_id, request, config, providers, method, options, start
                    )
                if self._cache is not None and use_cache and computed.success:
                    await self._cache.set(key, computed, self._cache_ttl)
                return computed

            result, shared = await self._single_flight.run(key, compute)
            if shared:
                return self._reissue(result, collaboration_id)
            return result
        except CollabError as exc:
            if isinstance(exc, CapacityExceededError):
                self._metrics.increment("admission_rejected_total")
            outcomes = exc.outcomes if isinstance(exc, StrategyExecutionError) else []
            return self._failed(collaboration_id, strategy_name, exc, start, outcomes)
        except Exception as exc:
            LOGGER.exception(
                "collaboration %s failed unexpectedly",
                collaboration_id,
                extra={"event": "collaboration_internal_error", "collaboration_id": collaboration_id},
            )
            return self._failed(collaboration_id, strategy_name, exc, start, [])

    @staticmethod
    def _reissue(result: CollaborationResult, collaboration_id: str) -> CollaborationResult:
        return replace(
            result,
            collaboration_id=collaboration_id,
            metrics=replace(result.metrics, cache_hit=True),
        )

    async def _run(
        self,
        collaboration_id: str,
        request: Request,
        config: StrategyConfig,
        providers: Sequence[str],
        method: SynthesisMethod,
        options: SynthesisOptions,
        start: float,
    ) -> CollaborationResult:
        LOGGER.info(
            "collaboration %s started: %s over %s",
            collaboration_id,
            config.name,
            ", ".join(providers),
            extra={
                "event": "collaboration_started",
                "collaboration_id": collaboration_id,
                "strategy": config.name,
            },
        )
        strategy_start = time.perf_counter()
        run = await execute_strategy(
            config, self._manager, request, providers, scorer=self._engine.score
        )
        strategy_ms = _elapsed_ms(strategy_start)

        synthesis_start = time.perf_counter()
        synthesis, synthesis_error = await self._synthesize(run, method, options)
        synthesis_ms = _elapsed_ms(synthesis_start)

        success, partial = success_flags(run.outcomes)
        result = CollaborationResult(
            collaboration_id=collaboration_id,
            success=success,
            partial_success=partial,
            strategy=config.name,
            outcomes=tuple(run.outcomes),
            synthesis=synthesis,
            synthesis_error=synthesis_error,
            metrics=self._performance(run, start, strategy_ms, synthesis_ms),
            strategy_details=run.details(),
        )
        self._record(result)
        return result

    async def _synthesize(
        self, run: StrategyRun, method: SynthesisMethod, options: SynthesisOptions
    ) -> tuple[SynthesisResult | None, str | None]:
        succeeded = successful(run.outcomes)
        if not succeeded:
            return None, "no successful responses to synthesize"
        if not self._synthesis_enabled:
            first = succeeded[0]
            return (
                SynthesisResult(
                    content=first.content or "",
                    confidence=0.0,
                    consensus_level=run.consensus_level if run.consensus_level is not None else 0.0,
                    key_insights=(),
                    method=SynthesisMethod.PASSTHROUGH,
                    sources=(first.provider_id,),
                ),
                None,
            )
        start = time.perf_counter()
        try:
            result = await self._engine.synthesize(run.outcomes, method, options)
        except Exception as exc:
            self._metrics.increment(
                "synthesis_total", tags={"method": method.value, "status": "error"}
            )
            if method is SynthesisMethod.BEST_OF:
                return None, str(exc)
            LOGGER.warning(
                "%s synthesis failed (%s); falling back to best_of",
                method.value,
                exc,
                extra={"event": "synthesis_degraded", "method": method.value},
            )
            try:
                result = await self._engine.synthesize(run.outcomes, SynthesisMethod.BEST_OF, options)
            except SynthesisError as fallback_exc:
                return None, str(fallback_exc)
            fallback_metadata = dict(result.metadata)
            fallback_metadata["degraded_from"] = method.value
            fallback_metadata["degraded_reason"] = str(exc)
            result = replace(result, metadata=fallback_metadata)
            return result, str(exc)
        self._metrics.increment("synthesis_total", tags={"method": method.value, "status": "ok"})
        self._metrics.observe(
            "synthesis_latency_ms", float(_elapsed_ms(start)), tags={"method": method.value}
        )
        return result, None

    def _performance(
        self, run: StrategyRun, start: float, strategy_ms: int, synthesis_ms: int
    ) -> PerformanceMetrics:
        usage: dict[str, TokenUsage] = {}
        for outcome in run.history:
            if outcome.response is None:
                continue
            current = usage.get(outcome.provider_id, TokenUsage())
            usage[outcome.provider_id] = current + outcome.response.token_usage
        cost = self._pricing.costs(usage) if self._pricing else None
        return PerformanceMetrics(
            total_time_ms=_elapsed_ms(start),
            strategy_time_ms=strategy_ms,
            synthesis_time_ms=synthesis_ms,
            provider_count=len(run.outcomes),
            success_count=len(successful(run.outcomes)),
            token_usage=usage,
            cost_usd=cost,
        )

    def _failed(
        self,
        collaboration_id: str,
        strategy: str,
        error: BaseException,
        start: float,
        outcomes: Sequence[ProviderOutcome],
    ) -> CollaborationResult:
        info = ErrorInfo.from_exception(error)
        typed_outcomes = tuple(item for item in outcomes if isinstance(item, ProviderOutcome))
        result = CollaborationResult(
            collaboration_id=collaboration_id,
            success=False,
            partial_success=False,
            strategy=strategy,
            outcomes=typed_outcomes,
            metrics=PerformanceMetrics(
                total_time_ms=_elapsed_ms(start),
                provider_count=len(typed_outcomes),
                success_count=len(successful(typed_outcomes)),
            ),
            error=info,
        )
        LOGGER.warning(
            "collaboration %s rejected: %s",
            collaboration_id,
            info.message,
            extra={
                "event": "collaboration_failed",
                "collaboration_id": collaboration_id,
                "error_kind": info.kind.value,
            },
        )
        self._record(result)
        return result

    def _record(self, result: CollaborationResult) -> None:
        if result.error is not None:
            status = result.error.kind.value
        elif result.partial_success:
            status = "partial"
        else:
            status = "ok" if result.success else "failed"
        self._metrics.increment(
            "collaboration_total", tags={"strategy": result.strategy, "status": status}
        )
        self._metrics.observe(
            "collaboration_latency_ms",
            float(result.metrics.total_time_ms),
            tags={"strategy": result.strategy},
        )
        if self._event_logger is not None:
            self._event_logger.emit(
                "collaboration",
                {
                    "collaboration_id": result.collaboration_id,
                    "strategy": result.strategy,
                    "status": status,
                    "providers": [outcome.provider_id for outcome in result.outcomes],
                    "success_count": result.metrics.success_count,
                    "latency_ms": result.metrics.total_time_ms,
                    "total_tokens": result.metrics.total_tokens,
                    "cost_usd": result.metrics.total_cost_usd,
                },
            )
