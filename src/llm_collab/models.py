"""Outcome, health, statistics and result models."""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from enum import Enum
from threading import Lock
import time
from typing import Any

from .errors import CollabError, ErrorKind, classify_error
from .provider_spi import Response, TokenUsage


class SynthesisMethod(str, Enum):
    CONSENSUS = "consensus"
    WEIGHTED_MERGE = "weighted_merge"
    BEST_OF = "best_of"
    COMPREHENSIVE = "comprehensive"
    EXTRACTIVE = "extractive"
    ABSTRACTIVE = "abstractive"
    PASSTHROUGH = "passthrough"


@dataclass(frozen=True)
class ErrorInfo:
    kind: ErrorKind
    message: str
    attempts: int = 0
    details: tuple[str, ...] = ()

    @classmethod
    def from_exception(cls, error: BaseException) -> ErrorInfo:
        kind = classify_error(error)
        details: tuple[str, ...] = tuple(getattr(error, "violations", ()) or ())
        attempts = error.attempts if isinstance(error, CollabError) else 0
        message = str(error) or type(error).__name__
        return cls(kind=kind, message=message, attempts=attempts, details=details)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"kind": self.kind.value, "message": self.message}
        if self.attempts:
            payload["attempts"] = self.attempts
        if self.details:
            payload["details"] = list(self.details)
        return payload


@dataclass(frozen=True)
class ProviderOutcome:
    provider_id: str
    success: bool
    response: Response | None = None
    error: ErrorInfo | None = None
    execution_time_ms: int = 0

    @classmethod
    def ok(cls, provider_id: str, response: Response, execution_time_ms: int) -> ProviderOutcome:
        return cls(
            provider_id=provider_id,
            success=True,
            response=response,
            execution_time_ms=execution_time_ms,
        )

    @classmethod
    def failed(
        cls, provider_id: str, error: BaseException | ErrorInfo, execution_time_ms: int
    ) -> ProviderOutcome:
        info = error if isinstance(error, ErrorInfo) else ErrorInfo.from_exception(error)
        return cls(
            provider_id=provider_id,
            success=False,
            error=info,
            execution_time_ms=execution_time_ms,
        )

    @property
    def content(self) -> str | None:
        return self.response.content if self.response is not None else None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "provider": self.provider_id,
            "success": self.success,
            "execution_time_ms": self.execution_time_ms,
        }
        if self.response is not None:
            usage = self.response.token_usage
            payload["response"] = {
                "content": self.response.content,
                "model": self.response.model,
                "finish_reason": self.response.finish_reason,
                "latency_ms": self.response.latency_ms,
                "timestamp": self.response.timestamp,
                "usage": {
                    "prompt_tokens": usage.prompt,
                    "completion_tokens": usage.completion,
                    "total_tokens": usage.total,
                },
                "metadata": dict(self.response.metadata),
            }
        if self.error is not None:
            payload["error"] = self.error.to_dict()
        return payload


def successful(outcomes: Sequence[ProviderOutcome]) -> list[ProviderOutcome]:
    return [outcome for outcome in outcomes if outcome.success and outcome.response is not None]


@dataclass(frozen=True)
class ProviderHealth:
    healthy: bool
    last_latency_ms: int | None = None
    last_checked: float = field(default_factory=time.time)
    last_error: str | None = None


@dataclass(frozen=True)
class ProviderStatsSnapshot:
    total_requests: int
    successful_requests: int
    failed_requests: int
    retries: int
    rate_limit_hits: int
    average_latency_ms: float


class ProviderStats:
    """Cumulative per-provider counters mutated only through ``record_*``."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._total = 0
        self._success = 0
        self._failure = 0
        self._retries = 0
        self._rate_limit_hits = 0
        self._latency_total_ms = 0.0

    def record_success(self, latency_ms: int) -> None:
        with self._lock:
            self._total += 1
            self._success += 1
            self._latency_total_ms += max(0, latency_ms)

    def record_failure(self) -> None:
        with self._lock:
            self._total += 1
            self._failure += 1

    def record_retry(self) -> None:
        with self._lock:
            self._retries += 1

    def record_rate_limit_hit(self) -> None:
        with self._lock:
            self._rate_limit_hits += 1

    def reset(self) -> None:
        with self._lock:
            self._total = 0
            self._success = 0
            self._failure = 0
            self._retries = 0
            self._rate_limit_hits = 0
            self._latency_total_ms = 0.0

    def snapshot(self) -> ProviderStatsSnapshot:
        with self._lock:
            average = self._latency_total_ms / self._success if self._success else 0.0
            return ProviderStatsSnapshot(
                total_requests=self._total,
                successful_requests=self._success,
                failed_requests=self._failure,
                retries=self._retries,
                rate_limit_hits=self._rate_limit_hits,
                average_latency_ms=average,
            )


@dataclass(frozen=True)
class SynthesisResult:
    content: str
    confidence: float
    consensus_level: float
    key_insights: tuple[str, ...]
    method: SynthesisMethod
    quality_scores: Mapping[str, float] = field(default_factory=dict)
    sources: tuple[str, ...] = ()
    metadata: Mapping[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "content": self.content,
            "confidence": self.confidence,
            "consensus_level": self.consensus_level,
            "key_insights": list(self.key_insights),
            "method": self.method.value,
            "quality_scores": dict(self.quality_scores),
            "sources": list(self.sources),
            "metadata": dict(self.metadata),
        }


@dataclass(frozen=True)
class PerformanceMetrics:
    total_time_ms: int = 0
    strategy_time_ms: int = 0
    synthesis_time_ms: int = 0
    provider_count: int = 0
    success_count: int = 0
    token_usage: Mapping[str, TokenUsage] = field(default_factory=dict)
    cost_usd: Mapping[str, float] | None = None
    cache_hit: bool = False

    @property
    def total_tokens(self) -> int:
        return sum(usage.total for usage in self.token_usage.values())

    @property
    def total_cost_usd(self) -> float | None:
        if self.cost_usd is None:
            return None
        return round(sum(self.cost_usd.values()), 6)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "total_time_ms": self.total_time_ms,
            "strategy_time_ms": self.strategy_time_ms,
            "synthesis_time_ms": self.synthesis_time_ms,
            "provider_count": self.provider_count,
            "success_count": self.success_count,
            "total_tokens": self.total_tokens,
            "token_usage": {
                provider: {
                    "prompt_tokens": usage.prompt,
                    "completion_tokens": usage.completion,
                    "total_tokens": usage.total,
                }
                for provider, usage in self.token_usage.items()
            },
            "cache_hit": self.cache_hit,
        }
        if self.cost_usd is not None:
            payload["cost_usd"] = dict(self.cost_usd)
            payload["total_cost_usd"] = self.total_cost_usd
        return payload


@dataclass(frozen=True)
class CollaborationResult:
    collaboration_id: str
    success: bool
    partial_success: bool
    strategy: str
    outcomes: tuple[ProviderOutcome, ...] = ()
    synthesis: SynthesisResult | None = None
    synthesis_error: str | None = None
    metrics: PerformanceMetrics = field(default_factory=PerformanceMetrics)
    error: ErrorInfo | None = None
    strategy_details: Mapping[str, Any] = field(default_factory=dict)

    @property
    def content(self) -> str | None:
        return self.synthesis.content if self.synthesis is not None else None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "collaboration_id": self.collaboration_id,
            "success": self.success,
            "partial_success": self.partial_success,
            "strategy": self.strategy,
            "responses": [outcome.to_dict() for outcome in self.outcomes],
            "synthesis": self.synthesis.to_dict() if self.synthesis is not None else None,
            "metrics": self.metrics.to_dict(),
            "strategy_details": dict(self.strategy_details),
        }
        if self.synthesis_error is not None:
            payload["synthesis_error"] = self.synthesis_error
        if self.error is not None:
            payload["error"] = self.error.to_dict()
        return payload


def success_flags(outcomes: Sequence[ProviderOutcome]) -> tuple[bool, bool]:
    """Return ``(success, partial_success)`` for the attempted ``outcomes``."""

    attempted = len(outcomes)
    succeeded = len(successful(outcomes))
    return succeeded >= 1, 0 < succeeded < attempted


__all__ = [
    "CollaborationResult",
    "ErrorInfo",
    "PerformanceMetrics",
    "ProviderHealth",
    "ProviderOutcome",
    "ProviderStats",
    "ProviderStatsSnapshot",
    "SynthesisMethod",
    "SynthesisResult",
    "success_flags",
    "successful",
]
