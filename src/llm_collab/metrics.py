"""Write-only metrics sinks."""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Mapping
from dataclasses import dataclass
import logging
from threading import Lock
from typing import Protocol

from prometheus_client import CollectorRegistry, Counter, Histogram

LOGGER = logging.getLogger(__name__)

Tags = Mapping[str, str]


class MetricsSink(Protocol):
    def increment(self, name: str, value: float = 1.0, tags: Tags | None = None) -> None: ...
    def observe(self, name: str, value: float, tags: Tags | None = None) -> None: ...


@dataclass(frozen=True)
class MetricSpec:
    kind: str
    documentation: str
    labels: tuple[str, ...]


METRICS: dict[str, MetricSpec] = {
    "collaboration_total": MetricSpec(
        "counter", "Collaborations by strategy and status.", ("strategy", "status")
    ),
    "collaboration_latency_ms": MetricSpec(
        "histogram", "End-to-end collaboration latency (ms).", ("strategy",)
    ),
    "provider_call_total": MetricSpec(
        "counter", "Provider calls by outcome.", ("provider", "status")
    ),
    "provider_call_latency_ms": MetricSpec(
        "histogram", "Latency of provider calls (ms).", ("provider",)
    ),
    "provider_tokens_total": MetricSpec(
        "counter", "Tokens exchanged with providers.", ("provider", "direction")
    ),
    "provider_retry_total": MetricSpec("counter", "Retries scheduled.", ("provider",)),
    "rate_limit_hit_total": MetricSpec(
        "counter", "Calls rejected by rate limiting.", ("provider",)
    ),
    "cache_requests_total": MetricSpec("counter", "Cache lookups.", ("result",)),
    "synthesis_total": MetricSpec("counter", "Syntheses by method.", ("method", "status")),
    "synthesis_latency_ms": MetricSpec("histogram", "Synthesis latency (ms).", ("method",)),
    "admission_rejected_total": MetricSpec(
        "counter", "Requests rejected because the queue was full.", ()
    ),
}

_LATENCY_BUCKETS_MS = (5, 10, 25, 50, 100, 250, 500, 1000, 2500, 5000, 10000, 30000, 60000)


class NullMetricsSink:
    def increment(self, name: str, value: float = 1.0, tags: Tags | None = None) -> None:
        return None

    def observe(self, name: str, value: float, tags: Tags | None = None) -> None:
        return None


class RecordingMetricsSink:
    """Accumulate metrics in memory keyed by ``(name, sorted tags)``."""

    def __init__(self) -> None:
        self._lock = Lock()
        self.counters: dict[tuple[str, tuple[tuple[str, str], ...]], float] = defaultdict(float)
        self.observations: dict[tuple[str, tuple[tuple[str, str], ...]], list[float]] = (
            defaultdict(list)
        )

    @staticmethod
    def _key(name: str, tags: Tags | None) -> tuple[str, tuple[tuple[str, str], ...]]:
        return name, tuple(sorted((tags or {}).items()))

    def increment(self, name: str, value: float = 1.0, tags: Tags | None = None) -> None:
        with self._lock:
            self.counters[self._key(name, tags)] += value

    def observe(self, name: str, value: float, tags: Tags | None = None) -> None:
        with self._lock:
            self.observations[self._key(name, tags)].append(value)

    def count(self, name: str, **tags: str) -> float:
        """Sum counters named ``name`` whose tags include ``tags``."""

        with self._lock:
            return sum(
                value
                for (metric, metric_tags), value in self.counters.items()
                if metric == name and set(tags.items()) <= set(metric_tags)
            )


class PrometheusMetricsSink:
    """Translate sink calls into Prometheus counters and histograms."""

    def __init__(
        self,
        namespace: str = "llm_collab",
        *,
        registry: CollectorRegistry | None = None,
    ) -> None:
        self.registry = registry if registry is not None else CollectorRegistry()
        self._counters: dict[str, Counter] = {}
        self._histograms: dict[str, Histogram] = {}
        for name, spec in METRICS.items():
            full_name = f"{namespace}_{name}"
            if spec.kind == "counter":
                self._counters[name] = Counter(
                    full_name, spec.documentation, spec.labels, registry=self.registry
                )
            else:
                self._histograms[name] = Histogram(
                    full_name,
                    spec.documentation,
                    spec.labels,
                    buckets=_LATENCY_BUCKETS_MS,
                    registry=self.registry,
                )

    @staticmethod
    def _label_values(name: str, tags: Tags | None) -> dict[str, str]:
        labels = METRICS[name].labels
        source = tags or {}
        return {label: str(source.get(label, "unknown")) for label in labels}

    def increment(self, name: str, value: float = 1.0, tags: Tags | None = None) -> None:
        counter = self._counters.get(name)
        if counter is None:
            LOGGER.debug("ignoring unknown counter %s", name)
            return
        labels = self._label_values(name, tags)
        (counter.labels(**labels) if labels else counter).inc(value)

    def observe(self, name: str, value: float, tags: Tags | None = None) -> None:
        histogram = self._histograms.get(name)
        if histogram is None:
            LOGGER.debug("ignoring unknown histogram %s", name)
            return
        if value < 0:
            return
        labels = self._label_values(name, tags)
        (histogram.labels(**labels) if labels else histogram).observe(value)


__all__ = [
    "METRICS",
    "MetricSpec",
    "MetricsSink",
    "NullMetricsSink",
    "PrometheusMetricsSink",
    "RecordingMetricsSink",
]
