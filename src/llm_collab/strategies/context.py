"""Strategy configuration variants and the per-run record."""

from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from enum import Enum
import math
import time
from typing import Any, ClassVar, Protocol, Union

from ..errors import StrategyExecutionError
from ..models import ProviderOutcome, successful
from ..provider_spi import Request, Response
from ..similarity import DEFAULT_SIMILARITY_THRESHOLD

__all__ = [
    "ConsensusConfig",
    "IterativeConfig",
    "ParallelConfig",
    "ProviderGateway",
    "ResponseScorer",
    "RoundRecord",
    "SequentialConfig",
    "StrategyConfig",
    "StrategyContext",
    "StrategyRun",
    "StrategyState",
]

DEFAULT_TIMEOUT_S = 60.0


class ProviderGateway(Protocol):
    async def fan_out(
        self, provider_ids: Sequence[str], request: Request, deadline_s: float | None = None
    ) -> list[ProviderOutcome]: ...


ResponseScorer = Callable[[str, Sequence[Response]], list[float]]


class StrategyState(str, Enum):
    PENDING = "pending"
    DISPATCHING = "dispatching"
    COLLECTING = "collecting"
    EVALUATING = "evaluating"
    COMPLETED = "completed"
    FAILED = "failed"


def _check_timeout(timeout_s: float | None, problems: list[str]) -> None:
    if timeout_s is not None and (math.isnan(timeout_s) or timeout_s <= 0):
        problems.append("timeout_s must be positive")


def _check_ratio(name: str, value: float, problems: list[str]) -> None:
    if math.isnan(value) or not 0.0 <= value <= 1.0:
        problems.append(f"{name} must be within [0, 1]")


@dataclass(frozen=True)
class ParallelConfig:
    name: ClassVar[str] = "parallel"

    timeout_s: float | None = DEFAULT_TIMEOUT_S

    def problems(self) -> list[str]:
        problems: list[str] = []
        _check_timeout(self.timeout_s, problems)
        return problems


@dataclass(frozen=True)
class SequentialConfig:
    name: ClassVar[str] = "sequential"

    timeout_s: float | None = DEFAULT_TIMEOUT_S
    fail_fast: bool = False
    pass_context: bool = False

    def problems(self) -> list[str]:
        problems: list[str] = []
        _check_timeout(self.timeout_s, problems)
        return problems


@dataclass(frozen=True)
class ConsensusConfig:
    name: ClassVar[str] = "consensus"

    timeout_s: float | None = DEFAULT_TIMEOUT_S
    consensus_threshold: float = 0.7
    similarity_threshold: float = DEFAULT_SIMILARITY_THRESHOLD
    max_iterations: int = 3

    def problems(self) -> list[str]:
        problems: list[str] = []
        _check_timeout(self.timeout_s, problems)
        _check_ratio("consensus_threshold", self.consensus_threshold, problems)
        _check_ratio("similarity_threshold", self.similarity_threshold, problems)
        if self.max_iterations <= 0:
            problems.append("max_iterations must be positive")
        return problems


@dataclass(frozen=True)
class IterativeConfig:
    name: ClassVar[str] = "iterative"

    timeout_s: float | None = DEFAULT_TIMEOUT_S
    max_iterations: int = 3
    improvement_threshold: float = 0.05
    rotate_providers: bool = False

    def problems(self) -> list[str]:
        problems: list[str] = []
        _check_timeout(self.timeout_s, problems)
        if self.max_iterations <= 0:
            problems.append("max_iterations must be positive")
        if math.isnan(self.improvement_threshold) or self.improvement_threshold < 0:
            problems.append("improvement_threshold must be >= 0")
        return problems


StrategyConfig = Union[ParallelConfig, SequentialConfig, ConsensusConfig, IterativeConfig]


@dataclass(frozen=True)
class RoundRecord:
    index: int
    outcomes: tuple[ProviderOutcome, ...]
    consensus_level: float

    @property
    def success_count(self) -> int:
        return len(successful(self.outcomes))

    @property
    def execution_time_ms(self) -> int:
        return max((outcome.execution_time_ms for outcome in self.outcomes), default=0)


@dataclass
class StrategyRun:
    """State history and outcomes of one strategy execution."""

    strategy: str
    state: StrategyState = StrategyState.PENDING
    states: list[StrategyState] = field(default_factory=lambda: [StrategyState.PENDING])
    outcomes: list[ProviderOutcome] = field(default_factory=list)
    history: list[ProviderOutcome] = field(default_factory=list)
    rounds: list[RoundRecord] = field(default_factory=list)
    consensus_level: float | None = None
    iterations: int = 0
    execution_time_ms: int = 0
    scores: list[float] = field(default_factory=list)

    def transition(self, state: StrategyState) -> None:
        if self.state in (StrategyState.COMPLETED, StrategyState.FAILED):
            raise StrategyExecutionError(
                f"cannot move from {self.state.value} to {state.value}", outcomes=self.outcomes
            )
        self.state = state
        self.states.append(state)

    def finish(self) -> None:
        """Close the run; only runs with a successful outcome pass through evaluating."""

        if not successful(self.outcomes):
            self.transition(StrategyState.FAILED)
            return
        if self.state is not StrategyState.EVALUATING:
            self.transition(StrategyState.EVALUATING)
        self.transition(StrategyState.COMPLETED)

    def details(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "state": self.state.value,
            "states": [state.value for state in self.states],
            "execution_time_ms": self.execution_time_ms,
            "iterations": self.iterations,
        }
        if self.consensus_level is not None:
            payload["consensus_level"] = self.consensus_level
        if self.rounds:
            payload["rounds"] = [
                {
                    "index": record.index,
                    "consensus_level": record.consensus_level,
                    "success_count": record.success_count,
                    "providers": [outcome.provider_id for outcome in record.outcomes],
                }
                for record in self.rounds
            ]
        if self.scores:
            payload["scores"] = list(self.scores)
        return payload


@dataclass
class StrategyContext:
    gateway: ProviderGateway
    request: Request
    provider_ids: Sequence[str]
    scorer: ResponseScorer | None = None
    clock: Callable[[], float] = time.monotonic
    started: float = field(init=False)

    def __post_init__(self) -> None:
        self.started = self.clock()

    def remaining(self, timeout_s: float | None) -> float | None:
        """Seconds left of ``timeout_s`` measured from context creation."""

        if timeout_s is None:
            return None
        return max(0.0, timeout_s - (self.clock() - self.started))
