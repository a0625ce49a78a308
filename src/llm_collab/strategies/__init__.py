"""Strategy dispatch."""

from __future__ import annotations

from collections.abc import Callable, Sequence
import logging
import time
from typing import Any

from ..errors import CollabError, StrategyExecutionError, ValidationError
from ..provider_spi import Request
from .consensus import run_consensus
from .context import (
    ConsensusConfig,
    IterativeConfig,
    ParallelConfig,
    ProviderGateway,
    ResponseScorer,
    RoundRecord,
    SequentialConfig,
    StrategyConfig,
    StrategyContext,
    StrategyRun,
    StrategyState,
)
from .iterative import run_iterative
from .parallel import run_parallel
from .sequential import run_sequential

LOGGER = logging.getLogger(__name__)

STRATEGY_CONFIGS: dict[str, type[StrategyConfig]] = {
    "parallel": ParallelConfig,
    "sequential": SequentialConfig,
    "consensus": ConsensusConfig,
    "iterative": IterativeConfig,
}


def strategy_from_name(name: str, **options: Any) -> StrategyConfig:
    """Build the config variant for ``name``; unknown names or options raise."""

    key = str(name).strip().lower()
    config_cls = STRATEGY_CONFIGS.get(key)
    if config_cls is None:
        raise ValidationError([f"unknown strategy: {name}"])
    try:
        return config_cls(**options)
    except TypeError as exc:
        raise ValidationError([f"invalid options for {key}: {exc}"]) from None


async def execute_strategy(
    config: StrategyConfig,
    gateway: ProviderGateway,
    request: Request,
    provider_ids: Sequence[str],
    *,
    scorer: ResponseScorer | None = None,
    clock: Callable[[], float] | None = None,
) -> StrategyRun:
    """Run ``config`` over ``provider_ids``.

    Provider failures are reported through the run's outcomes.
    :class:`StrategyExecutionError` signals malformed configuration or an
    internal fault and carries whatever outcomes were collected.
    """

    if not isinstance(config, (ParallelConfig, SequentialConfig, ConsensusConfig, IterativeConfig)):
        raise StrategyExecutionError(f"unsupported strategy config: {type(config).__name__}")
    problems = config.problems()
    if not provider_ids:
        problems.insert(0, "provider list must not be empty")
    if problems:
        raise StrategyExecutionError("; ".join(problems))

    context = StrategyContext(
        gateway=gateway,
        request=request,
        provider_ids=list(provider_ids),
        scorer=scorer,
        clock=clock or time.monotonic,
    )
    run = StrategyRun(strategy=config.name)
    try:
        if isinstance(config, ParallelConfig):
            return await run_parallel(context, config, run)
        if isinstance(config, SequentialConfig):
            return await run_sequential(context, config, run)
        if isinstance(config, ConsensusConfig):
            return await run_consensus(context, config, run)
        return await run_iterative(context, config, run)
    except StrategyExecutionError as exc:
        if not exc.outcomes:
            exc.outcomes = list(run.history)
        raise
    except CollabError as exc:
        raise StrategyExecutionError(
            f"{config.name} strategy failed: {exc}", outcomes=run.history
        ) from exc
    except Exception as exc:
        LOGGER.exception(
            "internal fault in %s strategy",
            config.name,
            extra={"event": "strategy_internal_error", "strategy": config.name},
        )
        raise StrategyExecutionError(f"internal fault: {exc}", outcomes=run.history) from exc


__all__ = [
    "STRATEGY_CONFIGS",
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
    "execute_strategy",
    "strategy_from_name",
]
