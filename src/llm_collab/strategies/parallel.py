"""Parallel strategy: every provider at once under one deadline."""

from __future__ import annotations

import logging

from .context import ParallelConfig, StrategyContext, StrategyRun, StrategyState

LOGGER = logging.getLogger(__name__)

__all__ = ["run_parallel"]


async def run_parallel(
    context: StrategyContext, config: ParallelConfig, run: StrategyRun
) -> StrategyRun:
    run.transition(StrategyState.DISPATCHING)
    outcomes = await context.gateway.fan_out(
        context.provider_ids, context.request, context.remaining(config.timeout_s)
    )
    run.transition(StrategyState.COLLECTING)
    run.outcomes = list(outcomes)
    run.history = list(outcomes)
    run.iterations = 1
    run.execution_time_ms = max((outcome.execution_time_ms for outcome in outcomes), default=0)
    run.finish()
    LOGGER.debug(
        "parallel run finished with %d/%d successes",
        sum(1 for outcome in outcomes if outcome.success),
        len(outcomes),
        extra={"event": "strategy_finished", "strategy": config.name},
    )
    return run
