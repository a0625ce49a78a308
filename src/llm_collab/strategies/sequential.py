"""Sequential strategy: providers one at a time in caller order."""

from __future__ import annotations

import logging

from ..models import ProviderOutcome
from ..provider_spi import Request
from .context import SequentialConfig, StrategyContext, StrategyRun, StrategyState

LOGGER = logging.getLogger(__name__)

__all__ = ["run_sequential"]


def _with_previous_answer(request: Request, outcome: ProviderOutcome) -> Request:
    block = f"Previous answer from {outcome.provider_id}:\n{outcome.content}"
    return request.derive(context=(*request.context, block))


async def run_sequential(
    context: StrategyContext, config: SequentialConfig, run: StrategyRun
) -> StrategyRun:
    request = context.request
    for provider_id in context.provider_ids:
        remaining = context.remaining(config.timeout_s)
        if remaining is not None and remaining <= 0.0:
            LOGGER.warning(
                "sequential budget exhausted before %s",
                provider_id,
                extra={"event": "strategy_budget_exhausted", "provider": provider_id},
            )
            break
        run.transition(StrategyState.DISPATCHING)
        (outcome,) = await context.gateway.fan_out([provider_id], request, remaining)
        run.transition(StrategyState.COLLECTING)
        run.outcomes.append(outcome)
        run.history.append(outcome)
        run.iterations += 1
        if not outcome.success:
            if config.fail_fast:
                break
            continue
        if config.pass_context:
            request = _with_previous_answer(request, outcome)
    run.execution_time_ms = sum(outcome.execution_time_ms for outcome in run.outcomes)
    run.finish()
    return run
