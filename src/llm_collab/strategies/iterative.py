"""Iterative strategy: draft once, then refine the best answer so far."""

from __future__ import annotations

import logging

from ..models import ProviderOutcome
from ..provider_spi import Request, Response
from ..quality import score_responses
from .context import IterativeConfig, StrategyContext, StrategyRun, StrategyState

LOGGER = logging.getLogger(__name__)

__all__ = ["refinement_request", "run_iterative"]


def refinement_request(base: Request, answer: str) -> Request:
    prompt = (
        "Improve the answer below. Fix mistakes, fill gaps and keep what is already good. "
        "Reply with the improved answer only.\n\n"
        f"Question:\n{base.prompt}\n\nCurrent answer:\n{answer}"
    )
    return base.derive(prompt=prompt)


def _score(context: StrategyContext, response: Response) -> float:
    if context.scorer is not None:
        return context.scorer(context.request.prompt, [response])[0]
    return score_responses(context.request.prompt, [response])[0].overall


async def run_iterative(
    context: StrategyContext, config: IterativeConfig, run: StrategyRun
) -> StrategyRun:
    """Every provider call counts as one iteration.

    Until a draft exists, a failed call moves on to the next provider. Once a
    draft exists the same provider refines it, or the next one in order with
    ``rotate_providers``. The run stops when a refinement improves the score
    by less than ``improvement_threshold`` or fails.
    """

    providers = list(context.provider_ids)
    best_by_provider: dict[str, tuple[ProviderOutcome, float | None]] = {}
    best: tuple[ProviderOutcome, float] | None = None
    position = 0

    for iteration in range(1, config.max_iterations + 1):
        if best is None and position >= len(providers):
            break
        remaining = context.remaining(config.timeout_s)
        if remaining is not None and remaining <= 0.0:
            LOGGER.warning(
                "iterative budget exhausted after %d iteration(s)",
                iteration - 1,
                extra={"event": "strategy_budget_exhausted", "strategy": config.name},
            )
            break
        provider_id = providers[position % len(providers)]
        request = context.request if best is None else refinement_request(
            context.request, best[0].content or ""
        )

        run.transition(StrategyState.DISPATCHING)
        (outcome,) = await context.gateway.fan_out([provider_id], request, remaining)
        run.transition(StrategyState.COLLECTING)
        run.history.append(outcome)
        run.iterations = iteration

        if not outcome.success or outcome.response is None:
            best_by_provider.setdefault(provider_id, (outcome, None))
            if best is None:
                position += 1
                continue
            break

        run.transition(StrategyState.EVALUATING)
        score = _score(context, outcome.response)
        run.scores.append(score)
        previous = best_by_provider.get(provider_id)
        if previous is None or previous[1] is None or score > previous[1]:
            best_by_provider[provider_id] = (outcome, score)

        if best is None:
            best = (outcome, score)
        else:
            improvement = score - best[1]
            if score > best[1]:
                best = (outcome, score)
            if improvement < config.improvement_threshold:
                LOGGER.debug(
                    "stopping after iteration %d, improvement %.4f",
                    iteration,
                    improvement,
                    extra={"event": "iteration_converged", "iteration": iteration},
                )
                break
        if config.rotate_providers:
            position += 1

    run.outcomes = [outcome for outcome, _ in best_by_provider.values()]
    run.execution_time_ms = sum(outcome.execution_time_ms for outcome in run.history)
    run.finish()
    return run
