"""Consensus strategy: re-query until the answers agree or rounds run out."""

from __future__ import annotations

from collections.abc import Sequence
import logging

from ..models import ProviderOutcome, successful
from ..provider_spi import Request
from ..similarity import consensus_level
from .context import ConsensusConfig, RoundRecord, StrategyContext, StrategyRun, StrategyState

LOGGER = logging.getLogger(__name__)

__all__ = ["round_consensus_level", "run_consensus"]

_REVISION_HINT = (
    "Other participants answered the same question as shown above. "
    "Reconsider and give your best answer."
)


def round_consensus_level(outcomes: Sequence[ProviderOutcome], similarity_threshold: float) -> float:
    """Agreement among the successful answers.

    A round scores 0 when nobody answered, or when a single answer survived
    out of several attempted providers.
    """

    texts = [outcome.content or "" for outcome in successful(outcomes)]
    if not texts or (len(texts) < 2 and len(outcomes) >= 2):
        return 0.0
    return consensus_level(texts, similarity_threshold)


def _revision_request(base: Request, outcomes: Sequence[ProviderOutcome]) -> Request:
    answers = "\n\n".join(
        f"[{outcome.provider_id}]\n{outcome.content}" for outcome in successful(outcomes)
    )
    if not answers:
        return base.derive()
    return base.derive(
        context=(*base.context, f"Answers from the previous round:\n\n{answers}", _REVISION_HINT)
    )


async def run_consensus(
    context: StrategyContext, config: ConsensusConfig, run: StrategyRun
) -> StrategyRun:
    request = context.request
    for index in range(1, config.max_iterations + 1):
        remaining = context.remaining(config.timeout_s)
        if index > 1 and remaining is not None and remaining <= 0.0:
            LOGGER.warning(
                "consensus budget exhausted after %d round(s)",
                index - 1,
                extra={"event": "strategy_budget_exhausted", "strategy": config.name},
            )
            break
        run.transition(StrategyState.DISPATCHING)
        outcomes = await context.gateway.fan_out(context.provider_ids, request, remaining)
        run.transition(StrategyState.COLLECTING)
        run.history.extend(outcomes)
        run.transition(StrategyState.EVALUATING)
        level = round_consensus_level(outcomes, config.similarity_threshold)
        run.rounds.append(RoundRecord(index=index, outcomes=tuple(outcomes), consensus_level=level))
        run.iterations = index
        LOGGER.debug(
            "consensus round %d reached %.3f",
            index,
            level,
            extra={"event": "consensus_round", "round": index, "consensus_level": level},
        )
        if level >= config.consensus_threshold:
            break
        request = _revision_request(context.request, outcomes)

    best = max(
        run.rounds,
        key=lambda record: (record.consensus_level, record.success_count, -record.index),
    )
    run.outcomes = list(best.outcomes)
    run.consensus_level = best.consensus_level
    run.execution_time_ms = sum(record.execution_time_ms for record in run.rounds)
    run.finish()
    return run
