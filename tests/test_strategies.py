from __future__ import annotations

from collections.abc import Sequence

import pytest

from llm_collab.errors import ProviderServerError, StrategyExecutionError, ValidationError
from llm_collab.provider_spi import Request, Response
from llm_collab.strategies import (
    ConsensusConfig,
    IterativeConfig,
    ParallelConfig,
    SequentialConfig,
    StrategyState,
    execute_strategy,
    strategy_from_name,
)
from llm_collab.strategies.consensus import round_consensus_level

from conftest import FakeGateway


def _frozen() -> float:
    return 0.0


class SteppingClock:
    def __init__(self, step: float) -> None:
        self.step = step
        self.now = -step

    def __call__(self) -> float:
        self.now += self.step
        return self.now


def _scorer(table: dict[str, float]):
    def score(prompt: str, responses: Sequence[Response]) -> list[float]:
        return [table[response.content] for response in responses]

    return score


@pytest.mark.asyncio
async def test_parallel_collects_every_outcome_under_one_deadline() -> None:
    gateway = FakeGateway({"a": "alpha", "b": ProviderServerError("down")})

    run = await execute_strategy(
        ParallelConfig(timeout_s=30), gateway, Request(prompt="q"), ["a", "b"], clock=_frozen
    )

    assert [outcome.provider_id for outcome in run.outcomes] == ["a", "b"]
    assert run.outcomes[0].success and not run.outcomes[1].success
    assert run.state is StrategyState.COMPLETED
    assert run.states == [
        StrategyState.PENDING,
        StrategyState.DISPATCHING,
        StrategyState.COLLECTING,
        StrategyState.EVALUATING,
        StrategyState.COMPLETED,
    ]
    assert run.iterations == 1
    assert run.execution_time_ms == 5
    assert gateway.calls[0][0] == ["a", "b"]
    assert gateway.calls[0][2] == 30


@pytest.mark.asyncio
async def test_parallel_without_successes_ends_failed() -> None:
    gateway = FakeGateway({"a": ProviderServerError("x"), "b": ProviderServerError("y")})

    run = await execute_strategy(ParallelConfig(), gateway, Request(prompt="q"), ["a", "b"])

    assert run.state is StrategyState.FAILED
    assert StrategyState.EVALUATING not in run.states
    assert len(run.outcomes) == 2


@pytest.mark.asyncio
async def test_sequential_passes_previous_answers_as_context() -> None:
    gateway = FakeGateway({"a": "alpha", "b": "beta", "c": "gamma"})
    config = SequentialConfig(pass_context=True)

    run = await execute_strategy(config, gateway, Request(prompt="q"), ["a", "b", "c"], clock=_frozen)

    assert [call[0] for call in gateway.calls] == [["a"], ["b"], ["c"]]
    first, second, third = gateway.requests
    assert first.context == ()
    assert second.context == ("Previous answer from a:\nalpha",)
    assert third.context == ("Previous answer from a:\nalpha", "Previous answer from b:\nbeta")
    assert second.prompt == "q"
    assert run.execution_time_ms == 15
    assert run.iterations == 3


@pytest.mark.asyncio
async def test_sequential_fail_fast_stops_after_first_failure() -> None:
    gateway = FakeGateway({"a": ProviderServerError("down"), "b": "beta"})

    stopped = await execute_strategy(
        SequentialConfig(fail_fast=True), gateway, Request(prompt="q"), ["a", "b"]
    )
    assert [outcome.provider_id for outcome in stopped.outcomes] == ["a"]
    assert stopped.state is StrategyState.FAILED

    continued = await execute_strategy(
        SequentialConfig(), gateway, Request(prompt="q"), ["a", "b"]
    )
    assert [outcome.provider_id for outcome in continued.outcomes] == ["a", "b"]
    assert continued.state is StrategyState.COMPLETED
    assert continued.states[-2:] == [StrategyState.EVALUATING, StrategyState.COMPLETED]


@pytest.mark.asyncio
async def test_sequential_stops_when_budget_is_spent() -> None:
    gateway = FakeGateway({"a": "alpha", "b": "beta"})

    run = await execute_strategy(
        SequentialConfig(timeout_s=60),
        gateway,
        Request(prompt="q"),
        ["a", "b"],
        clock=SteppingClock(40),
    )

    assert [outcome.provider_id for outcome in run.outcomes] == ["a"]
    assert gateway.calls[0][2] == pytest.approx(20)


@pytest.mark.asyncio
async def test_consensus_stops_once_threshold_is_reached() -> None:
    gateway = FakeGateway({"a": "red green blue", "b": "red green blue"})

    run = await execute_strategy(
        ConsensusConfig(max_iterations=3), gateway, Request(prompt="q"), ["a", "b"]
    )

    assert run.iterations == 1
    assert run.consensus_level == 1.0
    assert len(gateway.calls) == 1
    assert StrategyState.EVALUATING in run.states


@pytest.mark.asyncio
async def test_consensus_revises_with_previous_round_answers() -> None:
    gateway = FakeGateway({"a": "red green blue", "b": ["cat dog", "red green blue"]})
    base = Request(prompt="colours?", context=("background",))

    run = await execute_strategy(ConsensusConfig(), gateway, base, ["a", "b"])

    assert run.iterations == 2
    assert [record.consensus_level for record in run.rounds] == [0.0, 1.0]
    assert run.consensus_level == 1.0
    revision = gateway.requests[1]
    assert revision.prompt == "colours?"
    assert revision.context[0] == "background"
    assert revision.context[1] == (
        "Answers from the previous round:\n\n[a]\nred green blue\n\n[b]\ncat dog"
    )
    assert revision.id != base.id
    assert [outcome.content for outcome in run.outcomes] == ["red green blue", "red green blue"]


@pytest.mark.asyncio
async def test_consensus_keeps_earliest_best_round_when_never_agreeing() -> None:
    gateway = FakeGateway({"a": "red", "b": "blue"})

    run = await execute_strategy(
        ConsensusConfig(max_iterations=3), gateway, Request(prompt="q"), ["a", "b"]
    )

    assert run.iterations == 3
    assert len(run.history) == 6
    assert run.consensus_level == 0.0
    assert run.outcomes == list(run.rounds[0].outcomes)
    assert run.execution_time_ms == 15
    details = run.details()
    assert len(details["rounds"]) == 3
    assert details["state"] == "completed"


@pytest.mark.asyncio
async def test_consensus_round_without_answers_scores_zero() -> None:
    gateway = FakeGateway(
        {"a": [ProviderServerError("x"), "same words"], "b": [ProviderServerError("y"), "same words"]}
    )

    run = await execute_strategy(ConsensusConfig(), gateway, Request(prompt="q"), ["a", "b"])

    assert run.rounds[0].consensus_level == 0.0
    assert run.rounds[0].success_count == 0
    assert run.consensus_level == 1.0
    assert gateway.requests[1].context == ()


@pytest.mark.asyncio
async def test_consensus_lone_survivor_is_not_agreement() -> None:
    gateway = FakeGateway(
        {
            "a": ["only voice", "shared view"],
            "b": [ProviderServerError("x"), "shared view"],
            "c": [ProviderServerError("y"), "shared view"],
        }
    )

    run = await execute_strategy(
        ConsensusConfig(max_iterations=3), gateway, Request(prompt="q"), ["a", "b", "c"]
    )

    assert [record.consensus_level for record in run.rounds] == [0.0, 1.0]
    assert run.iterations == 2
    assert round_consensus_level(run.rounds[0].outcomes, 0.6) == 0.0
    assert round_consensus_level(run.rounds[0].outcomes[:1], 0.6) == 1.0


@pytest.mark.asyncio
async def test_iterative_refines_until_improvement_stalls() -> None:
    gateway = FakeGateway({"a": ["draft", "better", "same"]})
    scorer = _scorer({"draft": 0.3, "better": 0.6, "same": 0.61})

    run = await execute_strategy(
        IterativeConfig(max_iterations=5), gateway, Request(prompt="q"), ["a"], scorer=scorer
    )

    assert run.iterations == 3
    assert run.scores == [0.3, 0.6, 0.61]
    assert [outcome.content for outcome in run.outcomes] == ["same"]
    second, third = gateway.requests[1:]
    assert "Improve the answer below" in second.prompt
    assert second.prompt.endswith("Current answer:\ndraft")
    assert third.prompt.endswith("Current answer:\nbetter")
    assert run.execution_time_ms == 15


@pytest.mark.asyncio
async def test_iterative_fails_over_until_a_draft_exists() -> None:
    gateway = FakeGateway({"a": ProviderServerError("down"), "b": "draft"})

    run = await execute_strategy(
        IterativeConfig(max_iterations=2),
        gateway,
        Request(prompt="q"),
        ["a", "b"],
        scorer=_scorer({"draft": 0.5}),
    )

    assert [call[0] for call in gateway.calls] == [["a"], ["b"]]
    assert gateway.requests[1].prompt == "q"
    assert [(o.provider_id, o.success) for o in run.outcomes] == [("a", False), ("b", True)]
    assert run.state is StrategyState.COMPLETED


@pytest.mark.asyncio
async def test_iterative_rotates_providers_when_asked() -> None:
    gateway = FakeGateway({"a": ["one", "three"], "b": "two"})

    run = await execute_strategy(
        IterativeConfig(max_iterations=3, rotate_providers=True),
        gateway,
        Request(prompt="q"),
        ["a", "b"],
        scorer=_scorer({"one": 0.1, "two": 0.5, "three": 0.9}),
    )

    assert [call[0] for call in gateway.calls] == [["a"], ["b"], ["a"]]
    assert {o.provider_id: o.content for o in run.outcomes} == {"a": "three", "b": "two"}


@pytest.mark.asyncio
async def test_iterative_keeps_best_draft_when_refinement_fails() -> None:
    gateway = FakeGateway({"a": ["draft", ProviderServerError("down")]})

    run = await execute_strategy(
        IterativeConfig(max_iterations=4), gateway, Request(prompt="q"), ["a"],
        scorer=_scorer({"draft": 0.4}),
    )

    assert run.iterations == 2
    assert [outcome.content for outcome in run.outcomes] == ["draft"]
    assert not run.history[-1].success
    assert run.state is StrategyState.COMPLETED


@pytest.mark.asyncio
async def test_malformed_configuration_is_rejected_before_dispatch() -> None:
    gateway = FakeGateway({"a": "x"})

    with pytest.raises(StrategyExecutionError, match="provider list must not be empty"):
        await execute_strategy(ParallelConfig(), gateway, Request(prompt="q"), [])
    with pytest.raises(StrategyExecutionError) as excinfo:
        await execute_strategy(
            ConsensusConfig(consensus_threshold=2.0, max_iterations=0),
            gateway,
            Request(prompt="q"),
            ["a"],
        )
    assert "consensus_threshold" in str(excinfo.value)
    assert "max_iterations" in str(excinfo.value)
    with pytest.raises(StrategyExecutionError, match="unsupported strategy config"):
        await execute_strategy(object(), gateway, Request(prompt="q"), ["a"])  # type: ignore[arg-type]
    assert gateway.calls == []


@pytest.mark.asyncio
async def test_gateway_faults_become_strategy_errors() -> None:
    class BrokenGateway:
        async def fan_out(self, provider_ids, request, deadline_s=None):
            raise RuntimeError("kaboom")

    with pytest.raises(StrategyExecutionError, match="internal fault: kaboom"):
        await execute_strategy(ParallelConfig(), BrokenGateway(), Request(prompt="q"), ["a"])


def test_strategy_from_name() -> None:
    config = strategy_from_name(" Consensus ", max_iterations=2)
    assert isinstance(config, ConsensusConfig)
    assert config.max_iterations == 2

    with pytest.raises(ValidationError, match="unknown strategy"):
        strategy_from_name("vote")
    with pytest.raises(ValidationError, match="invalid options for parallel"):
        strategy_from_name("parallel", rounds=3)
