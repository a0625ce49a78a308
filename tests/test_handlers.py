from __future__ import annotations

from collections.abc import Callable, Sequence
from typing import Any

import pytest

from llm_collab.config import ToolsConfig, ToolSettings
from llm_collab.errors import ErrorKind
from llm_collab.handlers import (
    INVALID_PARAMS,
    collaboration_execute,
    error_payload,
    run_tool,
    synthesis_create,
)
from llm_collab.orchestrator import CollaborationOrchestrator
from llm_collab.provider_manager import ProviderManager

from conftest import ScriptedAdapter, register_all

ManagerFactory = Callable[..., ProviderManager]


async def _orchestrator(
    manager_factory: ManagerFactory, adapters: Sequence[ScriptedAdapter]
) -> CollaborationOrchestrator:
    manager = manager_factory()
    await register_all(manager, adapters)
    return CollaborationOrchestrator(manager)


def test_error_payload_shape() -> None:
    payload = error_payload(ErrorKind.TIMEOUT, "slow", {"provider": "a"})

    assert payload == {
        "error": {
            "code": -32003,
            "message": "slow",
            "data": {"kind": "timeout", "provider": "a"},
        }
    }
    assert error_payload(ErrorKind.CONFIG, "bad")["error"]["code"] == INVALID_PARAMS
    assert error_payload(ErrorKind.INTERNAL, "oops")["error"]["code"] == -32603


@pytest.mark.asyncio
async def test_collaboration_execute_returns_result_dict(manager_factory: ManagerFactory) -> None:
    orchestrator = await _orchestrator(manager_factory, [ScriptedAdapter("a"), ScriptedAdapter("b")])

    payload = await collaboration_execute(
        orchestrator,
        {
            "request": {"prompt": "hello", "temperature": 0.2},
            "strategy": "parallel",
            "synthesis": {"method": "best_of", "max_insights": 2},
        },
    )

    assert "error" not in payload
    assert payload["success"] is True
    assert payload["strategy"] == "parallel"
    assert payload["synthesis"]["method"] == "best_of"
    assert [item["provider"] for item in payload["responses"]] == ["a", "b"]
    assert payload["collaboration_id"].startswith("collab_")


@pytest.mark.asyncio
async def test_collaboration_execute_rejects_malformed_params(
    manager_factory: ManagerFactory,
) -> None:
    orchestrator = await _orchestrator(manager_factory, [ScriptedAdapter("a")])

    payload = await collaboration_execute(
        orchestrator, {"request": {"promt": "typo"}, "strategy": "parallel"}
    )

    error = payload["error"]
    assert error["code"] == INVALID_PARAMS
    assert error["message"] == "invalid params"
    violations = error["data"]["violations"]
    assert any(item.startswith("request.prompt") for item in violations)
    assert any(item.startswith("request.promt") for item in violations)


@pytest.mark.asyncio
async def test_collaboration_execute_reports_failed_results(
    manager_factory: ManagerFactory,
) -> None:
    orchestrator = await _orchestrator(manager_factory, [ScriptedAdapter("a")])

    invalid = await collaboration_execute(orchestrator, {"request": {"prompt": " "}})
    missing = await collaboration_execute(
        orchestrator, {"request": {"prompt": "hi"}, "providers": ["ghost"]}
    )

    assert invalid["error"]["code"] == INVALID_PARAMS
    assert invalid["error"]["data"]["kind"] == "validation"
    assert invalid["error"]["data"]["violations"] == ["prompt must be a non-empty string"]
    assert invalid["error"]["data"]["result"]["success"] is False
    assert missing["error"]["code"] == -32008


@pytest.mark.asyncio
async def test_collaboration_execute_rejects_bad_weights(manager_factory: ManagerFactory) -> None:
    orchestrator = await _orchestrator(manager_factory, [ScriptedAdapter("a")])

    payload = await collaboration_execute(
        orchestrator,
        {"request": {"prompt": "hi"}, "synthesis": {"weights": {"accuracy": 0.3}}},
    )

    assert payload["error"]["code"] == INVALID_PARAMS
    assert payload["error"]["message"].startswith("synthesis.weights")


@pytest.mark.asyncio
async def test_synthesis_create_over_supplied_responses() -> None:
    payload = await synthesis_create(
        {
            "prompt": "boiling point",
            "method": "best_of",
            "responses": [
                {"provider_id": "a", "content": "Water boils at 100 C.", "latency_ms": 30},
                {"provider_id": "b", "content": "Water boils at 100 C.", "latency_ms": 10},
            ],
        }
    )

    assert payload["method"] == "best_of"
    assert payload["sources"] == ["b"]
    assert payload["content"] == "Water boils at 100 C."


@pytest.mark.asyncio
async def test_synthesis_create_errors() -> None:
    empty = await synthesis_create({"responses": []})
    assert empty["error"]["code"] == -32010

    bad_method = await synthesis_create(
        {"responses": [{"provider_id": "a", "content": "x"}], "method": "vote"}
    )
    assert bad_method["error"]["message"] == "invalid params"

    negative = await synthesis_create(
        {"responses": [{"provider_id": "a", "content": "x", "latency_ms": -1}]}
    )
    assert negative["error"]["code"] == INVALID_PARAMS


@pytest.mark.asyncio
async def test_run_tool_applies_presets_and_provider_cap(
    manager_factory: ManagerFactory, monkeypatch: pytest.MonkeyPatch
) -> None:
    orchestrator = await _orchestrator(
        manager_factory, [ScriptedAdapter("a"), ScriptedAdapter("b"), ScriptedAdapter("c")]
    )
    seen: list[tuple[tuple[Any, ...], dict[str, Any]]] = []
    original = orchestrator.execute

    async def spy(*args: Any, **kwargs: Any):
        seen.append((args, kwargs))
        return await original(*args, **kwargs)

    monkeypatch.setattr(orchestrator, "execute", spy)
    tools = ToolsConfig(settings={"compare": ToolSettings(max_providers=2, timeout_s=7.0)})

    payload = await run_tool(orchestrator, "compare", {"prompt": "hello"}, tools)

    assert payload["tool"] == "compare"
    assert payload["synthesis"]["method"] == "comprehensive"
    assert [item["provider"] for item in payload["responses"]] == ["a", "b"]
    (args, kwargs) = seen[0]
    request, strategy, providers, strategy_config = args
    assert strategy == "parallel"
    assert providers == ["a", "b"]
    assert strategy_config == {"timeout_s": 7.0}
    assert request.metadata == {"tool": "compare"}
    assert "consensus_reached" not in payload


@pytest.mark.asyncio
async def test_run_tool_rejects_unknown_and_disabled_tools(manager_factory: ManagerFactory) -> None:
    orchestrator = await _orchestrator(manager_factory, [ScriptedAdapter("a")])

    unknown = await run_tool(orchestrator, "dance", {"prompt": "hi"})
    disabled = await run_tool(
        orchestrator, "review", {"prompt": "hi"}, ToolsConfig(enabled=("collaborate",))
    )
    malformed = await run_tool(orchestrator, "collaborate", {})

    assert unknown["error"]["code"] == INVALID_PARAMS
    assert "dance" in unknown["error"]["message"]
    assert disabled["error"]["code"] == INVALID_PARAMS
    assert malformed["error"]["message"] == "invalid params"


@pytest.mark.asyncio
async def test_review_requires_enough_reviewers(manager_factory: ManagerFactory) -> None:
    orchestrator = await _orchestrator(manager_factory, [ScriptedAdapter("a"), ScriptedAdapter("b")])
    tools = ToolsConfig(settings={"review": ToolSettings(min_reviewers=3)})

    payload = await run_tool(orchestrator, "review", {"prompt": "check this"}, tools)

    assert payload["error"]["code"] == INVALID_PARAMS
    assert "at least 3" in payload["error"]["message"]


@pytest.mark.asyncio
async def test_review_reports_consensus(manager_factory: ManagerFactory) -> None:
    orchestrator = await _orchestrator(
        manager_factory,
        [
            ScriptedAdapter("a", content="The code looks correct."),
            ScriptedAdapter("b", content="The code looks correct."),
        ],
    )
    tools = ToolsConfig(settings={"review": ToolSettings(require_consensus=True, min_reviewers=2)})

    payload = await run_tool(orchestrator, "review", {"prompt": "review this"}, tools)

    assert payload["tool"] == "review"
    assert payload["strategy"] == "consensus"
    assert payload["consensus_reached"] is True
