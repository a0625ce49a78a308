"""共通フィクスチャ: スクリプト化したアダプタとゲートウェイ。"""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Iterable, Mapping, Sequence
from typing import Any, Union

import pytest

from llm_collab.config import ProviderConfig, RetryConfig
from llm_collab.models import ProviderOutcome
from llm_collab.provider_manager import ProviderManager
from llm_collab.provider_spi import (
    HealthStatus,
    Request,
    RequestValidation,
    Response,
    TokenUsage,
    validate_request,
)
from llm_collab.retry import RetryHandler


def make_response(
    provider_id: str,
    content: str,
    *,
    latency_ms: int = 10,
    prompt_tokens: int = 5,
    completion_tokens: int = 7,
    finish_reason: str | None = "stop",
) -> Response:
    return Response(
        content=content,
        provider_id=provider_id,
        model=f"{provider_id}-model",
        token_usage=TokenUsage(prompt_tokens, completion_tokens),
        latency_ms=latency_ms,
        finish_reason=finish_reason,
    )


def provider_config(provider_id: str, **overrides: Any) -> ProviderConfig:
    values: dict[str, Any] = {
        "id": provider_id,
        "name": "mock",
        "timeout_s": 5.0,
        "max_retries": 2,
        "retry": RetryConfig(base_delay_s=0.0, max_delay_s=0.0),
    }
    values.update(overrides)
    return ProviderConfig(**values)


class ScriptedAdapter:
    """ProviderAdapter whose answers come from a script (text or exception per call)."""

    requires_api_key = False

    def __init__(
        self,
        provider_id: str,
        script: Iterable[str | BaseException] | None = None,
        *,
        content: str | None = None,
        delay_s: float = 0.0,
        healthy: bool = True,
    ) -> None:
        self.provider_id = provider_id
        self._script = list(script or [])
        self.content = content if content is not None else f"answer from {provider_id}"
        self.delay_s = delay_s
        self.healthy = healthy
        self.calls: list[Request] = []
        self.initialized = False
        self.disposed = False

    def name(self) -> str:
        return self.provider_id

    def capabilities(self) -> set[str]:
        return {"chat"}

    async def initialize(self, config: ProviderConfig) -> None:
        self.initialized = True

    def validate_request(self, request: Request) -> RequestValidation:
        return validate_request(request)

    async def generate_response(self, request: Request) -> Response:
        self.calls.append(request)
        if self.delay_s:
            await asyncio.sleep(self.delay_s)
        item = self._script.pop(0) if self._script else self.content
        if isinstance(item, BaseException):
            raise item
        return make_response(self.provider_id, item)

    async def get_health_status(self) -> HealthStatus:
        return HealthStatus(healthy=self.healthy, detail=None if self.healthy else "down")

    async def dispose(self) -> None:
        self.disposed = True


Answer = Union[str, BaseException, Callable[[Request], Any]]


class FakeGateway:
    """Stand-in for ``ProviderManager.fan_out`` used by strategy tests.

    Each provider maps to an answer, a callable of the request, or a list of
    answers consumed one per call (the last one repeats).
    """

    def __init__(self, answers: Mapping[str, Answer | list[Answer]]) -> None:
        self._answers = {
            key: list(value) if isinstance(value, list) else value
            for key, value in answers.items()
        }
        self.calls: list[tuple[list[str], Request, float | None]] = []

    @property
    def requests(self) -> list[Request]:
        return [request for _, request, _ in self.calls]

    def _next(self, provider_id: str, request: Request) -> str | BaseException:
        spec = self._answers[provider_id]
        if isinstance(spec, list):
            item = spec.pop(0) if len(spec) > 1 else spec[0]
        else:
            item = spec
        if callable(item) and not isinstance(item, BaseException):
            return item(request)
        return item

    async def fan_out(
        self, provider_ids: Sequence[str], request: Request, deadline_s: float | None = None
    ) -> list[ProviderOutcome]:
        self.calls.append((list(provider_ids), request, deadline_s))
        outcomes = []
        for provider_id in provider_ids:
            item = self._next(provider_id, request)
            if isinstance(item, BaseException):
                outcomes.append(ProviderOutcome.failed(provider_id, item, 5))
            else:
                outcomes.append(ProviderOutcome.ok(provider_id, make_response(provider_id, item), 5))
        return outcomes


async def _no_sleep(_: float) -> None:
    return None


@pytest.fixture
def retry_handler() -> RetryHandler:
    return RetryHandler(sleep=_no_sleep)


@pytest.fixture
def manager_factory(retry_handler: RetryHandler) -> Callable[..., ProviderManager]:
    def _build(**kwargs: Any) -> ProviderManager:
        kwargs.setdefault("retry_handler", retry_handler)
        return ProviderManager(**kwargs)

    return _build


async def register_all(manager: ProviderManager, adapters: Sequence[ScriptedAdapter]) -> None:
    for adapter in adapters:
        await manager.register_provider(provider_config(adapter.provider_id), adapter)
