"""Mock provider that can deterministically trigger failure modes."""

from __future__ import annotations

import asyncio
from collections.abc import Iterable
import random

from ..config import ProviderConfig
from ..errors import (
    AuthenticationError,
    CollabError,
    ProviderServerError,
    ProviderTimeoutError,
    RateLimitError,
)
from ..provider_spi import HealthStatus, Request, Response, TokenUsage
from .base import BaseProvider

__all__ = ["MockProvider"]

_ERROR_BY_MARKER: dict[str, tuple[type[CollabError], str]] = {
    "[TIMEOUT]": (ProviderTimeoutError, "simulated timeout"),
    "[RATELIMIT]": (RateLimitError, "simulated rate limit"),
    "[SERVER_ERROR]": (ProviderServerError, "simulated server error"),
    "[AUTH]": (AuthenticationError, "simulated authentication failure"),
}


class MockProvider(BaseProvider):
    """In-process backend for demos and tests.

    Options (``ProviderConfig.options``): ``latency_ms``, ``jitter_ms``,
    ``response`` (a format string receiving ``provider`` and ``prompt``) and
    ``healthy``.
    """

    requires_api_key = False

    def __init__(
        self,
        name: str = "mock",
        *,
        base_latency_ms: int = 0,
        error_markers: Iterable[str] | None = None,
    ) -> None:
        super().__init__(name=name)
        self.base_latency_ms = base_latency_ms
        self.jitter_ms = 0
        self.template = "echo({provider}): {prompt}"
        self.healthy = True
        if error_markers is None:
            self._error_markers: set[str] = set(_ERROR_BY_MARKER)
        else:
            self._error_markers = {
                marker for marker in error_markers if marker in _ERROR_BY_MARKER
            }

    async def initialize(self, config: ProviderConfig) -> None:
        await super().initialize(config)
        options = config.options
        self.base_latency_ms = int(options.get("latency_ms", self.base_latency_ms))
        self.jitter_ms = int(options.get("jitter_ms", self.jitter_ms))
        self.template = str(options.get("response", self.template))
        self.healthy = bool(options.get("healthy", self.healthy))

    def _maybe_raise_error(self, text: str) -> None:
        for marker in sorted(self._error_markers):
            if marker in text:
                exc_cls, message = _ERROR_BY_MARKER[marker]
                if exc_cls is RateLimitError:
                    raise RateLimitError(message, retry_after=0.0, provider=self.config.id)
                raise exc_cls(message, provider=self.config.id)

    async def generate_response(self, request: Request) -> Response:
        text = request.prompt_text
        self._maybe_raise_error(request.prompt)

        latency = self.base_latency_ms
        if self.jitter_ms:
            latency += int(random.random() * self.jitter_ms)
        if latency:
            await asyncio.sleep(latency / 1000.0)

        provider_id = self.config.id
        content = self.template.format(provider=provider_id, prompt=request.prompt)
        return Response(
            content=content,
            provider_id=provider_id,
            model=self.resolve_model(request) or "mock",
            token_usage=TokenUsage(prompt=max(1, len(text) // 4), completion=max(1, len(content) // 4)),
            latency_ms=latency,
            finish_reason="stop",
            metadata={"request_id": request.id},
        )

    async def get_health_status(self) -> HealthStatus:
        if self._config is None:
            return HealthStatus(healthy=False, detail="not initialized")
        if not self.healthy:
            return HealthStatus(healthy=False, detail="marked unhealthy")
        return HealthStatus(healthy=True, latency_ms=self.base_latency_ms)
