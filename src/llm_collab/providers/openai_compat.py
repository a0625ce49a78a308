from __future__ import annotations

from collections.abc import Iterable, Mapping
from typing import Any

from ..config import ProviderConfig
from ..provider_spi import Request, Response
from .http import HttpProvider, coerce_usage

__all__ = ["OpenAICompatibleProvider"]


def _coerce_text(payload: Mapping[str, Any] | None) -> str:
    if not isinstance(payload, Mapping):
        return ""
    choices = payload.get("choices")
    if isinstance(choices, Iterable):
        chunks: list[str] = []
        for choice in choices:
            if not isinstance(choice, Mapping):
                continue
            message = choice.get("message")
            if isinstance(message, Mapping):
                content = message.get("content")
                if isinstance(content, str):
                    chunks.append(content)
            text_value = choice.get("text")
            if isinstance(text_value, str):
                chunks.append(text_value)
        if chunks:
            return "".join(chunks)
    return ""


def _coerce_finish_reason(payload: Mapping[str, Any] | None) -> str | None:
    if not isinstance(payload, Mapping):
        return None
    choices = payload.get("choices")
    if isinstance(choices, Iterable):
        for choice in choices:
            if isinstance(choice, Mapping):
                finish = choice.get("finish_reason")
                if isinstance(finish, str):
                    return finish
    return None


class OpenAICompatibleProvider(HttpProvider):
    """Chat-completions backend (OpenAI, DeepSeek and compatible servers)."""

    def default_headers(self, config: ProviderConfig) -> dict[str, str]:
        headers = super().default_headers(config)
        if config.api_key:
            headers["Authorization"] = f"Bearer {config.api_key}"
        return headers

    def _build_payload(self, request: Request) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": self.resolve_model(request),
            "messages": request.chat_messages,
            "max_tokens": int(request.max_tokens),
            "temperature": request.temperature,
        }
        if request.stop:
            payload["stop"] = list(request.stop)
        for key, value in self.config.options.items():
            payload.setdefault(key, value)
        return payload

    async def generate_response(self, request: Request) -> Response:
        data, latency_ms = await self.post_json("/chat/completions", self._build_payload(request))
        model_name = data.get("model")
        return Response(
            content=_coerce_text(data),
            provider_id=self.config.id,
            model=model_name if isinstance(model_name, str) else self.resolve_model(request),
            token_usage=coerce_usage(data.get("usage")),
            latency_ms=latency_ms,
            finish_reason=_coerce_finish_reason(data),
            metadata={"request_id": request.id, "response_id": data.get("id")},
        )
