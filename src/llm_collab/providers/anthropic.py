from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from ..config import ProviderConfig
from ..provider_spi import Request, Response
from .http import HttpProvider, coerce_usage

__all__ = ["AnthropicProvider", "ANTHROPIC_VERSION"]

ANTHROPIC_VERSION = "2023-06-01"

# stop reasons mapped onto the chat-completions vocabulary
_FINISH_REASONS = {"end_turn": "stop", "max_tokens": "length", "stop_sequence": "stop"}


def _coerce_text(payload: Mapping[str, Any]) -> str:
    blocks = payload.get("content")
    if isinstance(blocks, str):
        return blocks
    chunks: list[str] = []
    if isinstance(blocks, list):
        for block in blocks:
            if isinstance(block, Mapping) and block.get("type", "text") == "text":
                text = block.get("text")
                if isinstance(text, str):
                    chunks.append(text)
    return "".join(chunks)


class AnthropicProvider(HttpProvider):
    """Messages API backend."""

    health_path = "/v1/models"

    def default_headers(self, config: ProviderConfig) -> dict[str, str]:
        headers = super().default_headers(config)
        headers["x-api-key"] = config.api_key
        headers["anthropic-version"] = str(config.options.get("anthropic_version", ANTHROPIC_VERSION))
        return headers

    def _build_payload(self, request: Request) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": self.resolve_model(request),
            "messages": [{"role": "user", "content": request.prompt_text}],
            "max_tokens": int(request.max_tokens),
            "temperature": min(request.temperature, 1.0),
        }
        if request.system_prompt:
            payload["system"] = request.system_prompt
        if request.stop:
            payload["stop_sequences"] = list(request.stop)
        return payload

    async def generate_response(self, request: Request) -> Response:
        data, latency_ms = await self.post_json("/v1/messages", self._build_payload(request))
        model_name = data.get("model")
        stop_reason = data.get("stop_reason")
        finish_reason = (
            _FINISH_REASONS.get(stop_reason, stop_reason) if isinstance(stop_reason, str) else None
        )
        return Response(
            content=_coerce_text(data),
            provider_id=self.config.id,
            model=model_name if isinstance(model_name, str) else self.resolve_model(request),
            token_usage=coerce_usage(
                data.get("usage"), prompt_key="input_tokens", completion_key="output_tokens"
            ),
            latency_ms=latency_ms,
            finish_reason=finish_reason,
            metadata={"request_id": request.id, "response_id": data.get("id")},
        )
