"""Protocol-layer entry points.

Payloads are validated with pydantic and every handler returns a JSON-ready
dict: either the result itself or ``{"error": {"code", "message", "data"}}``.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
import logging
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from .config import ToolsConfig
from .errors import CollabError, ErrorKind, ValidationError
from .models import ErrorInfo, SynthesisMethod
from .orchestrator import CollaborationOrchestrator
from .provider_spi import Request, Response, TokenUsage
from .quality import QualityWeights
from .synthesis import SynthesisEngine, SynthesisOptions

LOGGER = logging.getLogger(__name__)

__all__ = [
    "ERROR_CODES",
    "TOOL_PRESETS",
    "ToolPreset",
    "collaboration_execute",
    "error_payload",
    "run_tool",
    "synthesis_create",
]

INVALID_PARAMS = -32602
INTERNAL_ERROR = -32603

ERROR_CODES: dict[ErrorKind, int] = {
    ErrorKind.VALIDATION: INVALID_PARAMS,
    ErrorKind.CONFIG: INVALID_PARAMS,
    ErrorKind.AUTHENTICATION: -32001,
    ErrorKind.RATE_LIMITED: -32002,
    ErrorKind.TIMEOUT: -32003,
    ErrorKind.SERVER_ERROR: -32004,
    ErrorKind.NETWORK: -32005,
    ErrorKind.PROVIDER_INIT: -32006,
    ErrorKind.UNKNOWN_PROVIDER: -32007,
    ErrorKind.NO_VALID_PROVIDERS: -32008,
    ErrorKind.STRATEGY_FAILED: -32009,
    ErrorKind.SYNTHESIS_FAILED: -32010,
    ErrorKind.CAPACITY_EXCEEDED: -32011,
    ErrorKind.INTERNAL: INTERNAL_ERROR,
}


class _Payload(BaseModel):
    model_config = ConfigDict(extra="forbid")


class RequestPayload(_Payload):
    prompt: str
    model: str = ""
    temperature: float = 0.7
    max_tokens: int = 1024
    stop: list[str] | None = None
    system_prompt: str | None = None
    context: list[str] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)

    def to_request(self) -> Request:
        return Request(
            prompt=self.prompt,
            model=self.model,
            temperature=self.temperature,
            max_tokens=self.max_tokens,
            stop=tuple(self.stop) if self.stop is not None else None,
            system_prompt=self.system_prompt,
            context=tuple(self.context),
            metadata=dict(self.metadata),
        )


class SynthesisPayload(_Payload):
    method: SynthesisMethod | None = None
    weights: dict[str, float] | None = None
    max_insights: int | None = None
    max_sentences: int | None = None
    similarity_threshold: float | None = None
    quality_threshold: float | None = None

    def to_options(self, base: SynthesisOptions, prompt: str = "") -> SynthesisOptions:
        try:
            weights = QualityWeights.from_mapping(self.weights) if self.weights else base.weights
        except ValueError as exc:
            raise ValidationError([f"synthesis.weights: {exc}"]) from None
        return SynthesisOptions(
            prompt=prompt or base.prompt,
            weights=weights,
            max_insights=self.max_insights if self.max_insights is not None else base.max_insights,
            max_sentences=(
                self.max_sentences if self.max_sentences is not None else base.max_sentences
            ),
            similarity_threshold=(
                self.similarity_threshold
                if self.similarity_threshold is not None
                else base.similarity_threshold
            ),
            quality_threshold=(
                self.quality_threshold
                if self.quality_threshold is not None
                else base.quality_threshold
            ),
            summarizer=base.summarizer,
        )


class CollaborationExecuteParams(_Payload):
    request: RequestPayload
    strategy: str | None = None
    providers: list[str] | None = None
    strategy_config: dict[str, Any] = Field(default_factory=dict)
    synthesis: SynthesisPayload = Field(default_factory=SynthesisPayload)
    use_cache: bool = True


class ResponsePayload(_Payload):
    provider_id: str
    content: str
    model: str | None = None
    prompt_tokens: int = Field(default=0, ge=0)
    completion_tokens: int = Field(default=0, ge=0)
    latency_ms: int = Field(default=0, ge=0)
    finish_reason: str | None = None

    def to_response(self) -> Response:
        return Response(
            content=self.content,
            provider_id=self.provider_id,
            model=self.model,
            token_usage=TokenUsage(self.prompt_tokens, self.completion_tokens),
            latency_ms=self.latency_ms,
            finish_reason=self.finish_reason,
        )


class SynthesisCreateParams(_Payload):
    responses: list[ResponsePayload]
    prompt: str = ""
    method: SynthesisMethod = SynthesisMethod.CONSENSUS
    options: SynthesisPayload = Field(default_factory=SynthesisPayload)


class ToolParams(_Payload):
    prompt: str
    providers: list[str] | None = None
    context: list[str] = Field(default_factory=list)
    system_prompt: str | None = None
    model: str = ""
    temperature: float = 0.7
    max_tokens: int = 1024


@dataclass(frozen=True)
class ToolPreset:
    strategy: str
    synthesis_method: SynthesisMethod


TOOL_PRESETS: dict[str, ToolPreset] = {
    "collaborate": ToolPreset("parallel", SynthesisMethod.CONSENSUS),
    "review": ToolPreset("consensus", SynthesisMethod.CONSENSUS),
    "compare": ToolPreset("parallel", SynthesisMethod.COMPREHENSIVE),
    "refine": ToolPreset("iterative", SynthesisMethod.BEST_OF),
}


def error_payload(
    kind: ErrorKind, message: str, data: Mapping[str, Any] | None = None
) -> dict[str, Any]:
    error: dict[str, Any] = {"code": ERROR_CODES.get(kind, INTERNAL_ERROR), "message": message}
    error["data"] = {"kind": kind.value, **dict(data or {})}
    return {"error": error}


def _invalid_params(exc: PydanticValidationError) -> dict[str, Any]:
    violations = [
        f"{'.'.join(str(part) for part in item.get('loc', ())) or '<root>'}: {item.get('msg')}"
        for item in exc.errors()
    ]
    return error_payload(ErrorKind.VALIDATION, "invalid params", {"violations": violations})


def _from_error_info(info: ErrorInfo, data: Mapping[str, Any] | None = None) -> dict[str, Any]:
    payload = dict(data or {})
    if info.details:
        payload["violations"] = list(info.details)
    return error_payload(info.kind, info.message, payload)


async def collaboration_execute(
    orchestrator: CollaborationOrchestrator, params: Mapping[str, Any]
) -> dict[str, Any]:
    """Handle ``collaboration/execute``."""

    try:
        parsed = CollaborationExecuteParams.model_validate(params)
    except PydanticValidationError as exc:
        return _invalid_params(exc)
    try:
        request = parsed.request.to_request()
        options = parsed.synthesis.to_options(
            orchestrator.synthesis_engine.default_options, request.prompt
        )
    except CollabError as exc:
        return _from_error_info(ErrorInfo.from_exception(exc))
    result = await orchestrator.execute(
        request,
        parsed.strategy,
        parsed.providers,
        parsed.strategy_config or None,
        options,
        synthesis_method=parsed.synthesis.method,
        use_cache=parsed.use_cache,
    )
    if result.error is not None:
        return _from_error_info(result.error, {"result": result.to_dict()})
    return result.to_dict()


async def synthesis_create(
    params: Mapping[str, Any], *, engine: SynthesisEngine | None = None
) -> dict[str, Any]:
    """Handle ``synthesis/create`` over caller-supplied responses."""

    try:
        parsed = SynthesisCreateParams.model_validate(params)
    except PydanticValidationError as exc:
        return _invalid_params(exc)
    engine = engine or SynthesisEngine()
    try:
        options = parsed.options.to_options(engine.default_options, parsed.prompt)
        result = await engine.create_synthesis(
            [item.to_response() for item in parsed.responses], parsed.method, options
        )
    except CollabError as exc:
        return _from_error_info(ErrorInfo.from_exception(exc))
    return result.to_dict()


async def run_tool(
    orchestrator: CollaborationOrchestrator,
    tool: str,
    params: Mapping[str, Any],
    tools: ToolsConfig | None = None,
) -> dict[str, Any]:
    """Run one of the preset tools (``collaborate``, ``review``, ``compare``, ``refine``)."""

    tools = tools or ToolsConfig()
    preset = TOOL_PRESETS.get(tool)
    if preset is None or tool not in tools.enabled:
        return error_payload(ErrorKind.VALIDATION, f"unknown or disabled tool: {tool}")
    try:
        parsed = ToolParams.model_validate(params)
    except PydanticValidationError as exc:
        return _invalid_params(exc)

    settings = tools.settings_for(tool)
    providers = parsed.providers
    if providers is None:
        providers = orchestrator.manager.provider_ids(healthy_only=True)
    if settings.max_providers is not None:
        providers = providers[: settings.max_providers]
    if tool == "review" and len(providers) < settings.min_reviewers:
        return error_payload(
            ErrorKind.VALIDATION,
            f"review needs at least {settings.min_reviewers} provider(s), got {len(providers)}",
        )
    strategy_config: dict[str, Any] = {}
    if settings.timeout_s is not None:
        strategy_config["timeout_s"] = settings.timeout_s

    request = Request(
        prompt=parsed.prompt,
        model=parsed.model,
        temperature=parsed.temperature,
        max_tokens=parsed.max_tokens,
        system_prompt=parsed.system_prompt,
        context=tuple(parsed.context),
        metadata={"tool": tool},
    )
    LOGGER.info(
        "running tool %s over %d provider(s)",
        tool,
        len(providers),
        extra={"event": "tool_invoked", "tool": tool},
    )
    result = await orchestrator.execute(
        request,
        preset.strategy,
        providers,
        strategy_config or None,
        synthesis_method=preset.synthesis_method,
    )
    if result.error is not None:
        return _from_error_info(result.error, {"result": result.to_dict()})
    payload = result.to_dict()
    payload["tool"] = tool
    if settings.require_consensus:
        level = result.synthesis.consensus_level if result.synthesis else 0.0
        payload["consensus_reached"] = level >= orchestrator.strategy_defaults.consensus_threshold
    return payload
