from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field, replace
import math
import time
from typing import TYPE_CHECKING, Any, Protocol
import uuid

if TYPE_CHECKING:
    from .config import ProviderConfig

MIN_TEMPERATURE = 0.0
MAX_TEMPERATURE = 2.0


def new_request_id() -> str:
    return f"req_{uuid.uuid4().hex}"


@dataclass(frozen=True)
class Request:
    prompt: str
    model: str = ""
    temperature: float = 0.7
    max_tokens: int = 1024
    stop: tuple[str, ...] | None = None
    system_prompt: str | None = None
    context: tuple[str, ...] = ()
    metadata: Mapping[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=new_request_id)

    def __post_init__(self) -> None:
        if self.stop is not None and not isinstance(self.stop, tuple):
            object.__setattr__(self, "stop", tuple(self.stop))
        if not isinstance(self.context, tuple):
            object.__setattr__(self, "context", tuple(self.context))

    @property
    def chat_messages(self) -> list[dict[str, str]]:
        messages: list[dict[str, str]] = []
        if self.system_prompt:
            messages.append({"role": "system", "content": self.system_prompt})
        messages.append({"role": "user", "content": self.prompt_text})
        return messages

    @property
    def prompt_text(self) -> str:
        """Prompt with any context blocks rendered ahead of it."""

        if not self.context:
            return self.prompt
        blocks = "\n\n".join(self.context)
        return f"{blocks}\n\n{self.prompt}"

    def derive(self, **changes: Any) -> Request:
        """Return a copy with ``changes`` applied and a fresh id."""

        changes.setdefault("id", new_request_id())
        return replace(self, **changes)


@dataclass(frozen=True)
class TokenUsage:
    prompt: int = 0
    completion: int = 0

    @property
    def total(self) -> int:
        return self.prompt + self.completion

    def __add__(self, other: TokenUsage) -> TokenUsage:
        return TokenUsage(
            prompt=self.prompt + other.prompt,
            completion=self.completion + other.completion,
        )


@dataclass(frozen=True)
class Response:
    content: str
    provider_id: str
    model: str | None = None
    token_usage: TokenUsage = field(default_factory=TokenUsage)
    latency_ms: int = 0
    finish_reason: str | None = None
    timestamp: float = field(default_factory=time.time)
    metadata: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class RequestValidation:
    valid: bool
    errors: tuple[str, ...] = ()


@dataclass(frozen=True)
class HealthStatus:
    healthy: bool
    latency_ms: int | None = None
    detail: str | None = None


def validate_request(request: Request) -> RequestValidation:
    """Check every bound of ``request`` and report all violations at once."""

    errors: list[str] = []
    if not isinstance(request.prompt, str) or not request.prompt.strip():
        errors.append("prompt must be a non-empty string")
    temperature = request.temperature
    if (
        isinstance(temperature, bool)
        or not isinstance(temperature, (int, float))
        or math.isnan(temperature)
        or not MIN_TEMPERATURE <= temperature <= MAX_TEMPERATURE
    ):
        errors.append(
            f"temperature must be within [{MIN_TEMPERATURE:g}, {MAX_TEMPERATURE:g}]"
        )
    max_tokens = request.max_tokens
    if isinstance(max_tokens, bool) or not isinstance(max_tokens, int) or max_tokens <= 0:
        errors.append("max_tokens must be a positive integer")
    if request.stop is not None:
        for index, entry in enumerate(request.stop):
            if not isinstance(entry, str) or not entry:
                errors.append(f"stop[{index}] must be a non-empty string")
    return RequestValidation(valid=not errors, errors=tuple(errors))


class ProviderAdapter(Protocol):
    """Capability interface every backend adapter implements."""

    def name(self) -> str: ...
    def capabilities(self) -> set[str]: ...
    async def initialize(self, config: ProviderConfig) -> None: ...
    async def generate_response(self, request: Request) -> Response: ...
    def validate_request(self, request: Request) -> RequestValidation: ...
    async def get_health_status(self) -> HealthStatus: ...
    async def dispose(self) -> None: ...


__all__ = [
    "MAX_TEMPERATURE",
    "MIN_TEMPERATURE",
    "HealthStatus",
    "ProviderAdapter",
    "Request",
    "RequestValidation",
    "Response",
    "TokenUsage",
    "new_request_id",
    "validate_request",
]
