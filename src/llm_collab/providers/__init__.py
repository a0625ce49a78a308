"""Helpers for instantiating adapters from provider configuration."""

from __future__ import annotations

from collections.abc import Callable, Mapping

from ..config import ProviderConfig
from ..errors import ProviderInitError
from ..provider_spi import ProviderAdapter
from .anthropic import AnthropicProvider
from .base import BaseProvider
from .http import HttpProvider, normalize_error
from .mock import MockProvider
from .openai_compat import OpenAICompatibleProvider

__all__ = [
    "ADAPTERS",
    "AdapterFactory",
    "AnthropicProvider",
    "BaseProvider",
    "HttpProvider",
    "MockProvider",
    "OpenAICompatibleProvider",
    "create_adapter",
    "normalize_error",
]

AdapterFactory = Callable[[str], ProviderAdapter]

ADAPTERS: dict[str, AdapterFactory] = {
    "openai": lambda name: OpenAICompatibleProvider(name=name),
    "deepseek": lambda name: OpenAICompatibleProvider(name=name),
    "openai_compatible": lambda name: OpenAICompatibleProvider(name=name),
    "anthropic": lambda name: AnthropicProvider(name=name),
    "mock": lambda name: MockProvider(name),
}


def create_adapter(
    config: ProviderConfig,
    *,
    factories: Mapping[str, AdapterFactory] | None = None,
) -> ProviderAdapter:
    """Build the adapter registered under ``config.name``."""

    table = ADAPTERS if factories is None else {**ADAPTERS, **factories}
    factory = table.get(config.name.strip().lower())
    if factory is None:
        raise ProviderInitError(f"no adapter registered for {config.name!r}", provider=config.id)
    return factory(config.id)
