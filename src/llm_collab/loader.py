"""設定ファイルの読み込みユーティリティ。"""

from __future__ import annotations

from collections.abc import Mapping, MutableMapping
import os
from pathlib import Path
import re
from typing import Any, cast

from pydantic import ValidationError
import yaml

from .config import (
    AppConfig,
    CacheConfig,
    ConcurrencyConfig,
    LogFileConfig,
    LoggingConfig,
    MetricsConfig,
    PricingConfig,
    ProviderConfig,
    RateLimitConfig,
    RetryConfig,
    ServerConfig,
    StrategiesConfig,
    SynthesisConfig,
    TimeoutsConfig,
    ToolSettings,
    ToolsConfig,
)
from .errors import ConfigError
from .schema import AppConfigModel, ProviderConfigModel, ToolSettingsModel

__all__ = [
    "ConfigError",
    "expand_env",
    "load_config",
    "load_config_data",
    "merge_overlay",
]

_ENV_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)(?::-([^}]*))?\}")


def _ms(value: int | None) -> float | None:
    if value is None:
        return None
    return value / 1000.0


def _format_validation_error(source: str, exc: ValidationError) -> str:
    details = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error.get("loc", ()) if part is not None)
        message = error.get("msg", "unknown error")
        if location:
            details.append(f"{location}: {message}")
        else:
            details.append(message)
    summary = "; ".join(details)
    return f"configuration validation failed ({source}): {summary}"


def expand_env(value: Any, environ: Mapping[str, str] | None = None) -> Any:
    """``${VAR}`` と ``${VAR:-default}`` を環境変数で再帰的に展開する。"""

    env = os.environ if environ is None else environ
    if isinstance(value, str):

        def _replace(match: re.Match[str]) -> str:
            name, default = match.group(1), match.group(2)
            resolved = env.get(name)
            if resolved:
                return resolved
            return default if default is not None else ""

        return _ENV_PATTERN.sub(_replace, value)
    if isinstance(value, Mapping):
        return {key: expand_env(item, env) for key, item in value.items()}
    if isinstance(value, list):
        return [expand_env(item, env) for item in value]
    return value


def _provider_key(entry: object) -> str | None:
    if isinstance(entry, Mapping):
        key = entry.get("id") or entry.get("name")
        return str(key) if key is not None else None
    return None


def merge_overlay(
    base: Mapping[str, Any], overlay: Mapping[str, Any]
) -> dict[str, Any]:
    """``overlay`` を ``base`` に重ねる。``providers`` は id/name 単位で統合する。"""

    merged: dict[str, Any] = dict(base)
    for key, value in overlay.items():
        current = merged.get(key)
        if key == "providers" and isinstance(current, list) and isinstance(value, list):
            merged[key] = _merge_providers(current, value)
        elif isinstance(current, Mapping) and isinstance(value, Mapping):
            merged[key] = merge_overlay(current, value)
        else:
            merged[key] = value
    return merged


def _merge_providers(base: list[Any], overlay: list[Any]) -> list[Any]:
    result = list(base)
    index = {_provider_key(entry): position for position, entry in enumerate(result)}
    for entry in overlay:
        key = _provider_key(entry)
        position = index.get(key) if key is not None else None
        if position is None:
            index[key] = len(result)
            result.append(entry)
        elif isinstance(result[position], Mapping) and isinstance(entry, Mapping):
            result[position] = merge_overlay(result[position], entry)
        else:
            result[position] = entry
    return result


def _load_yaml(path: Path) -> MutableMapping[str, object]:
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigError(f"cannot read configuration file {path}: {exc}") from exc
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise ConfigError(f"invalid YAML in {path}: {exc}") from exc
    if data is None:
        return {}
    if not isinstance(data, MutableMapping):
        raise ConfigError(f"YAML document is not a mapping: {path}")
    return cast(MutableMapping[str, object], data)


def _provider_from_model(model: ProviderConfigModel) -> ProviderConfig:
    rate_limit = (
        RateLimitConfig(
            tokens_per_minute=model.rate_limit.tokens_per_minute,
            burst=model.rate_limit.burst,
        )
        if model.rate_limit is not None
        else None
    )
    pricing = (
        PricingConfig(
            prompt_usd=model.pricing.prompt_usd,
            completion_usd=model.pricing.completion_usd,
            input_per_million=model.pricing.input_per_million,
            output_per_million=model.pricing.output_per_million,
        )
        if model.pricing is not None
        else None
    )
    return ProviderConfig(
        id=model.id or model.name,
        name=model.name,
        api_key=model.api_key,
        base_url=model.base_url,
        default_model=model.default_model,
        timeout_s=model.timeout / 1000.0,
        max_retries=model.max_retries,
        enabled=model.enabled,
        retry=RetryConfig(
            base_delay_s=model.retry.base_delay / 1000.0,
            max_delay_s=model.retry.max_delay / 1000.0,
        ),
        rate_limit=rate_limit,
        pricing=pricing,
        options=dict(model.options),
    )


def _tool_settings(model: ToolSettingsModel | None) -> ToolSettings | None:
    if model is None:
        return None
    return ToolSettings(
        max_providers=model.max_providers,
        timeout_s=_ms(model.timeout),
        require_consensus=model.require_consensus,
        min_reviewers=model.min_reviewers,
    )


def load_config_data(
    data: Mapping[str, Any],
    *,
    source: str = "<memory>",
    environ: Mapping[str, str] | None = None,
    path: Path | None = None,
) -> AppConfig:
    """辞書形式の設定を検証して :class:`AppConfig` に変換する。"""

    expanded = expand_env(data, environ)
    try:
        model = AppConfigModel.model_validate(expanded)
    except ValidationError as exc:
        raise ConfigError(_format_validation_error(source, exc)) from None

    strategies = model.strategies
    cache = model.cache
    synthesis = model.synthesis
    logging_model = model.logging
    timeouts = model.performance.timeouts
    concurrency = model.performance.concurrency
    tools = model.tools

    level = logging_model.level
    if "level" not in logging_model.model_fields_set and model.server.log_level:
        level = model.server.log_level.lower()

    tool_settings: dict[str, ToolSettings] = {}
    for tool_name in ("collaborate", "review", "compare", "refine"):
        settings = _tool_settings(getattr(tools, tool_name))
        if settings is not None:
            tool_settings[tool_name] = settings

    return AppConfig(
        server=ServerConfig(name=model.server.name, version=model.server.version),
        providers=[_provider_from_model(entry) for entry in model.providers],
        strategies=StrategiesConfig(
            default=strategies.default,
            timeout_s=strategies.timeout / 1000.0,
            max_iterations=strategies.max_iterations,
            consensus_threshold=strategies.consensus_threshold,
            similarity_threshold=strategies.similarity_threshold,
            improvement_threshold=strategies.improvement_threshold,
        ),
        cache=CacheConfig(
            enabled=cache.enabled,
            type=cache.type,
            ttl_s=float(cache.ttl),
            max_size=cache.max_size,
            eviction=cache.eviction,
        ),
        synthesis=SynthesisConfig(
            enabled=synthesis.enabled,
            default_method=synthesis.default_method,
            quality_threshold=synthesis.quality_threshold,
            max_insights=synthesis.max_insights,
            max_sentences=synthesis.max_sentences,
            weights=dict(synthesis.weights) if synthesis.weights else None,
            summarizer_provider=synthesis.summarizer_provider,
        ),
        metrics=MetricsConfig(
            enabled=model.metrics.enabled,
            namespace=model.metrics.namespace,
            collection_interval_s=model.metrics.collection_interval / 1000.0,
        ),
        logging=LoggingConfig(
            level=level,
            format=logging_model.format,
            file=LogFileConfig(
                enabled=logging_model.file.enabled,
                filename=logging_model.file.filename,
                max_size=logging_model.file.max_size,
                max_files=logging_model.file.max_files,
            ),
            events_path=Path(logging_model.events_path) if logging_model.events_path else None,
        ),
        concurrency=ConcurrencyConfig(
            max_concurrent_requests=concurrency.max_concurrent_requests,
            max_concurrent_providers=concurrency.max_concurrent_providers,
            queue_size=concurrency.queue_size,
        ),
        timeouts=TimeoutsConfig(
            request_s=_ms(timeouts.request),
            provider_s=_ms(timeouts.provider),
            strategy_s=_ms(timeouts.strategy),
            total_s=_ms(timeouts.total),
        ),
        tools=ToolsConfig(enabled=tuple(tools.enabled), settings=tool_settings),
        path=path,
    )


def load_config(
    path: str | Path,
    *overlays: str | Path,
    environ: Mapping[str, str] | None = None,
) -> AppConfig:
    """YAML 設定を読み込み、``overlays`` を順に重ねてから検証する。"""

    base_path = Path(path)
    data: dict[str, Any] = dict(_load_yaml(base_path))
    sources = [str(base_path)]
    for overlay in overlays:
        overlay_path = Path(overlay)
        data = merge_overlay(data, _load_yaml(overlay_path))
        sources.append(str(overlay_path))
    return load_config_data(
        data, source=" + ".join(sources), environ=environ, path=base_path
    )
