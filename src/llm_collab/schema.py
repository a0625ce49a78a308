"""設定ファイル検証用の Pydantic モデル。"""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .quality import QualityWeights

__all__ = [
    "ServerConfigModel",
    "RetryConfigModel",
    "RateLimitConfigModel",
    "PricingConfigModel",
    "ProviderConfigModel",
    "StrategiesConfigModel",
    "CacheConfigModel",
    "SynthesisConfigModel",
    "MetricsConfigModel",
    "LogFileConfigModel",
    "LogConsoleConfigModel",
    "LoggingConfigModel",
    "ConcurrencyConfigModel",
    "TimeoutsConfigModel",
    "PerformanceConfigModel",
    "ToolSettingsModel",
    "AppConfigModel",
]

_LOG_LEVELS = {"debug", "info", "warning", "warn", "error", "critical"}


class ServerConfigModel(BaseModel):
    """サーバ識別情報のスキーマ。"""

    model_config = ConfigDict(extra="allow")

    name: str = "llm-collab"
    version: str = "0.1.0"
    log_level: str | None = None


class RetryConfigModel(BaseModel):
    """再試行待機時間のスキーマ (ミリ秒)。"""

    model_config = ConfigDict(extra="forbid")

    base_delay: int = Field(default=1000, ge=0)
    max_delay: int = Field(default=30000, ge=0)


class RateLimitConfigModel(BaseModel):
    """レートリミット設定のスキーマ。"""

    model_config = ConfigDict(extra="forbid")

    tokens_per_minute: int = Field(default=60, gt=0)
    burst: int = Field(default=10, gt=0)


class PricingConfigModel(BaseModel):
    """料金設定のスキーマ。"""

    model_config = ConfigDict(extra="forbid")

    prompt_usd: float = Field(default=0.0, ge=0)
    completion_usd: float = Field(default=0.0, ge=0)
    input_per_million: float = Field(default=0.0, ge=0)
    output_per_million: float = Field(default=0.0, ge=0)


class ProviderConfigModel(BaseModel):
    """プロバイダ設定のスキーマ。``timeout`` はミリ秒。"""

    model_config = ConfigDict(extra="forbid")

    name: str = Field(min_length=1)
    id: str | None = None
    enabled: bool = True
    api_key: str = ""
    base_url: str = ""
    timeout: int = Field(default=30000, gt=0)
    max_retries: int = Field(default=3, ge=0)
    default_model: str = ""
    retry: RetryConfigModel = Field(default_factory=RetryConfigModel)
    rate_limit: RateLimitConfigModel | None = None
    pricing: PricingConfigModel | None = None
    options: dict[str, Any] = Field(default_factory=dict)


class StrategiesConfigModel(BaseModel):
    """戦略既定値のスキーマ。"""

    model_config = ConfigDict(extra="forbid")

    default: Literal["parallel", "sequential", "consensus", "iterative"] = "parallel"
    timeout: int = Field(default=60000, gt=0)
    max_iterations: int = Field(default=3, gt=0)
    consensus_threshold: float = Field(default=0.7, ge=0, le=1)
    similarity_threshold: float = Field(default=0.6, ge=0, le=1)
    improvement_threshold: float = Field(default=0.05, ge=0)


class CacheConfigModel(BaseModel):
    """キャッシュ設定のスキーマ。``ttl`` は秒。"""

    model_config = ConfigDict(extra="forbid")

    enabled: bool = True
    type: Literal["memory"] = "memory"
    ttl: int = Field(default=3600, gt=0)
    max_size: int = Field(default=1000, gt=0)
    eviction: Literal["lru", "lfu", "fifo"] = "lru"


class SynthesisConfigModel(BaseModel):
    """統合設定のスキーマ。"""

    model_config = ConfigDict(extra="forbid")

    enabled: bool = True
    default_method: Literal[
        "consensus", "weighted_merge", "best_of", "comprehensive", "extractive", "abstractive"
    ] = "consensus"
    quality_threshold: float = Field(default=0.0, ge=0, le=1)
    max_insights: int = Field(default=5, gt=0)
    max_sentences: int = Field(default=8, gt=0)
    weights: dict[str, float] | None = None
    summarizer_provider: str | None = None

    @field_validator("weights")
    @classmethod
    def _check_weights(cls, value: dict[str, float] | None) -> dict[str, float] | None:
        if value:
            QualityWeights.from_mapping(value)
        return value


class MetricsConfigModel(BaseModel):
    """メトリクス設定のスキーマ。"""

    model_config = ConfigDict(extra="forbid")

    enabled: bool = True
    namespace: str = "llm_collab"
    collection_interval: int = Field(default=5000, gt=0)


class LogConsoleConfigModel(BaseModel):
    model_config = ConfigDict(extra="forbid")

    enabled: bool = True
    colorize: bool = False


class LogFileConfigModel(BaseModel):
    model_config = ConfigDict(extra="forbid")

    enabled: bool = False
    filename: str = "llm-collab.log"
    max_size: int = Field(default=5 * 1024 * 1024, gt=0)
    max_files: int = Field(default=3, ge=0)


class LoggingConfigModel(BaseModel):
    """ログ設定のスキーマ。"""

    model_config = ConfigDict(extra="forbid")

    level: str = "info"
    format: Literal["text", "json"] = "text"
    console: LogConsoleConfigModel = Field(default_factory=LogConsoleConfigModel)
    file: LogFileConfigModel = Field(default_factory=LogFileConfigModel)
    events_path: str | None = None

    @field_validator("level")
    @classmethod
    def _check_level(cls, value: str) -> str:
        lowered = value.lower()
        if lowered not in _LOG_LEVELS:
            raise ValueError(f"unsupported log level: {value}")
        return lowered


class ConcurrencyConfigModel(BaseModel):
    """同時実行数のスキーマ。"""

    model_config = ConfigDict(extra="forbid")

    max_concurrent_requests: int = Field(default=5, gt=0)
    max_concurrent_providers: int = Field(default=2, gt=0)
    queue_size: int = Field(default=50, ge=0)


class TimeoutsConfigModel(BaseModel):
    """タイムアウトのスキーマ (ミリ秒)。"""

    model_config = ConfigDict(extra="forbid")

    request: int | None = Field(default=None, gt=0)
    provider: int | None = Field(default=None, gt=0)
    strategy: int | None = Field(default=None, gt=0)
    total: int | None = Field(default=None, gt=0)


class PerformanceConfigModel(BaseModel):
    model_config = ConfigDict(extra="forbid")

    timeouts: TimeoutsConfigModel = Field(default_factory=TimeoutsConfigModel)
    concurrency: ConcurrencyConfigModel = Field(default_factory=ConcurrencyConfigModel)


class ToolSettingsModel(BaseModel):
    """ツール単位設定のスキーマ。``timeout`` はミリ秒。"""

    model_config = ConfigDict(extra="forbid")

    max_providers: int | None = Field(default=None, gt=0)
    timeout: int | None = Field(default=None, gt=0)
    require_consensus: bool = False
    min_reviewers: int = Field(default=1, gt=0)


_TOOL_NAMES = ("collaborate", "review", "compare", "refine")


class ToolsConfigModel(BaseModel):
    model_config = ConfigDict(extra="forbid")

    enabled: list[Literal["collaborate", "review", "compare", "refine"]] = Field(
        default_factory=lambda: list(_TOOL_NAMES)
    )
    collaborate: ToolSettingsModel | None = None
    review: ToolSettingsModel | None = None
    compare: ToolSettingsModel | None = None
    refine: ToolSettingsModel | None = None


class AppConfigModel(BaseModel):
    """設定ファイル全体のスキーマ。未知のトップレベル節は無視する。"""

    model_config = ConfigDict(extra="allow")

    server: ServerConfigModel = Field(default_factory=ServerConfigModel)
    providers: list[ProviderConfigModel] = Field(default_factory=list)
    strategies: StrategiesConfigModel = Field(default_factory=StrategiesConfigModel)
    cache: CacheConfigModel = Field(default_factory=CacheConfigModel)
    synthesis: SynthesisConfigModel = Field(default_factory=SynthesisConfigModel)
    metrics: MetricsConfigModel = Field(default_factory=MetricsConfigModel)
    logging: LoggingConfigModel = Field(default_factory=LoggingConfigModel)
    performance: PerformanceConfigModel = Field(default_factory=PerformanceConfigModel)
    tools: ToolsConfigModel = Field(default_factory=ToolsConfigModel)

    @model_validator(mode="after")
    def _unique_provider_ids(self) -> AppConfigModel:
        seen: set[str] = set()
        for provider in self.providers:
            provider_id = provider.id or provider.name
            if provider_id in seen:
                raise ValueError(f"duplicate provider id: {provider_id}")
            seen.add(provider_id)
        return self
