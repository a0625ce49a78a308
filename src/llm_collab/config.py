"""設定モデルの dataclass 定義。"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

__all__ = [
    "RetryConfig",
    "RateLimitConfig",
    "PricingConfig",
    "ProviderConfig",
    "StrategiesConfig",
    "CacheConfig",
    "SynthesisConfig",
    "MetricsConfig",
    "LogFileConfig",
    "LoggingConfig",
    "ConcurrencyConfig",
    "TimeoutsConfig",
    "ToolSettings",
    "ToolsConfig",
    "ServerConfig",
    "AppConfig",
]


@dataclass
class RetryConfig:
    """再試行の待機時間設定 (秒)。"""

    base_delay_s: float = 1.0
    max_delay_s: float = 30.0


@dataclass
class RateLimitConfig:
    """トークンバケットのしきい値。"""

    tokens_per_minute: int = 60
    burst: int = 10


@dataclass
class PricingConfig:
    """1k トークン / 100 万トークンあたりの料金設定。"""

    prompt_usd: float = 0.0
    completion_usd: float = 0.0
    input_per_million: float = 0.0
    output_per_million: float = 0.0


@dataclass
class ProviderConfig:
    """プロバイダ設定。"""

    id: str
    name: str
    api_key: str = ""
    base_url: str = ""
    default_model: str = ""
    timeout_s: float = 30.0
    max_retries: int = 3
    enabled: bool = True
    retry: RetryConfig = field(default_factory=RetryConfig)
    rate_limit: RateLimitConfig | None = None
    pricing: PricingConfig | None = None
    options: Mapping[str, Any] = field(default_factory=dict)


@dataclass
class StrategiesConfig:
    """戦略の既定値。"""

    default: str = "parallel"
    timeout_s: float = 60.0
    max_iterations: int = 3
    consensus_threshold: float = 0.7
    similarity_threshold: float = 0.6
    improvement_threshold: float = 0.05


@dataclass
class CacheConfig:
    """結果キャッシュ設定。"""

    enabled: bool = True
    type: str = "memory"
    ttl_s: float = 3600.0
    max_size: int = 1000
    eviction: str = "lru"


@dataclass
class SynthesisConfig:
    """統合エンジン設定。"""

    enabled: bool = True
    default_method: str = "consensus"
    quality_threshold: float = 0.0
    max_insights: int = 5
    max_sentences: int = 8
    weights: Mapping[str, float] | None = None
    summarizer_provider: str | None = None


@dataclass
class MetricsConfig:
    """メトリクス出力設定。"""

    enabled: bool = True
    namespace: str = "llm_collab"
    collection_interval_s: float = 5.0


@dataclass
class LogFileConfig:
    """ファイルへのログ出力設定。"""

    enabled: bool = False
    filename: str = "llm-collab.log"
    max_size: int = 5 * 1024 * 1024
    max_files: int = 3


@dataclass
class LoggingConfig:
    """ログ設定。"""

    level: str = "info"
    format: str = "text"
    file: LogFileConfig = field(default_factory=LogFileConfig)
    events_path: Path | None = None


@dataclass
class ConcurrencyConfig:
    """同時実行数の上限。"""

    max_concurrent_requests: int = 5
    max_concurrent_providers: int = 2
    queue_size: int = 50


@dataclass
class TimeoutsConfig:
    """処理単位ごとのタイムアウト (秒)。"""

    request_s: float | None = None
    provider_s: float | None = None
    strategy_s: float | None = None
    total_s: float | None = None


@dataclass
class ToolSettings:
    """ツール単位の上書き設定。"""

    max_providers: int | None = None
    timeout_s: float | None = None
    require_consensus: bool = False
    min_reviewers: int = 1


@dataclass
class ToolsConfig:
    """有効なツールとその設定。"""

    enabled: tuple[str, ...] = ("collaborate", "review", "compare", "refine")
    settings: Mapping[str, ToolSettings] = field(default_factory=dict)

    def settings_for(self, tool: str) -> ToolSettings:
        return self.settings.get(tool) or ToolSettings()


@dataclass
class ServerConfig:
    """サーバ識別情報。"""

    name: str = "llm-collab"
    version: str = "0.1.0"


@dataclass
class AppConfig:
    """アプリケーション全体の設定。"""

    server: ServerConfig = field(default_factory=ServerConfig)
    providers: list[ProviderConfig] = field(default_factory=list)
    strategies: StrategiesConfig = field(default_factory=StrategiesConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    synthesis: SynthesisConfig = field(default_factory=SynthesisConfig)
    metrics: MetricsConfig = field(default_factory=MetricsConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    concurrency: ConcurrencyConfig = field(default_factory=ConcurrencyConfig)
    timeouts: TimeoutsConfig = field(default_factory=TimeoutsConfig)
    tools: ToolsConfig = field(default_factory=ToolsConfig)
    path: Path | None = None

    def enabled_providers(self) -> list[ProviderConfig]:
        return [provider for provider in self.providers if provider.enabled]
