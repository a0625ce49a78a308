"""コスト計算ユーティリティ。"""

from __future__ import annotations

from collections.abc import Iterable, Mapping

from .config import PricingConfig, ProviderConfig
from .provider_spi import TokenUsage

__all__ = ["PricingTable", "compute_cost_usd", "estimate_cost"]


def _cost_for_tokens(tokens: int, price_per_thousand: float) -> float:
    return (tokens / 1000.0) * price_per_thousand


def compute_cost_usd(
    prompt_tokens: int,
    completion_tokens: int,
    prompt_price: float,
    completion_price: float,
) -> float:
    """トークン数と 1k トークン単価からコストを算出する。"""

    prompt_cost = _cost_for_tokens(prompt_tokens, prompt_price)
    completion_cost = _cost_for_tokens(completion_tokens, completion_price)
    return round(prompt_cost + completion_cost, 6)


def estimate_cost(pricing: PricingConfig, usage: TokenUsage) -> float:
    """料金設定に基づいて概算コストを算出する。100 万トークン単価を優先する。"""

    input_per_million = float(pricing.input_per_million or 0.0)
    output_per_million = float(pricing.output_per_million or 0.0)
    if input_per_million or output_per_million:
        cost = (usage.prompt / 1_000_000.0) * input_per_million
        cost += (usage.completion / 1_000_000.0) * output_per_million
        return round(cost, 6)
    return compute_cost_usd(
        usage.prompt,
        usage.completion,
        float(pricing.prompt_usd or 0.0),
        float(pricing.completion_usd or 0.0),
    )


class PricingTable:
    """プロバイダ ID ごとの料金表。"""

    def __init__(self, prices: Mapping[str, PricingConfig] | None = None) -> None:
        self._prices: dict[str, PricingConfig] = dict(prices or {})

    @classmethod
    def from_providers(cls, providers: Iterable[ProviderConfig]) -> PricingTable:
        return cls(
            {provider.id: provider.pricing for provider in providers if provider.pricing is not None}
        )

    def __bool__(self) -> bool:
        return bool(self._prices)

    def set_price(self, provider_id: str, pricing: PricingConfig) -> None:
        self._prices[provider_id] = pricing

    def price_for(self, provider_id: str) -> PricingConfig | None:
        return self._prices.get(provider_id)

    def cost(self, provider_id: str, usage: TokenUsage) -> float:
        pricing = self._prices.get(provider_id)
        if pricing is None:
            return 0.0
        return estimate_cost(pricing, usage)

    def costs(self, usage_by_provider: Mapping[str, TokenUsage]) -> dict[str, float]:
        return {
            provider_id: self.cost(provider_id, usage)
            for provider_id, usage in usage_by_provider.items()
        }
