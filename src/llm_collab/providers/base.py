"""共通プロバイダ基底クラス。"""

from __future__ import annotations

from abc import ABC, abstractmethod

from ..config import ProviderConfig
from ..errors import ProviderInitError
from ..provider_spi import HealthStatus, Request, RequestValidation, Response, validate_request

__all__ = ["BaseProvider"]


class BaseProvider(ABC):
    """ProviderAdapter 実装向けの共通ユーティリティ。"""

    requires_api_key = True

    def __init__(self, *, name: str) -> None:
        name_text = name.strip()
        if not name_text:
            raise ValueError("provider name must be a non-empty string")
        self._name = name_text
        self._config: ProviderConfig | None = None

    def name(self) -> str:
        return self._name

    def capabilities(self) -> set[str]:
        return {"chat"}

    @property
    def config(self) -> ProviderConfig:
        if self._config is None:
            raise ProviderInitError(f"{self._name} is not initialized", provider=self._name)
        return self._config

    async def initialize(self, config: ProviderConfig) -> None:
        self._config = config

    def validate_request(self, request: Request) -> RequestValidation:
        return validate_request(request)

    def resolve_model(self, request: Request) -> str:
        return request.model or (self._config.default_model if self._config else "")

    @abstractmethod
    async def generate_response(self, request: Request) -> Response: ...

    async def get_health_status(self) -> HealthStatus:
        return HealthStatus(healthy=self._config is not None)

    async def dispose(self) -> None:
        self._config = None
