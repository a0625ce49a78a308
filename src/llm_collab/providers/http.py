"""Shared plumbing for providers that talk HTTP through ``requests``."""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Mapping
import time
from typing import Any, Protocol

import requests
from requests import exceptions as requests_exceptions

from ..config import ProviderConfig
from ..errors import (
    AuthenticationError,
    CollabError,
    NetworkError,
    ProviderInitError,
    ProviderServerError,
    ProviderTimeoutError,
    RateLimitError,
    ValidationError,
)
from ..provider_spi import HealthStatus, TokenUsage
from .base import BaseProvider

__all__ = [
    "HttpProvider",
    "SessionProtocol",
    "coerce_usage",
    "normalize_error",
    "parse_retry_after",
]


class SessionProtocol(Protocol):
    headers: Any

    def post(self, url: str, *args: Any, **kwargs: Any) -> Any: ...
    def get(self, url: str, *args: Any, **kwargs: Any) -> Any: ...
    def close(self) -> None: ...


def parse_retry_after(headers: Mapping[str, Any] | None) -> float | None:
    if not headers:
        return None
    value = headers.get("retry-after") or headers.get("Retry-After")
    if value is None:
        return None
    try:
        seconds = float(value)
    except (TypeError, ValueError):
        return None
    return max(0.0, seconds)


def normalize_error(exc: Exception, provider: str | None = None) -> Exception:
    """Translate ``requests`` failures and HTTP status codes into collab errors."""

    if isinstance(exc, CollabError):
        return exc
    if isinstance(exc, requests_exceptions.Timeout):
        return ProviderTimeoutError(str(exc), provider=provider)
    if isinstance(exc, requests_exceptions.ConnectionError):
        return NetworkError(str(exc), provider=provider)
    if isinstance(exc, requests_exceptions.HTTPError):
        response = getattr(exc, "response", None)
        status = getattr(response, "status_code", None)
        try:
            code = int(status) if status is not None else None
        except (TypeError, ValueError):
            code = None
        message = str(exc)
        if code in {401, 403}:
            return AuthenticationError(message, provider=provider)
        if code == 429:
            headers = getattr(response, "headers", None)
            return RateLimitError(
                message, retry_after=parse_retry_after(headers), provider=provider
            )
        if code in {408, 504}:
            return ProviderTimeoutError(message, provider=provider)
        if code is not None and code >= 500:
            return ProviderServerError(message, status_code=code, provider=provider)
        if code is not None and 400 <= code < 500:
            return ValidationError([message], provider=provider)
        return ProviderServerError(message, status_code=code, provider=provider)
    if isinstance(exc, requests_exceptions.RequestException):
        return NetworkError(str(exc), provider=provider)
    return exc


def coerce_usage(
    payload: Mapping[str, Any] | None,
    *,
    prompt_key: str = "prompt_tokens",
    completion_key: str = "completion_tokens",
) -> TokenUsage:
    if not isinstance(payload, Mapping):
        return TokenUsage()
    try:
        prompt_value = int(payload.get(prompt_key) or 0)
    except (TypeError, ValueError):
        prompt_value = 0
    try:
        completion_value = int(payload.get(completion_key) or 0)
    except (TypeError, ValueError):
        completion_value = 0
    return TokenUsage(prompt=prompt_value, completion=completion_value)


class HttpProvider(BaseProvider):
    """Runs blocking ``requests`` calls in a worker thread."""

    health_path = "/models"

    def __init__(
        self,
        *,
        name: str,
        session_factory: Callable[[], SessionProtocol] | None = None,
    ) -> None:
        super().__init__(name=name)
        self._session_factory = session_factory or requests.Session
        self._session: SessionProtocol | None = None

    @property
    def base_url(self) -> str:
        return self.config.base_url.rstrip("/")

    def default_headers(self, config: ProviderConfig) -> dict[str, str]:
        return {"Content-Type": "application/json"}

    async def initialize(self, config: ProviderConfig) -> None:
        await super().initialize(config)
        session = self._session_factory()
        headers = getattr(session, "headers", None)
        if headers is not None:
            headers.update(self.default_headers(config))
        self._session = session

    def _require_session(self) -> SessionProtocol:
        if self._session is None:
            raise ProviderInitError(f"{self._name} is not initialized", provider=self._name)
        return self._session

    def _post_json(self, path: str, payload: Mapping[str, Any]) -> tuple[Mapping[str, Any], int]:
        session = self._require_session()
        url = f"{self.base_url}{path}"
        ts0 = time.monotonic()
        try:
            response = session.post(url, json=dict(payload), timeout=self.config.timeout_s)
        except Exception as exc:
            raise normalize_error(exc, self._name) from exc
        try:
            response.raise_for_status()
            data = response.json()
        except Exception as exc:
            raise normalize_error(exc, self._name) from exc
        finally:
            close = getattr(response, "close", None)
            if callable(close):
                close()
        latency_ms = int((time.monotonic() - ts0) * 1000)
        if not isinstance(data, Mapping):
            raise ProviderServerError(
                "provider returned a non-object body", provider=self._name
            )
        return data, latency_ms

    async def post_json(self, path: str, payload: Mapping[str, Any]) -> tuple[Mapping[str, Any], int]:
        return await asyncio.to_thread(self._post_json, path, payload)

    def _probe(self) -> HealthStatus:
        session = self._require_session()
        ts0 = time.monotonic()
        try:
            response = session.get(
                f"{self.base_url}{self.health_path}", timeout=self.config.timeout_s
            )
            response.raise_for_status()
        except Exception as exc:
            error = normalize_error(exc, self._name)
            return HealthStatus(healthy=False, detail=f"{type(error).__name__}: {error}")
        latency_ms = int((time.monotonic() - ts0) * 1000)
        return HealthStatus(healthy=True, latency_ms=latency_ms)

    async def get_health_status(self) -> HealthStatus:
        if self._session is None:
            return HealthStatus(healthy=False, detail="not initialized")
        return await asyncio.to_thread(self._probe)

    async def dispose(self) -> None:
        session, self._session = self._session, None
        if session is not None:
            close = getattr(session, "close", None)
            if callable(close):
                close()
        await super().dispose()
