"""Normalized exception hierarchy for the collaboration core."""

from __future__ import annotations

import asyncio
from collections.abc import Iterable, Sequence
from enum import Enum
from typing import Any


class ErrorKind(str, Enum):
    """Stable error classification shared by outcomes, results and handlers."""

    VALIDATION = "validation"
    AUTHENTICATION = "authentication"
    RATE_LIMITED = "rate_limited"
    TIMEOUT = "timeout"
    SERVER_ERROR = "server_error"
    NETWORK = "network"
    PROVIDER_INIT = "provider_init"
    UNKNOWN_PROVIDER = "unknown_provider"
    NO_VALID_PROVIDERS = "no_valid_providers"
    STRATEGY_FAILED = "strategy_failed"
    SYNTHESIS_FAILED = "synthesis_failed"
    CAPACITY_EXCEEDED = "capacity_exceeded"
    CONFIG = "config"
    INTERNAL = "internal"


class CollabError(Exception):
    """Base class for collaboration-originated errors."""

    kind: ErrorKind = ErrorKind.INTERNAL

    def __init__(self, message: str = "", *, provider: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.provider = provider
        self.attempts = 0


class RetryableError(CollabError):
    """Base class for errors where retrying may succeed."""


class FatalError(CollabError):
    """Base class for errors that must not be retried."""


class ProviderTimeoutError(RetryableError):
    """Raised when a provider call exceeds its timeout."""

    kind = ErrorKind.TIMEOUT


class RateLimitError(RetryableError):
    """Raised when a provider or the local bucket signals rate limiting."""

    kind = ErrorKind.RATE_LIMITED

    def __init__(
        self,
        message: str = "rate limited",
        *,
        retry_after: float | None = None,
        provider: str | None = None,
    ) -> None:
        super().__init__(message, provider=provider)
        self.retry_after = retry_after


class ProviderServerError(RetryableError):
    """Raised for 5xx responses."""

    kind = ErrorKind.SERVER_ERROR

    def __init__(
        self, message: str = "", *, status_code: int | None = None, provider: str | None = None
    ) -> None:
        super().__init__(message, provider=provider)
        self.status_code = status_code


class NetworkError(RetryableError):
    """Raised for transient connection problems."""

    kind = ErrorKind.NETWORK


class ValidationError(FatalError):
    """Raised when caller input is invalid. Lists every violation."""

    kind = ErrorKind.VALIDATION

    def __init__(self, violations: Iterable[str], *, provider: str | None = None) -> None:
        self.violations = list(violations)
        message = "; ".join(self.violations) or "invalid request"
        super().__init__(message, provider=provider)


class AuthenticationError(FatalError):
    """Raised when a provider rejects credentials."""

    kind = ErrorKind.AUTHENTICATION


class ProviderInitError(FatalError):
    """Raised when a provider cannot be registered."""

    kind = ErrorKind.PROVIDER_INIT


class UnknownProviderError(FatalError):
    """Raised for provider ids that were never registered."""

    kind = ErrorKind.UNKNOWN_PROVIDER

    def __init__(self, provider_id: str) -> None:
        super().__init__(f"unknown provider: {provider_id}", provider=provider_id)


class NoValidProvidersError(FatalError):
    """Raised when provider resolution leaves nothing to call."""

    kind = ErrorKind.NO_VALID_PROVIDERS


class StrategyExecutionError(FatalError):
    """Raised for malformed strategy configuration or internal faults."""

    kind = ErrorKind.STRATEGY_FAILED

    def __init__(self, message: str, *, outcomes: Sequence[Any] | None = None) -> None:
        super().__init__(message)
        self.outcomes = list(outcomes) if outcomes is not None else []


class SynthesisError(FatalError):
    """Raised when synthesis cannot produce content from the outcomes."""

    kind = ErrorKind.SYNTHESIS_FAILED


class CapacityExceededError(FatalError):
    """Raised when the admission queue is full."""

    kind = ErrorKind.CAPACITY_EXCEEDED


class ConfigError(FatalError):
    """Raised when configuration files are invalid."""

    kind = ErrorKind.CONFIG


def is_retryable(error: BaseException) -> bool:
    """Return ``True`` when ``error`` may succeed on a later attempt."""

    if isinstance(error, RateLimitError):
        return error.retry_after is not None
    return isinstance(error, RetryableError)


def classify_error(error: BaseException) -> ErrorKind:
    """Map any exception onto an :class:`ErrorKind`."""

    if isinstance(error, CollabError):
        return error.kind
    if isinstance(error, (asyncio.TimeoutError, TimeoutError)):
        return ErrorKind.TIMEOUT
    if isinstance(error, (ConnectionError, OSError)):
        return ErrorKind.NETWORK
    return ErrorKind.INTERNAL


__all__ = [
    "ErrorKind",
    "CollabError",
    "RetryableError",
    "FatalError",
    "ProviderTimeoutError",
    "RateLimitError",
    "ProviderServerError",
    "NetworkError",
    "ValidationError",
    "AuthenticationError",
    "ProviderInitError",
    "UnknownProviderError",
    "NoValidProvidersError",
    "StrategyExecutionError",
    "SynthesisError",
    "CapacityExceededError",
    "ConfigError",
    "is_retryable",
    "classify_error",
]
