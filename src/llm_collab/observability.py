"""Logging configuration and structured event loggers."""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from datetime import datetime, timezone
import json
import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path
import sys
from threading import Lock
from typing import Any, Protocol, TextIO

from .config import LogFileConfig

PathLike = str | Path

LOGGER = logging.getLogger(__name__)

_RESERVED_ATTRS = frozenset(
    vars(logging.LogRecord("", logging.INFO, "", 0, "", (), None)).keys()
) | {"message", "asctime"}

TEXT_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


class JsonFormatter(logging.Formatter):
    """Render records as one JSON object per line, including ``extra`` fields."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname.lower(),
            "logger": record.name,
            "message": record.getMessage(),
        }
        for key, value in record.__dict__.items():
            if key in _RESERVED_ATTRS or key.startswith("_"):
                continue
            payload[key] = value
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False, default=str)


def configure_logging(
    level: str = "info",
    fmt: str = "text",
    *,
    file: LogFileConfig | None = None,
    stream: TextIO | None = None,
    logger_name: str = "llm_collab",
) -> logging.Logger:
    """Install a console handler (and optional rotating file) on ``logger_name``."""

    logger = logging.getLogger(logger_name)
    normalized = "warning" if level.lower() == "warn" else level.lower()
    logger.setLevel(normalized.upper())
    for handler in list(logger.handlers):
        if getattr(handler, "_llm_collab_handler", False):
            logger.removeHandler(handler)
            handler.close()

    formatter: logging.Formatter
    if fmt == "json":
        formatter = JsonFormatter()
    else:
        formatter = logging.Formatter(TEXT_FORMAT)

    handlers: list[logging.Handler] = [logging.StreamHandler(stream or sys.stderr)]
    if file is not None and file.enabled:
        handlers.append(
            RotatingFileHandler(
                file.filename,
                maxBytes=file.max_size,
                backupCount=file.max_files,
                encoding="utf-8",
            )
        )
    for handler in handlers:
        handler.setFormatter(formatter)
        handler._llm_collab_handler = True  # type: ignore[attr-defined]
        logger.addHandler(handler)
    return logger


class EventLogger(Protocol):
    """Protocol for structured event loggers."""

    def emit(self, event_type: str, record: Mapping[str, Any]) -> None:
        """Persist ``record`` for ``event_type``."""


class JsonlLogger:
    """Append structured events to a JSONL file with basic locking."""

    def __init__(self, path: PathLike) -> None:
        self._path = Path(path)
        self._lock = Lock()

    @property
    def path(self) -> Path:
        return self._path

    def emit(self, event_type: str, record: Mapping[str, Any]) -> None:
        payload = dict(record)
        payload.setdefault("event", event_type)

        target = self._path
        parent = target.parent
        if parent != Path(""):
            parent.mkdir(parents=True, exist_ok=True)

        with self._lock:
            with target.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(payload, ensure_ascii=False, default=str) + "\n")


class MemoryEventLogger:
    """Keep events in memory; handy for tests and debugging."""

    def __init__(self) -> None:
        self.events: list[tuple[str, dict[str, Any]]] = []
        self._lock = Lock()

    def emit(self, event_type: str, record: Mapping[str, Any]) -> None:
        with self._lock:
            self.events.append((event_type, dict(record)))

    def of_type(self, event_type: str) -> list[dict[str, Any]]:
        with self._lock:
            return [record for kind, record in self.events if kind == event_type]


class CompositeLogger:
    """Fan out events to multiple loggers while isolating failures."""

    def __init__(self, loggers: Iterable[EventLogger] | None = None) -> None:
        self._loggers: list[EventLogger] = list(loggers or ())
        self._lock = Lock()

    def add(self, logger: EventLogger) -> None:
        with self._lock:
            self._loggers.append(logger)

    def clear(self) -> None:
        with self._lock:
            self._loggers.clear()

    def emit(self, event_type: str, record: Mapping[str, Any]) -> None:
        with self._lock:
            loggers = tuple(self._loggers)

        for logger in loggers:
            try:
                logger.emit(event_type, record)
            except Exception:  # pragma: no cover - logger isolation
                LOGGER.debug("event logger %r failed", logger, exc_info=True)
                continue


__all__ = [
    "CompositeLogger",
    "EventLogger",
    "JsonFormatter",
    "JsonlLogger",
    "MemoryEventLogger",
    "configure_logging",
]
