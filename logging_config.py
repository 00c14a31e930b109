from __future__ import annotations

import logging
import time
from logging.config import dictConfig
from typing import Iterable, Sequence

from settings import get_settings

_DEFAULT_EXTRA_KEYS = (
    "source_id",
    "measurement_type",
    "message_id",
    "backend",
    "batch_size",
    "deleted_count",
    "delay_ms",
    "consumer_state",
    "reason",
)

_QUIET_LOGGERS = ("httpx", "httpcore", "sqlalchemy.engine", "redis")

_configured = False


class ContextualFormatter(logging.Formatter):
    """Appends whitelisted ``extra=`` fields as ``key=value`` pairs, in UTC."""

    converter = time.gmtime

    def __init__(
        self,
        fmt: str | None = None,
        datefmt: str | None = None,
        style: str = "%",
        extra_keys: Iterable[str] | None = None,
    ) -> None:
        super().__init__(fmt=fmt, datefmt=datefmt, style=style)
        self._extra_keys: Sequence[str] = tuple(extra_keys or _DEFAULT_EXTRA_KEYS)

    def format(self, record: logging.LogRecord) -> str:
        message = super().format(record)
        context = [
            f"{key}={getattr(record, key)}"
            for key in self._extra_keys
            if getattr(record, key, None) is not None
        ]
        if context:
            return f"{message} | {' '.join(context)}"
        return message


def _resolve_level(level: str | int) -> str | int:
    if isinstance(level, int):
        return level
    name = level.strip().upper()
    # Unknown names would make dictConfig raise at startup.
    return name if isinstance(logging.getLevelName(name), int) else "INFO"


def configure_logging(level: str | int | None = None) -> None:
    """Configure application-wide logging with contextual formatting."""
    global _configured
    if _configured:
        return

    log_level = _resolve_level(level if level is not None else get_settings().log_level)

    dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {
                "contextual": {
                    "()": "logging_config.ContextualFormatter",
                    "fmt": "%(asctime)sZ | %(levelname)s | %(threadName)s | %(name)s | %(message)s",
                    "datefmt": "%Y-%m-%dT%H:%M:%S",
                    "style": "%",
                    "extra_keys": list(_DEFAULT_EXTRA_KEYS),
                }
            },
            "handlers": {
                "default": {
                    "class": "logging.StreamHandler",
                    "level": log_level,
                    "formatter": "contextual",
                }
            },
            "root": {"handlers": ["default"], "level": log_level},
            "loggers": {name: {"level": "WARNING"} for name in _QUIET_LOGGERS},
        }
    )

    _configured = True


def reset_logging() -> None:
    """Allow ``configure_logging`` to run again, e.g. after settings change."""
    global _configured
    _configured = False
