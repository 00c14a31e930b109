from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional


_STORE_BACKEND_ENV = "STORE_BACKEND"
_RETENTION_DAYS_ENV = "RETENTION_DAYS"
_DATABASE_URL_ENV = "DATABASE_URL"
_INFLUX_URL_ENV = "INFLUX_URL"
_INFLUX_TOKEN_ENV = "INFLUX_TOKEN"
_INFLUX_ORG_ENV = "INFLUX_ORG"
_INFLUX_BUCKET_ENV = "INFLUX_BUCKET"
_INFLUX_LOOKBACK_ENV = "INFLUX_LOOKBACK_DAYS"
_REDIS_URL_ENV = "REDIS_URL"
_QUEUE_STREAM_ENV = "QUEUE_STREAM"
_QUEUE_GROUP_ENV = "QUEUE_GROUP"
_QUEUE_CONSUMER_NAME_ENV = "QUEUE_CONSUMER_NAME"
_QUEUE_ENABLED_ENV = "QUEUE_CONSUMER_ENABLED"
_LOG_LEVEL_ENV = "LOG_LEVEL"
_CORS_ORIGINS_ENV = "CORS_ALLOW_ORIGINS"

_STORE_BACKENDS = {"memory", "relational", "timeseries"}
_TRUTHY = {"1", "true", "yes", "on"}
_FALSY = {"0", "false", "no", "off"}


@dataclass(frozen=True)
class Settings:
    store_backend: str
    retention_days: int
    database_url: str
    influx_url: str
    influx_token: Optional[str]
    influx_org: str
    influx_bucket: str
    influx_lookback_days: int
    redis_url: str
    queue_stream: str
    queue_group: str
    queue_consumer_name: str
    queue_consumer_enabled: bool
    log_level: str
    cors_allow_origins: tuple[str, ...]


def _read_str_env(name: str, default: str) -> str:
    value = os.getenv(name)
    if value is None:
        return default
    candidate = value.strip()
    return candidate or default


def _read_optional_env(name: str, default: Optional[str]) -> Optional[str]:
    value = os.getenv(name)
    if value is None:
        return default
    candidate = value.strip()
    return candidate or None


def _read_positive_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None:
        return default
    candidate = value.strip()
    if not candidate:
        return default
    try:
        parsed = int(candidate)
    except ValueError:
        return default
    return parsed if parsed > 0 else default


def _read_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    candidate = value.strip().lower()
    if candidate in _TRUTHY:
        return True
    if candidate in _FALSY:
        return False
    return default


def _read_csv_env(name: str, default: tuple[str, ...]) -> tuple[str, ...]:
    value = os.getenv(name)
    if value is None:
        return default
    items = tuple(item.strip() for item in value.split(",") if item.strip())
    return items or default


def _read_store_backend(default: str) -> str:
    candidate = _read_str_env(_STORE_BACKEND_ENV, default).lower()
    return candidate if candidate in _STORE_BACKENDS else default


def _read_log_level(default: str) -> str:
    value = os.getenv(_LOG_LEVEL_ENV)
    if value is None:
        return default
    candidate = value.strip()
    if not candidate:
        return default
    return candidate.upper()


@lru_cache
def get_settings() -> Settings:
    return Settings(
        store_backend=_read_store_backend("memory"),
        retention_days=_read_positive_int(_RETENTION_DAYS_ENV, 7),
        database_url=_read_str_env(_DATABASE_URL_ENV, "sqlite:///./tmp/buoys.db"),
        influx_url=_read_str_env(_INFLUX_URL_ENV, "http://localhost:8086"),
        influx_token=_read_optional_env(_INFLUX_TOKEN_ENV, None),
        influx_org=_read_str_env(_INFLUX_ORG_ENV, "smart-buoy"),
        influx_bucket=_read_str_env(_INFLUX_BUCKET_ENV, "device-data"),
        influx_lookback_days=_read_positive_int(_INFLUX_LOOKBACK_ENV, 30),
        redis_url=_read_str_env(_REDIS_URL_ENV, "redis://localhost:6379/0"),
        queue_stream=_read_str_env(_QUEUE_STREAM_ENV, "smartbuoy:readings"),
        queue_group=_read_str_env(_QUEUE_GROUP_ENV, "buoy-ingest"),
        queue_consumer_name=_read_str_env(_QUEUE_CONSUMER_NAME_ENV, "ingest-1"),
        queue_consumer_enabled=_read_bool(_QUEUE_ENABLED_ENV, False),
        log_level=_read_log_level("INFO"),
        cors_allow_origins=_read_csv_env(_CORS_ORIGINS_ENV, ("*",)),
    )
