from __future__ import annotations

from typing import Iterable

from datastore.factory import StoreBackend, build_default_store
from datastore.memory import MemoryStore
from datastore.relational import RelationalStore
from messaging.redis_streams import build_default_queue
from settings import get_settings


def _clear_caches(caches: Iterable) -> None:
    for cache in caches:
        cache.cache_clear()


def test_defaults(monkeypatch) -> None:
    for name in (
        "STORE_BACKEND",
        "RETENTION_DAYS",
        "INFLUX_LOOKBACK_DAYS",
        "QUEUE_CONSUMER_ENABLED",
        "QUEUE_STREAM",
        "LOG_LEVEL",
        "INFLUX_TOKEN",
        "CORS_ALLOW_ORIGINS",
    ):
        monkeypatch.delenv(name, raising=False)
    get_settings.cache_clear()

    try:
        settings = get_settings()
        assert settings.store_backend == StoreBackend.memory.value
        assert settings.retention_days == 7
        assert settings.influx_lookback_days == 30
        assert settings.influx_token is None
        assert settings.queue_consumer_enabled is False
        assert settings.queue_stream == "smartbuoy:readings"
        assert settings.log_level == "INFO"
        assert settings.cors_allow_origins == ("*",)
    finally:
        get_settings.cache_clear()


def test_invalid_values_fall_back_to_defaults(monkeypatch) -> None:
    monkeypatch.setenv("STORE_BACKEND", "cassandra")
    monkeypatch.setenv("RETENTION_DAYS", "-3")
    monkeypatch.setenv("INFLUX_LOOKBACK_DAYS", "soon")
    monkeypatch.setenv("QUEUE_CONSUMER_ENABLED", "maybe")
    get_settings.cache_clear()

    try:
        settings = get_settings()
        assert settings.store_backend == "memory"
        assert settings.retention_days == 7
        assert settings.influx_lookback_days == 30
        assert settings.queue_consumer_enabled is False
    finally:
        get_settings.cache_clear()


def test_environment_overrides_apply(monkeypatch, tmp_path) -> None:
    database = tmp_path / "db" / "buoys.db"

    monkeypatch.setenv("STORE_BACKEND", "Relational")
    monkeypatch.setenv("RETENTION_DAYS", "3")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{database}")
    monkeypatch.setenv("QUEUE_STREAM", "custom-stream")
    monkeypatch.setenv("QUEUE_GROUP", "custom-group")
    monkeypatch.setenv("QUEUE_CONSUMER_ENABLED", "yes")
    monkeypatch.setenv("LOG_LEVEL", "debug")

    caches = (get_settings, build_default_store, build_default_queue)
    _clear_caches(caches)

    store = build_default_store()
    queue = build_default_queue()

    try:
        settings = get_settings()
        assert settings.queue_consumer_enabled is True
        assert settings.log_level == "DEBUG"
        assert isinstance(store, RelationalStore)
        assert store.retention_days == 3
        assert database.exists()
        assert queue.stream == "custom-stream"
        assert queue.group == "custom-group"
        assert queue.consumer_name == "ingest-1"
    finally:
        store.close()
        queue.close()
        _clear_caches(caches)


def test_backend_argument_overrides_environment(monkeypatch) -> None:
    monkeypatch.setenv("STORE_BACKEND", "relational")
    _clear_caches((get_settings, build_default_store))

    try:
        assert isinstance(build_default_store("memory"), MemoryStore)
    finally:
        _clear_caches((get_settings, build_default_store))


def test_cors_origins_are_read_as_a_list(monkeypatch) -> None:
    monkeypatch.setenv("CORS_ALLOW_ORIGINS", " http://localhost:3000, ,https://dash.example ")
    get_settings.cache_clear()
    try:
        assert get_settings().cors_allow_origins == ("http://localhost:3000", "https://dash.example")
    finally:
        get_settings.cache_clear()

    monkeypatch.setenv("CORS_ALLOW_ORIGINS", " , ")
    get_settings.cache_clear()
    try:
        assert get_settings().cors_allow_origins == ("*",)
    finally:
        get_settings.cache_clear()
