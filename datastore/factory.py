from __future__ import annotations

import logging
from enum import Enum
from functools import lru_cache
from typing import Optional

from datastore.base import Store
from datastore.memory import MemoryStore
from datastore.relational import RelationalStore
from datastore.timeseries import TimeSeriesStore
from settings import Settings, get_settings

logger = logging.getLogger(__name__)


class StoreBackend(str, Enum):
    """Persistence strategies a process can be started with."""

    memory = "memory"
    relational = "relational"
    timeseries = "timeseries"


def build_store(backend: StoreBackend, settings: Settings) -> Store:
    if backend is StoreBackend.memory:
        return MemoryStore(retention_days=settings.retention_days)
    if backend is StoreBackend.relational:
        return RelationalStore.from_url(
            settings.database_url, retention_days=settings.retention_days
        )
    return TimeSeriesStore.from_url(
        settings.influx_url,
        token=settings.influx_token,
        org=settings.influx_org,
        bucket=settings.influx_bucket,
        lookback_days=settings.influx_lookback_days,
    )


@lru_cache
def build_default_store(backend: Optional[str] = None) -> Store:
    """Factory that wires the store selected by configuration."""
    settings = get_settings()
    selected = StoreBackend(backend or settings.store_backend)
    logger.info("Using %s store", selected.value, extra={"backend": selected.value})
    return build_store(selected, settings)
