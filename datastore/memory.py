from __future__ import annotations

import logging
from bisect import bisect_left, insort_right
from threading import Lock
from typing import Callable, Dict, Iterable, Optional, Tuple

from datastore.base import DEFAULT_RETENTION_DAYS, present, retention_cutoff
from exceptions import UnknownSourceError
from models.records import Deployment, Reading, now_ms

logger = logging.getLogger(__name__)


def _timestamp(reading: Reading) -> int:
    return reading.timestamp


class MemoryStore:
    """Process-local store holding each buoy's series as an immutable sorted tuple.

    Writers serialize per source id, so updates for different buoys never wait
    on each other. Readers never lock: they copy whichever tuple is current.
    """

    def __init__(
        self,
        retention_days: int = DEFAULT_RETENTION_DAYS,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self.retention_days = retention_days
        self._clock = clock
        self._series: Dict[int, Tuple[Reading, ...]] = {}
        self._series_locks: Dict[int, Lock] = {}
        self._registry_lock = Lock()
        self._deployments: Dict[int, Deployment] = {}
        self._deployments_lock = Lock()

    def update(self, readings: Iterable[Optional[Reading]]) -> None:
        batch = present(readings)
        if not batch:
            return

        cutoff = retention_cutoff(self._clock(), self.retention_days)
        by_source: Dict[int, list[Reading]] = {}
        for reading in batch:
            by_source.setdefault(reading.source_id, []).append(reading)

        for source_id, incoming in by_source.items():
            with self._lock_for(source_id):
                series = list(self._series.get(source_id, ()))
                for reading in incoming:
                    insort_right(series, reading, key=_timestamp)
                retained = tuple(r for r in series if r.timestamp >= cutoff)
                if retained:
                    self._series[source_id] = retained
                else:
                    self._series.pop(source_id, None)

            expired = len(series) - len(retained)
            if expired:
                logger.debug(
                    "Expired readings past retention window",
                    extra={"source_id": source_id, "deleted_count": expired},
                )

    def get_history(self, source_id: int) -> list[Reading]:
        return list(self._retained(source_id))

    def get_latest(
        self, source_id: int, measurement_type: Optional[str] = None
    ) -> Optional[Reading]:
        for reading in reversed(self._retained(source_id)):
            if measurement_type is None or reading.measurement_type == measurement_type:
                return reading
        return None

    def save_deployment(self, deployment: Deployment) -> None:
        with self._deployments_lock:
            self._deployments[deployment.buoy_id] = deployment

    def get_deployment(self, buoy_id: int) -> Optional[Deployment]:
        with self._deployments_lock:
            return self._deployments.get(buoy_id)

    def close(self) -> None:
        return None

    def _lock_for(self, source_id: int) -> Lock:
        with self._registry_lock:
            return self._series_locks.setdefault(source_id, Lock())

    def _retained(self, source_id: int) -> Tuple[Reading, ...]:
        series = self._series.get(source_id)
        if series:
            cutoff = retention_cutoff(self._clock(), self.retention_days)
            retained = series[bisect_left(series, cutoff, key=_timestamp):]
            if retained:
                return retained
        raise UnknownSourceError(source_id)
