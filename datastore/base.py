"""Storage contract shared by every reading backend."""

from __future__ import annotations

from typing import Iterable, Optional, Protocol

from models.records import Deployment, Reading

DAY_MS = 24 * 60 * 60 * 1000
DEFAULT_RETENTION_DAYS = 7

LATITUDE = "latitude"
LONGITUDE = "longitude"


def retention_cutoff(now: int, retention_days: int = DEFAULT_RETENTION_DAYS) -> int:
    """Oldest timestamp (inclusive) still reachable at ``now``."""
    return now - retention_days * DAY_MS


def present(readings: Iterable[Optional[Reading]]) -> list[Reading]:
    """Drop ``None`` entries from a submitted batch."""
    return [reading for reading in readings if reading is not None]


class Store(Protocol):
    """Operations every backend implements with identical observable behavior.

    ``get_history`` and ``get_latest`` raise ``UnknownSourceError`` when the
    source has no retained readings. ``get_latest`` returns ``None`` when the
    source is known but has no reading of the requested type. Among readings
    sharing a timestamp the later insertion is the latest.
    """

    def update(self, readings: Iterable[Optional[Reading]]) -> None: ...

    def get_history(self, source_id: int) -> list[Reading]: ...

    def get_latest(
        self, source_id: int, measurement_type: Optional[str] = None
    ) -> Optional[Reading]: ...

    def save_deployment(self, deployment: Deployment) -> None: ...

    def get_deployment(self, buoy_id: int) -> Optional[Deployment]: ...

    def close(self) -> None: ...
