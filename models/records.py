"""Domain models shared across services."""

from __future__ import annotations

import time
from dataclasses import dataclass
from datetime import datetime, timezone


def now_ms() -> int:
    """Current wall-clock time in milliseconds since the epoch."""
    return time.time_ns() // 1_000_000


@dataclass(frozen=True, slots=True)
class Reading:
    """A single timestamped scalar observation reported by a buoy."""

    source_id: int
    measurement_type: str
    value: float
    timestamp: int  # epoch milliseconds, UTC

    @property
    def observed_at(self) -> datetime:
        return datetime.fromtimestamp(self.timestamp / 1000, tz=timezone.utc)


@dataclass(frozen=True, slots=True)
class Deployment:
    """Geofence assignment for a buoy: allowed area center plus radius."""

    buoy_id: int
    lat: float
    lon: float
    allowed_radius_meters: float
    deployed_at: int  # epoch milliseconds, UTC
