"""Geofence evaluation for deployed buoys."""

from __future__ import annotations

from dataclasses import dataclass

from models.records import Deployment
from services.geo import distance_meters


@dataclass(frozen=True)
class FenceStatus:
    """Result of checking a position against a deployment's allowed area."""

    buoy_id: int
    distance_meters: float
    allowed_radius_meters: float
    outside: bool


class GeofenceEvaluator:
    """Pure geofence predicate that can be unit tested in isolation."""

    def is_outside_fence(
        self, deployment: Deployment, current_lat: float, current_lon: float
    ) -> bool:
        return self.evaluate(deployment, current_lat, current_lon).outside

    def evaluate(
        self, deployment: Deployment, current_lat: float, current_lon: float
    ) -> FenceStatus:
        distance = distance_meters(deployment.lat, deployment.lon, current_lat, current_lon)
        return FenceStatus(
            buoy_id=deployment.buoy_id,
            distance_meters=distance,
            allowed_radius_meters=deployment.allowed_radius_meters,
            outside=distance > deployment.allowed_radius_meters,
        )
