"""Deployment workflow: seed geofences from positions and check buoys against them."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from functools import lru_cache
from typing import Callable

from datastore.base import LATITUDE, LONGITUDE, Store
from datastore.factory import build_default_store
from exceptions import NoPositionError
from models.records import Deployment, now_ms
from services.geofence import FenceStatus, GeofenceEvaluator

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Position:
    buoy_id: int
    latitude: float
    longitude: float
    timestamp: int


class DeploymentService:
    """Coordinates the store and the geofence evaluator for deployment requests."""

    def __init__(
        self,
        store: Store,
        evaluator: GeofenceEvaluator,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self.store = store
        self.evaluator = evaluator
        self._clock = clock

    def current_position(self, buoy_id: int) -> Position:
        """Latest reported position; raises ``UnknownSourceError`` or ``NoPositionError``."""
        latitude = self.store.get_latest(buoy_id, LATITUDE)
        longitude = self.store.get_latest(buoy_id, LONGITUDE)
        if latitude is None or longitude is None:
            raise NoPositionError(buoy_id)
        return Position(
            buoy_id=buoy_id,
            latitude=latitude.value,
            longitude=longitude.value,
            timestamp=max(latitude.timestamp, longitude.timestamp),
        )

    def deploy(self, buoy_id: int, allowed_radius_meters: float) -> Deployment:
        """Anchor a new geofence at the buoy's current position, replacing any prior one."""
        position = self.current_position(buoy_id)
        deployment = Deployment(
            buoy_id=buoy_id,
            lat=position.latitude,
            lon=position.longitude,
            allowed_radius_meters=allowed_radius_meters,
            deployed_at=self._clock(),
        )
        self.store.save_deployment(deployment)
        logger.info("Deployment data saved", extra={"source_id": buoy_id})
        return deployment

    def fetch_deployment(self, buoy_id: int) -> Deployment:
        deployment = self.store.get_deployment(buoy_id)
        if deployment is None:
            raise KeyError(f"Buoy {buoy_id} has no active deployment.")
        return deployment

    def check_fence(self, buoy_id: int) -> FenceStatus:
        deployment = self.fetch_deployment(buoy_id)
        position = self.current_position(buoy_id)
        status = self.evaluator.evaluate(deployment, position.latitude, position.longitude)
        if status.outside:
            logger.warning(
                "Buoy outside its geofence",
                extra={"source_id": buoy_id, "reason": f"{status.distance_meters:.0f}m"},
            )
        return status


@lru_cache
def build_default_deployment_service() -> DeploymentService:
    return DeploymentService(store=build_default_store(), evaluator=GeofenceEvaluator())
