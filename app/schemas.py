"""Pydantic schemas for the HTTP API layer."""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from models.records import Deployment, Reading


class CamelModel(BaseModel):
    """Snake-case fields in Python, camelCase keys on the wire."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ReadingOut(CamelModel):
    """One stored measurement as exposed to API callers."""

    buoy_id: int
    measurement_type: str
    value: float
    timestamp: int = Field(..., description="Milliseconds since the epoch (UTC).")

    @classmethod
    def from_reading(cls, reading: Reading) -> "ReadingOut":
        return cls(
            buoy_id=reading.source_id,
            measurement_type=reading.measurement_type,
            value=reading.value,
            timestamp=reading.timestamp,
        )


class HistoryResponse(CamelModel):
    history: List[ReadingOut] = Field(default_factory=list)


class LocationResponse(CamelModel):
    buoy_id: int
    latitude: float
    longitude: float
    timestamp: int


class UpdateBatch(BaseModel):
    """Batch wrapper accepted by ``POST /update``; entries are decoded individually."""

    readings: List[Optional[Dict[str, Any]]]


class UpdateResponse(BaseModel):
    status: str = "ok"
    stored: int = Field(..., ge=0)


class DeploymentRequest(CamelModel):
    buoy_id: int
    allowed_radius_meters: float = Field(..., gt=0)


class DeploymentResponse(CamelModel):
    status: str = "deployed"
    buoy_id: int
    latitude: float
    longitude: float
    allowed_radius_meters: float
    deployed_at: int

    @classmethod
    def from_deployment(cls, deployment: Deployment) -> "DeploymentResponse":
        return cls(
            buoy_id=deployment.buoy_id,
            latitude=deployment.lat,
            longitude=deployment.lon,
            allowed_radius_meters=deployment.allowed_radius_meters,
            deployed_at=deployment.deployed_at,
        )


class FenceStatusResponse(CamelModel):
    buoy_id: int
    outside: bool
    distance_meters: float
    allowed_radius_meters: float


class ConsumerStatus(CamelModel):
    state: str
    processed: int
    failed: int
    empty_polls: int
    transport_errors: int


class HealthResponse(BaseModel):
    status: str = "ok"
    backend: str
    consumer: Optional[ConsumerStatus] = None
