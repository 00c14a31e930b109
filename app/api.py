"""HTTP route definitions for the service."""

from __future__ import annotations

from typing import Any, Optional

from fastapi import APIRouter, Body, Depends, HTTPException, Query, Request, status
from pydantic import ValidationError

from app.schemas import (
    ConsumerStatus,
    DeploymentRequest,
    DeploymentResponse,
    FenceStatusResponse,
    HealthResponse,
    HistoryResponse,
    LocationResponse,
    ReadingOut,
    UpdateBatch,
    UpdateResponse,
)
from datastore.base import Store
from datastore.factory import build_default_store
from exceptions import MalformedMessageError, NoPositionError, UnknownSourceError
from messaging.decoding import decode_payload
from models.records import Reading
from services.deployments import DeploymentService, build_default_deployment_service
from settings import get_settings

router = APIRouter()


def get_store() -> Store:
    return build_default_store()


def get_deployments() -> DeploymentService:
    return build_default_deployment_service()


def _decode_submission(payload: Any) -> list[Reading]:
    if not isinstance(payload, dict):
        raise MalformedMessageError("Request body must be a JSON object.")
    if "readings" not in payload:
        return decode_payload(payload)
    try:
        batch = UpdateBatch.model_validate(payload)
    except ValidationError as exc:
        raise MalformedMessageError("'readings' must be a list of objects.") from exc
    readings: list[Reading] = []
    for entry in batch.readings:
        if entry is None:
            continue
        readings.extend(decode_payload(entry))
    return readings


def _unknown_source(exc: UnknownSourceError) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_404_NOT_FOUND,
        detail={"reason": "unknown_source", "message": str(exc)},
    )


def _latest_or_404(store: Store, buoy_id: int, measurement_type: Optional[str]) -> ReadingOut:
    try:
        reading = store.get_latest(buoy_id, measurement_type)
    except UnknownSourceError as exc:
        raise _unknown_source(exc) from exc
    if reading is None:
        kind = f"{measurement_type} readings" if measurement_type else "readings"
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"reason": "no_data", "message": f"Buoy {buoy_id} has no {kind}."},
        )
    return ReadingOut.from_reading(reading)


@router.post(
    "/update",
    response_model=UpdateResponse,
    summary="Submit one reading, a structured record or a batch of readings.",
)
def submit_readings(
    payload: Any = Body(...),
    store: Store = Depends(get_store),
) -> UpdateResponse:
    try:
        readings = _decode_submission(payload)
    except MalformedMessageError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(exc),
        ) from exc
    store.update(readings)
    return UpdateResponse(stored=len(readings))


@router.get(
    "/history/{buoy_id}",
    response_model=HistoryResponse,
    summary="Retained readings for a buoy, oldest first.",
)
def get_history(buoy_id: int, store: Store = Depends(get_store)) -> HistoryResponse:
    try:
        readings = store.get_history(buoy_id)
    except UnknownSourceError as exc:
        raise _unknown_source(exc) from exc
    return HistoryResponse(history=[ReadingOut.from_reading(reading) for reading in readings])


@router.get(
    "/latest/{buoy_id}",
    response_model=ReadingOut,
    summary="Most recent reading, optionally restricted to one measurement type.",
)
def get_latest(
    buoy_id: int,
    measurement_type: Optional[str] = Query(None, min_length=1),
    store: Store = Depends(get_store),
) -> ReadingOut:
    return _latest_or_404(store, buoy_id, measurement_type)


@router.get("/temperature/{buoy_id}", response_model=ReadingOut, summary="Latest temperature.")
@router.get("/temp/{buoy_id}", response_model=ReadingOut, include_in_schema=False)
def get_temperature(buoy_id: int, store: Store = Depends(get_store)) -> ReadingOut:
    return _latest_or_404(store, buoy_id, "temperature")


@router.get("/pressure/{buoy_id}", response_model=ReadingOut, summary="Latest pressure.")
def get_pressure(buoy_id: int, store: Store = Depends(get_store)) -> ReadingOut:
    return _latest_or_404(store, buoy_id, "pressure")


@router.get(
    "/location/{buoy_id}",
    response_model=LocationResponse,
    summary="Latest reported GPS position.",
)
def get_location(
    buoy_id: int,
    deployments: DeploymentService = Depends(get_deployments),
) -> LocationResponse:
    try:
        position = deployments.current_position(buoy_id)
    except UnknownSourceError as exc:
        raise _unknown_source(exc) from exc
    except NoPositionError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"reason": "no_data", "message": str(exc)},
        ) from exc
    return LocationResponse(
        buoy_id=position.buoy_id,
        latitude=position.latitude,
        longitude=position.longitude,
        timestamp=position.timestamp,
    )


@router.post(
    "/deploy",
    response_model=DeploymentResponse,
    summary="Anchor a geofence at the buoy's current position.",
)
def deploy_buoy(
    request: DeploymentRequest,
    deployments: DeploymentService = Depends(get_deployments),
) -> DeploymentResponse:
    try:
        deployment = deployments.deploy(request.buoy_id, request.allowed_radius_meters)
    except UnknownSourceError as exc:
        raise _unknown_source(exc) from exc
    except NoPositionError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(exc),
        ) from exc
    return DeploymentResponse.from_deployment(deployment)


@router.get(
    "/deployments/{buoy_id}",
    response_model=DeploymentResponse,
    summary="Active deployment for a buoy.",
)
def get_deployment(
    buoy_id: int,
    deployments: DeploymentService = Depends(get_deployments),
) -> DeploymentResponse:
    try:
        deployment = deployments.fetch_deployment(buoy_id)
    except KeyError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=exc.args[0],
        ) from exc
    return DeploymentResponse.from_deployment(deployment)


@router.get(
    "/deployments/{buoy_id}/fence",
    response_model=FenceStatusResponse,
    summary="Check the buoy's latest position against its geofence.",
)
def check_fence(
    buoy_id: int,
    deployments: DeploymentService = Depends(get_deployments),
) -> FenceStatusResponse:
    try:
        fence = deployments.check_fence(buoy_id)
    except KeyError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=exc.args[0],
        ) from exc
    except UnknownSourceError as exc:
        raise _unknown_source(exc) from exc
    except NoPositionError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(exc),
        ) from exc
    return FenceStatusResponse(
        buoy_id=fence.buoy_id,
        outside=fence.outside,
        distance_meters=fence.distance_meters,
        allowed_radius_meters=fence.allowed_radius_meters,
    )


def _health(request: Request) -> HealthResponse:
    consumer = getattr(request.app.state, "consumer", None)
    consumer_status = None
    if consumer is not None:
        consumer_status = ConsumerStatus(
            state=consumer.state.value,
            processed=consumer.stats.processed,
            failed=consumer.stats.failed,
            empty_polls=consumer.stats.empty_polls,
            transport_errors=consumer.stats.transport_errors,
        )
    return HealthResponse(backend=get_settings().store_backend, consumer=consumer_status)


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check endpoint.",
    status_code=status.HTTP_200_OK,
)
async def healthcheck(request: Request) -> HealthResponse:
    return _health(request)


@router.get(
    "/",
    response_model=HealthResponse,
    summary="Root endpoint mirrors health information.",
    status_code=status.HTTP_200_OK,
)
async def root(request: Request) -> HealthResponse:
    return _health(request)
