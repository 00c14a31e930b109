from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Iterable

import typer


def echo_heading(text: str) -> None:
    typer.secho(text, bold=True)


def echo_key_values(pairs: Iterable[tuple[str, Any]]) -> None:
    for key, value in pairs:
        typer.echo(f"{key}: {value}")


def format_timestamp(value: Any) -> str:
    if not isinstance(value, int):
        return str(value)
    moment = datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    return moment.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def render_reading(payload: Dict[str, Any]) -> None:
    echo_heading(f"Buoy {payload.get('buoyId')}")
    echo_key_values(
        [
            ("measurement", payload.get("measurementType")),
            ("value", payload.get("value")),
            ("timestamp", format_timestamp(payload.get("timestamp"))),
        ]
    )


def render_history(buoy_id: int, payload: Dict[str, Any]) -> None:
    history = payload.get("history") or []
    echo_heading(f"History for buoy {buoy_id} ({len(history)} readings)")
    if not history:
        typer.echo("No readings retained.")
        return
    for entry in history:
        typer.echo(
            f"  - {format_timestamp(entry.get('timestamp'))} "
            f"{entry.get('measurementType')}={entry.get('value')}"
        )


def render_location(payload: Dict[str, Any]) -> None:
    echo_heading(f"Location of buoy {payload.get('buoyId')}")
    echo_key_values(
        [
            ("latitude", payload.get("latitude")),
            ("longitude", payload.get("longitude")),
            ("timestamp", format_timestamp(payload.get("timestamp"))),
        ]
    )


def render_deployment(payload: Dict[str, Any]) -> None:
    echo_heading(f"Deployment for buoy {payload.get('buoyId')}")
    echo_key_values(
        [
            ("latitude", payload.get("latitude")),
            ("longitude", payload.get("longitude")),
            ("allowed_radius_meters", payload.get("allowedRadiusMeters")),
            ("deployed_at", format_timestamp(payload.get("deployedAt"))),
        ]
    )


def render_fence(payload: Dict[str, Any]) -> None:
    outside = bool(payload.get("outside"))
    echo_heading(f"Geofence for buoy {payload.get('buoyId')}")
    echo_key_values(
        [
            ("distance_meters", round(float(payload.get("distanceMeters") or 0.0), 1)),
            ("allowed_radius_meters", payload.get("allowedRadiusMeters")),
        ]
    )
    if outside:
        typer.secho("status: OUTSIDE", fg=typer.colors.RED)
    else:
        typer.secho("status: inside", fg=typer.colors.GREEN)
