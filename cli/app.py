from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Dict, Optional

import typer

from cli.client import ApiClient
from cli.config import CLIConfig, load_config
from cli.render import (
    render_deployment,
    render_fence,
    render_history,
    render_location,
    render_reading,
)
from exceptions import QueueUnavailableError
from messaging.redis_streams import build_default_queue


@dataclass
class CLIState:
    config: CLIConfig
    client: ApiClient


app = typer.Typer(
    help="Utilities for interacting with the buoy telemetry service.",
    context_settings={"help_option_names": ["-h", "--help"]},
)


def _get_state(ctx: typer.Context) -> CLIState:
    state = ctx.obj
    if not isinstance(state, CLIState):
        raise typer.Exit(code=1, message="CLI state is uninitialized.")
    return state


def _build_payload(
    buoy_id: int,
    measurement_type: str,
    value: float,
    timestamp: Optional[str],
) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "sourceId": buoy_id,
        "measurementType": measurement_type,
        "value": value,
    }
    if timestamp is not None:
        candidate = timestamp.strip()
        payload["timestamp"] = int(candidate) if candidate.isdigit() else candidate
    return payload


@app.callback()
def main(
    ctx: typer.Context,
    base_url: Optional[str] = typer.Option(
        None,
        "--base-url",
        "-b",
        help="Service base URL (defaults to API_BASE_URL env or http://localhost:8000).",
    ),
    timeout: Optional[float] = typer.Option(
        None,
        "--timeout",
        help="HTTP request timeout in seconds.",
    ),
) -> None:
    """Entry point for the CLI."""
    config = load_config(base_url=base_url, timeout=timeout)
    client = ApiClient(config)
    ctx.obj = CLIState(config=config, client=client)
    ctx.call_on_close(client.close)


@app.command("submit")
def submit_command(
    ctx: typer.Context,
    buoy_id: int = typer.Argument(..., help="Buoy identifier."),
    measurement_type: str = typer.Argument(..., help="Measurement tag, e.g. temperature."),
    value: float = typer.Argument(..., help="Measured value."),
    timestamp: Optional[str] = typer.Option(
        None,
        "--timestamp",
        "-t",
        help="Epoch milliseconds or ISO-8601 time (defaults to now on the server).",
    ),
) -> None:
    """Submit one reading over HTTP."""
    state = _get_state(ctx)
    payload = _build_payload(buoy_id, measurement_type, value, timestamp)
    stored = state.client.submit(payload)
    typer.secho(f"Stored {stored} reading(s) for buoy {buoy_id}.", fg=typer.colors.GREEN)


@app.command("enqueue")
def enqueue_command(
    buoy_id: int = typer.Argument(..., help="Buoy identifier."),
    measurement_type: str = typer.Argument(..., help="Measurement tag, e.g. temperature."),
    value: float = typer.Argument(..., help="Measured value."),
    timestamp: Optional[str] = typer.Option(
        None,
        "--timestamp",
        "-t",
        help="Epoch milliseconds or ISO-8601 time (defaults to now on the consumer).",
    ),
    stream: Optional[str] = typer.Option(
        None,
        "--stream",
        help="Redis stream name (defaults to QUEUE_STREAM).",
    ),
) -> None:
    """Publish one reading to the ingestion queue instead of calling the API."""
    payload = _build_payload(buoy_id, measurement_type, value, timestamp)
    queue = build_default_queue(stream=stream)
    try:
        message_id = queue.send(json.dumps(payload))
    except QueueUnavailableError as exc:
        typer.secho(str(exc), fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)
    typer.secho(f"Queued message {message_id} on {queue.stream}.", fg=typer.colors.GREEN)


@app.command("history")
def history_command(
    ctx: typer.Context,
    buoy_id: int = typer.Argument(..., help="Buoy identifier."),
) -> None:
    """Show every retained reading of a buoy."""
    state = _get_state(ctx)
    render_history(buoy_id, state.client.get_history(buoy_id))


@app.command("latest")
def latest_command(
    ctx: typer.Context,
    buoy_id: int = typer.Argument(..., help="Buoy identifier."),
    measurement_type: Optional[str] = typer.Option(
        None,
        "--type",
        help="Restrict to one measurement type.",
    ),
) -> None:
    """Show the most recent reading of a buoy."""
    state = _get_state(ctx)
    render_reading(state.client.get_latest(buoy_id, measurement_type))


@app.command("location")
def location_command(
    ctx: typer.Context,
    buoy_id: int = typer.Argument(..., help="Buoy identifier."),
) -> None:
    """Show the last reported GPS position of a buoy."""
    state = _get_state(ctx)
    render_location(state.client.get_location(buoy_id))


@app.command("deploy")
def deploy_command(
    ctx: typer.Context,
    buoy_id: int = typer.Argument(..., help="Buoy identifier."),
    radius: float = typer.Option(..., "--radius", "-r", help="Allowed drift in meters."),
) -> None:
    """Anchor a geofence at the buoy's current position."""
    if radius <= 0:
        raise typer.BadParameter("Radius must be greater than zero.", param_hint="--radius")
    state = _get_state(ctx)
    render_deployment(state.client.deploy(buoy_id, radius))


@app.command("fence")
def fence_command(
    ctx: typer.Context,
    buoy_id: int = typer.Argument(..., help="Buoy identifier."),
) -> None:
    """Check whether a deployed buoy has drifted outside its geofence."""
    state = _get_state(ctx)
    payload = state.client.get_fence(buoy_id)
    render_fence(payload)
    if payload.get("outside"):
        raise typer.Exit(code=2)
