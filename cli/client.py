from __future__ import annotations

from typing import Any, Dict, Optional

import httpx
import typer

from cli.config import CLIConfig


class ApiClient:
    """Minimal HTTP client for the buoy telemetry service."""

    def __init__(self, config: CLIConfig) -> None:
        self._config = config
        self._client = httpx.Client(base_url=config.base_url, timeout=config.timeout)

    def close(self) -> None:
        self._client.close()

    def submit(self, payload: Dict[str, Any]) -> int:
        data = self._request("POST", "/update", json=payload)
        stored = data.get("stored")
        if not isinstance(stored, int):
            raise typer.BadParameter("Unexpected response payload when submitting readings.")
        return stored

    def get_history(self, buoy_id: int) -> Dict[str, Any]:
        return self._request("GET", f"/history/{buoy_id}")

    def get_latest(self, buoy_id: int, measurement_type: Optional[str] = None) -> Dict[str, Any]:
        params = {"measurement_type": measurement_type} if measurement_type else None
        return self._request("GET", f"/latest/{buoy_id}", params=params)

    def get_location(self, buoy_id: int) -> Dict[str, Any]:
        return self._request("GET", f"/location/{buoy_id}")

    def deploy(self, buoy_id: int, allowed_radius_meters: float) -> Dict[str, Any]:
        return self._request(
            "POST",
            "/deploy",
            json={"buoyId": buoy_id, "allowedRadiusMeters": allowed_radius_meters},
        )

    def get_fence(self, buoy_id: int) -> Dict[str, Any]:
        return self._request("GET", f"/deployments/{buoy_id}/fence")

    def _request(self, method: str, path: str, **kwargs: Any) -> Dict[str, Any]:
        try:
            response = self._client.request(method, path, **kwargs)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            self._handle_http_error(exc)
        except httpx.TransportError as exc:
            typer.secho(f"Could not reach {self._config.base_url}: {exc}", fg=typer.colors.RED, err=True)
            raise typer.Exit(code=1)
        return response.json()

    @staticmethod
    def _handle_http_error(exc: httpx.HTTPStatusError) -> None:
        detail: Any = None
        try:
            data = exc.response.json()
            detail = data.get("detail")
        except Exception:  # noqa: BLE001 - best effort parsing
            detail = exc.response.text.strip()
        if isinstance(detail, dict):
            detail = detail.get("message") or detail.get("reason")
        message = (
            f"Request failed with status {exc.response.status_code}: {detail or 'no detail provided.'}"
        )
        typer.secho(message, fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)
