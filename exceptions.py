"""Exception hierarchy shared by the stores, the queue consumer and the API."""

from __future__ import annotations


class BuoyTelemetryError(Exception):
    """Base exception for all buoy telemetry errors."""


class UnknownSourceError(BuoyTelemetryError):
    """Raised when a buoy id has no retained readings at all."""

    def __init__(self, source_id: int) -> None:
        self.source_id = source_id
        super().__init__(f"Buoy {source_id} has not been seen by the server")


class MalformedMessageError(BuoyTelemetryError):
    """A submitted payload or queue message could not be decoded into readings."""


class StoreUnavailableError(BuoyTelemetryError):
    """The persistence backend could not be reached or rejected the operation."""

    def __init__(self, message: str, *, backend: str = "") -> None:
        self.backend = backend
        super().__init__(message)


class QueueUnavailableError(BuoyTelemetryError):
    """The message queue transport failed while receiving or acknowledging."""


class NoPositionError(BuoyTelemetryError):
    """The buoy is known but has not reported both latitude and longitude."""

    def __init__(self, source_id: int) -> None:
        self.source_id = source_id
        super().__init__(
            f"Buoy {source_id} has not reported GPS data yet. "
            "Please place buoy in water and wait for signal."
        )
