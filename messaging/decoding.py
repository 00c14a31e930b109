"""Decoding of submitted payloads and queue messages into readings."""

from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Mapping, Optional, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, StrictInt, StrictStr, ValidationError

from exceptions import MalformedMessageError
from models.records import Reading, now_ms

STRUCTURED_FIELDS = ("temperature", "pressure", "latitude", "longitude")

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
_ONE_MS = timedelta(milliseconds=1)
# Largest value a signed 64-bit timestamp column can hold.
MAX_TIMESTAMP_MS = 2**63 - 1


class ReadingPayload(BaseModel):
    """Wire shape of one submission.

    Either a single measurement (``measurementType`` plus ``value``) or a
    structured record carrying every field in ``STRUCTURED_FIELDS``.
    """

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    source_id: StrictInt = Field(
        validation_alias=AliasChoices("sourceId", "buoyId", "source_id"),
    )
    measurement_type: Optional[StrictStr] = Field(
        default=None,
        min_length=1,
        validation_alias=AliasChoices("measurementType", "measurement_type"),
    )
    value: Optional[float] = Field(
        default=None,
        validation_alias=AliasChoices("value", "measurementVal", "measurement_value"),
    )
    temperature: Optional[float] = None
    pressure: Optional[float] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    timestamp: Union[StrictInt, StrictStr, None] = Field(
        default=None,
        validation_alias=AliasChoices("timestamp", "msSinceEpoch"),
    )

    def to_readings(self, now: int) -> list[Reading]:
        timestamp = parse_timestamp(self.timestamp, now)

        if self.measurement_type is not None:
            if self.value is None:
                raise MalformedMessageError(
                    f"Missing value for measurement {self.measurement_type!r}."
                )
            return [
                Reading(
                    source_id=self.source_id,
                    measurement_type=self.measurement_type,
                    value=self.value,
                    timestamp=timestamp,
                )
            ]

        missing = [name for name in STRUCTURED_FIELDS if getattr(self, name) is None]
        if missing:
            raise MalformedMessageError(
                "Missing required fields. Need: " + ", ".join(STRUCTURED_FIELDS)
            )
        return [
            Reading(
                source_id=self.source_id,
                measurement_type=name,
                value=getattr(self, name),
                timestamp=timestamp,
            )
            for name in STRUCTURED_FIELDS
        ]


def parse_timestamp(raw: Union[int, str, None], now: int) -> int:
    """Epoch milliseconds from an integer, an ISO-8601 string, or ``now`` when absent."""
    if raw is None:
        return now
    if isinstance(raw, bool):
        raise MalformedMessageError("Timestamp must be epoch milliseconds or ISO-8601.")
    if isinstance(raw, int):
        return _check_range(raw)

    candidate = raw.strip()
    if not candidate:
        raise MalformedMessageError("Timestamp is empty.")
    if candidate.endswith("Z"):
        candidate = candidate[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(candidate)
    except ValueError as exc:
        raise MalformedMessageError(f"Invalid timestamp format: {raw!r}") from exc
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return _check_range((parsed - _EPOCH) // _ONE_MS)


def _check_range(timestamp: int) -> int:
    if not 0 <= timestamp <= MAX_TIMESTAMP_MS:
        raise MalformedMessageError(f"Timestamp {timestamp} is out of range.")
    return timestamp


def decode_payload(data: Mapping[str, Any], clock: Callable[[], int] = now_ms) -> list[Reading]:
    try:
        payload = ReadingPayload.model_validate(data)
    except ValidationError as exc:
        fields = sorted({".".join(str(part) for part in error["loc"]) for error in exc.errors()})
        raise MalformedMessageError(f"Invalid reading fields: {', '.join(fields)}") from exc
    return payload.to_readings(clock())


def decode_message(body: Union[str, bytes], clock: Callable[[], int] = now_ms) -> list[Reading]:
    """Decode one queue message body (a JSON object) into readings."""
    try:
        data = json.loads(body)
    except (TypeError, ValueError) as exc:
        raise MalformedMessageError("Message body is not valid JSON.") from exc
    except RecursionError as exc:
        raise MalformedMessageError("Message body is nested too deeply.") from exc
    if not isinstance(data, dict):
        raise MalformedMessageError("Message body must be a JSON object.")
    return decode_payload(data, clock)
