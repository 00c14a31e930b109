"""InfluxDB-backed reading store, spoken over the v2 HTTP API.

Readings that share a buoy and a timestamp are written as fields of a single
point, so reads have to regroup records by timestamp before they can be turned
back into readings. A timestamp only yields readings once every required field
for it has been observed; partially written points are skipped.

Retention is delegated to the bucket's own retention policy. Reads look back a
fixed number of days instead of deleting anything.
"""

from __future__ import annotations

import csv
import io
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Sequence, Tuple

import httpx

from datastore.base import LATITUDE, LONGITUDE, present
from exceptions import StoreUnavailableError, UnknownSourceError
from models.records import Deployment, Reading, now_ms

logger = logging.getLogger(__name__)

_BACKEND = "timeseries"
_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
_ONE_MS = timedelta(milliseconds=1)

READING_MEASUREMENT = "buoy_data"
DEPLOYMENT_MEASUREMENT = "buoy_deployment"
DEFAULT_LOOKBACK_DAYS = 30
DEFAULT_REQUIRED_FIELDS: Tuple[str, ...] = ("temperature", "pressure", LATITUDE, LONGITUDE)
_DEPLOYMENT_FIELDS = ("lat", "lon", "allowed_radius_meters", "deployed_at")

_QUERY_DIALECT = {"header": True, "annotations": [], "delimiter": ","}


@dataclass(frozen=True)
class FieldRecord:
    """One row of a Flux result: a single field value at a point in time."""

    timestamp: int
    field: str
    value: str


def _escape_key(name: str) -> str:
    return name.replace("\\", "\\\\").replace(",", "\\,").replace("=", "\\=").replace(" ", "\\ ")


def _format_field(name: str, value: Any) -> str:
    if isinstance(value, int) and not isinstance(value, bool):
        return f"{_escape_key(name)}={value}i"
    return f"{_escape_key(name)}={float(value)!r}"


def to_line_protocol(measurement: str, tags: Dict[str, str], fields: Dict[str, Any], timestamp: int) -> str:
    """Render one point in InfluxDB line protocol with a millisecond timestamp."""
    tag_set = "".join(f",{_escape_key(k)}={_escape_key(v)}" for k, v in sorted(tags.items()))
    field_set = ",".join(_format_field(name, value) for name, value in fields.items())
    return f"{_escape_key(measurement)}{tag_set} {field_set} {timestamp}"


def parse_rfc3339_ms(raw: str) -> int:
    """Epoch milliseconds from an RFC 3339 timestamp with up to nanosecond precision."""
    candidate = raw.strip()
    if candidate.endswith("Z"):
        candidate = candidate[:-1] + "+00:00"
    fraction_ms = 0
    if "." in candidate:
        head, rest = candidate.split(".", 1)
        digits = ""
        while rest and rest[0].isdigit():
            digits, rest = digits + rest[0], rest[1:]
        fraction_ms = int((digits + "000")[:3])
        candidate = head + rest
    moment = datetime.fromisoformat(candidate)
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return (moment - _EPOCH) // _ONE_MS + fraction_ms


def parse_flux_csv(text: str) -> Iterator[FieldRecord]:
    """Yield field records from an (unannotated) Flux CSV response.

    Each result table starts with its own header row; tables are separated by
    an empty line.
    """
    header: Optional[List[str]] = None
    for row in csv.reader(io.StringIO(text)):
        if not row or all(not cell for cell in row):
            header = None
            continue
        if header is None:
            header = row
            continue
        values = dict(zip(header, row))
        if not values.get("_time") or not values.get("_field"):
            continue
        yield FieldRecord(
            timestamp=parse_rfc3339_ms(values["_time"]),
            field=values["_field"],
            value=values.get("_value", ""),
        )


class TimeSeriesStore:
    """Point-per-timestamp store that reconstructs readings from field buckets."""

    def __init__(
        self,
        client: httpx.Client,
        bucket: str,
        org: str,
        lookback_days: int = DEFAULT_LOOKBACK_DAYS,
        required_fields: Sequence[str] = DEFAULT_REQUIRED_FIELDS,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self.client = client
        self.bucket = bucket
        self.org = org
        self.lookback_days = lookback_days
        self.required_fields = tuple(required_fields)
        self._clock = clock

    @classmethod
    def from_url(
        cls,
        url: str,
        token: Optional[str],
        org: str,
        bucket: str,
        timeout: float = 10.0,
        **kwargs: Any,
    ) -> "TimeSeriesStore":
        headers = {"Authorization": f"Token {token}"} if token else {}
        client = httpx.Client(base_url=url.rstrip("/"), headers=headers, timeout=timeout)
        return cls(client, bucket=bucket, org=org, **kwargs)

    def update(self, readings: Iterable[Optional[Reading]]) -> None:
        points: Dict[Tuple[int, int], Dict[str, float]] = {}
        for reading in present(readings):
            fields = points.setdefault((reading.source_id, reading.timestamp), {})
            fields[reading.measurement_type] = float(reading.value)

        if not points:
            return
        lines = [
            to_line_protocol(READING_MEASUREMENT, {"buoy_id": str(source_id)}, fields, timestamp)
            for (source_id, timestamp), fields in points.items()
        ]
        self._write(lines)
        logger.debug("Stored buoy points", extra={"backend": _BACKEND, "batch_size": len(lines)})

    def get_history(self, source_id: int) -> list[Reading]:
        records = self._query_records(self._history_query(source_id))
        if not records:
            raise UnknownSourceError(source_id)
        return self._complete_readings(source_id, records)

    def get_latest(
        self, source_id: int, measurement_type: Optional[str] = None
    ) -> Optional[Reading]:
        records = self._query_records(self._history_query(source_id))
        if not records:
            raise UnknownSourceError(source_id)
        for reading in reversed(self._complete_readings(source_id, records)):
            if measurement_type is None or reading.measurement_type == measurement_type:
                return reading
        return None

    def save_deployment(self, deployment: Deployment) -> None:
        # Stamped with write time so the newest save wins under last().
        line = to_line_protocol(
            DEPLOYMENT_MEASUREMENT,
            {"buoy_id": str(deployment.buoy_id)},
            {
                "lat": float(deployment.lat),
                "lon": float(deployment.lon),
                "allowed_radius_meters": float(deployment.allowed_radius_meters),
                "deployed_at": int(deployment.deployed_at),
            },
            self._clock(),
        )
        self._write([line])

    def get_deployment(self, buoy_id: int) -> Optional[Deployment]:
        flux = (
            f'from(bucket: "{self.bucket}") '
            "|> range(start: 0) "
            f'|> filter(fn: (r) => r["_measurement"] == "{DEPLOYMENT_MEASUREMENT}") '
            f'|> filter(fn: (r) => r["buoy_id"] == "{int(buoy_id)}") '
            "|> last()"
        )
        values = {record.field: record.value for record in self._query_records(flux)}
        if not all(name in values for name in _DEPLOYMENT_FIELDS):
            return None
        return Deployment(
            buoy_id=buoy_id,
            lat=float(values["lat"]),
            lon=float(values["lon"]),
            allowed_radius_meters=float(values["allowed_radius_meters"]),
            deployed_at=int(float(values["deployed_at"])),
        )

    def close(self) -> None:
        self.client.close()

    def _history_query(self, source_id: int) -> str:
        return (
            f'from(bucket: "{self.bucket}") '
            f"|> range(start: -{self.lookback_days}d) "
            f'|> filter(fn: (r) => r["_measurement"] == "{READING_MEASUREMENT}") '
            f'|> filter(fn: (r) => r["buoy_id"] == "{int(source_id)}")'
        )

    def _complete_readings(self, source_id: int, records: Iterable[FieldRecord]) -> list[Reading]:
        buckets: Dict[int, Dict[str, float]] = {}
        for record in records:
            buckets.setdefault(record.timestamp, {})[record.field] = float(record.value)

        readings: list[Reading] = []
        for timestamp in sorted(buckets):
            fields = buckets[timestamp]
            if any(name not in fields for name in self.required_fields):
                continue
            for name in self._field_order(fields):
                readings.append(
                    Reading(
                        source_id=source_id,
                        measurement_type=name,
                        value=fields[name],
                        timestamp=timestamp,
                    )
                )
        return readings

    def _field_order(self, fields: Dict[str, float]) -> list[str]:
        extras = sorted(name for name in fields if name not in self.required_fields)
        return [*self.required_fields, *extras]

    def _write(self, lines: list[str]) -> None:
        try:
            response = self.client.post(
                "/api/v2/write",
                params={"org": self.org, "bucket": self.bucket, "precision": "ms"},
                content="\n".join(lines).encode("utf-8"),
                headers={"Content-Type": "text/plain; charset=utf-8"},
            )
            response.raise_for_status()
        except httpx.HTTPError as exc:
            logger.error("Failed to write to InfluxDB: %s", exc, extra={"backend": _BACKEND})
            raise StoreUnavailableError("InfluxDB write failed", backend=_BACKEND) from exc

    def _query_records(self, flux: str) -> list[FieldRecord]:
        try:
            response = self.client.post(
                "/api/v2/query",
                params={"org": self.org},
                json={"query": flux, "type": "flux", "dialect": _QUERY_DIALECT},
                headers={"Accept": "application/csv"},
            )
            response.raise_for_status()
        except httpx.HTTPError as exc:
            logger.error("Failed to query InfluxDB: %s", exc, extra={"backend": _BACKEND})
            raise StoreUnavailableError("InfluxDB query failed", backend=_BACKEND) from exc
        try:
            return list(parse_flux_csv(response.text))
        except ValueError as exc:
            logger.error("Unreadable InfluxDB response: %s", exc, extra={"backend": _BACKEND})
            raise StoreUnavailableError("InfluxDB returned malformed data", backend=_BACKEND) from exc
