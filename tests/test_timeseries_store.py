from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, List, Optional

import httpx
import pytest

from datastore.timeseries import TimeSeriesStore, parse_flux_csv, parse_rfc3339_ms, to_line_protocol
from exceptions import StoreUnavailableError, UnknownSourceError
from models.records import Deployment, Reading

T0 = 1_700_000_000_000
STRUCTURED = ("temperature", "pressure", "latitude", "longitude")
HEADER = ",result,table,_start,_stop,_time,_value,_field,_measurement,buoy_id"


def _rfc3339(timestamp_ms: int) -> str:
    moment = datetime.fromtimestamp(timestamp_ms / 1000, tz=timezone.utc)
    return moment.isoformat(timespec="milliseconds").replace("+00:00", "Z")


class FakeInflux:
    """Records write requests and answers queries with canned CSV rows."""

    def __init__(self) -> None:
        self.writes: List[httpx.Request] = []
        self.queries: List[str] = []
        self.rows: List[tuple[int, str, Any]] = []
        self.fail: Optional[Exception] = None
        self.status_code = 204

    def serve(self, *rows: tuple[int, str, Any]) -> None:
        self.rows = list(rows)

    def csv(self) -> str:
        lines = [HEADER]
        for timestamp_ms, field, value in self.rows:
            lines.append(f",_result,0,,,{_rfc3339(timestamp_ms)},{value},{field},buoy_data,1")
        return "\r\n".join(lines) + "\r\n\r\n"

    def handler(self, request: httpx.Request) -> httpx.Response:
        if self.fail is not None:
            raise self.fail
        if request.url.path == "/api/v2/write":
            self.writes.append(request)
            return httpx.Response(self.status_code)
        if request.url.path == "/api/v2/query":
            self.queries.append(json.loads(request.content)["query"])
            return httpx.Response(200, text=self.csv())
        return httpx.Response(404)


def _complete(timestamp_ms: int, base: float = 0.0) -> list[tuple[int, str, Any]]:
    return [
        (timestamp_ms, "temperature", 20.0 + base),
        (timestamp_ms, "pressure", 1013.0 + base),
        (timestamp_ms, "latitude", 42.0 + base),
        (timestamp_ms, "longitude", -70.0 + base),
    ]


@pytest.fixture
def influx() -> FakeInflux:
    return FakeInflux()


@pytest.fixture
def store(influx: FakeInflux) -> TimeSeriesStore:
    client = httpx.Client(base_url="http://influx.test", transport=httpx.MockTransport(influx.handler))
    return TimeSeriesStore(client, bucket="device-data", org="smart-buoy", clock=lambda: T0)


def test_line_protocol_escapes_keys_and_marks_integers() -> None:
    line = to_line_protocol("buoy data", {"buoy_id": "1"}, {"sea temp": 20.5, "count": 3}, T0)

    assert line == f"buoy\\ data,buoy_id=1 sea\\ temp=20.5,count=3i {T0}"


def test_rfc3339_parsing_keeps_milliseconds() -> None:
    assert parse_rfc3339_ms("2023-11-14T22:13:20Z") == T0
    assert parse_rfc3339_ms("2023-11-14T22:13:20.123456789Z") == T0 + 123
    assert parse_rfc3339_ms("2023-11-14T23:13:20.5+01:00") == T0 + 500


def test_flux_csv_handles_multiple_tables() -> None:
    text = (
        f"{HEADER}\r\n,_result,0,,,2023-11-14T22:13:20Z,20.5,temperature,buoy_data,1\r\n"
        f"\r\n{HEADER}\r\n,_result,1,,,2023-11-14T22:13:20Z,1013,pressure,buoy_data,1\r\n"
    )

    records = list(parse_flux_csv(text))

    assert [(r.field, r.value) for r in records] == [("temperature", "20.5"), ("pressure", "1013")]


def test_readings_sharing_a_timestamp_become_one_point(influx: FakeInflux, store: TimeSeriesStore) -> None:
    store.update(
        [
            Reading(1, "temperature", 20.5, T0),
            Reading(1, "pressure", 1013.5, T0),
            None,
            Reading(1, "temperature", 21.5, T0 + 1_000),
        ]
    )

    assert len(influx.writes) == 1
    request = influx.writes[0]
    assert request.url.params["bucket"] == "device-data"
    assert request.url.params["org"] == "smart-buoy"
    assert request.url.params["precision"] == "ms"
    assert request.content.decode("utf-8").splitlines() == [
        f"buoy_data,buoy_id=1 temperature=20.5,pressure=1013.5 {T0}",
        f"buoy_data,buoy_id=1 temperature=21.5 {T0 + 1_000}",
    ]


def test_empty_update_writes_nothing(influx: FakeInflux, store: TimeSeriesStore) -> None:
    store.update([None])

    assert influx.writes == []


def test_history_regroups_complete_buckets_in_time_order(influx: FakeInflux, store: TimeSeriesStore) -> None:
    influx.serve(
        *_complete(T0 + 2_000, base=1.0),
        (T0 + 5_000, "temperature", 99.0),
        *_complete(T0),
    )

    history = store.get_history(1)

    assert [r.timestamp for r in history] == [T0] * 4 + [T0 + 2_000] * 4
    assert [r.measurement_type for r in history[:4]] == list(STRUCTURED)
    assert all(r.source_id == 1 for r in history)
    assert 99.0 not in [r.value for r in history]
    assert "range(start: -30d)" in influx.queries[0]
    assert 'r["buoy_id"] == "1"' in influx.queries[0]


def test_extra_fields_follow_required_ones(influx: FakeInflux, store: TimeSeriesStore) -> None:
    influx.serve(*_complete(T0), (T0, "salinity", 35.0))

    history = store.get_history(1)

    assert [r.measurement_type for r in history] == [*STRUCTURED, "salinity"]


def test_only_partial_buckets_gives_empty_history(influx: FakeInflux, store: TimeSeriesStore) -> None:
    influx.serve((T0, "temperature", 20.0), (T0, "pressure", 1013.0))

    assert store.get_history(1) == []
    assert store.get_latest(1, "temperature") is None


def test_no_records_means_unknown_source(store: TimeSeriesStore) -> None:
    with pytest.raises(UnknownSourceError):
        store.get_history(4)
    with pytest.raises(UnknownSourceError):
        store.get_latest(4)


def test_latest_uses_most_recent_complete_bucket(influx: FakeInflux, store: TimeSeriesStore) -> None:
    influx.serve(*_complete(T0), *_complete(T0 + 1_000, base=0.5), (T0 + 2_000, "temperature", 30.0))

    latest = store.get_latest(1, "temperature")

    assert latest == Reading(1, "temperature", 20.5, T0 + 1_000)
    assert store.get_latest(1, "salinity") is None


def test_deployment_round_trip(influx: FakeInflux, store: TimeSeriesStore) -> None:
    store.save_deployment(Deployment(2, 42.0, -70.0, 50.0, T0 - 10))

    line = influx.writes[0].content.decode("utf-8")
    assert line == (
        "buoy_deployment,buoy_id=2 lat=42.0,lon=-70.0,allowed_radius_meters=50.0,"
        f"deployed_at={T0 - 10}i {T0}"
    )

    influx.serve(
        (T0, "lat", 42.0),
        (T0, "lon", -70.0),
        (T0, "allowed_radius_meters", 50.0),
        (T0, "deployed_at", T0 - 10),
    )
    assert store.get_deployment(2) == Deployment(2, 42.0, -70.0, 50.0, T0 - 10)
    assert "range(start: 0)" in influx.queries[-1]


def test_incomplete_deployment_is_absent(influx: FakeInflux, store: TimeSeriesStore) -> None:
    influx.serve((T0, "lat", 42.0))

    assert store.get_deployment(2) is None


def test_transport_failures_surface_as_store_unavailable(influx: FakeInflux, store: TimeSeriesStore) -> None:
    influx.fail = httpx.ConnectError("connection refused")

    with pytest.raises(StoreUnavailableError):
        store.update([Reading(1, "temperature", 20.0, T0)])
    with pytest.raises(StoreUnavailableError) as excinfo:
        store.get_history(1)
    assert excinfo.value.backend == "timeseries"


def test_rejected_write_surfaces_as_store_unavailable(influx: FakeInflux, store: TimeSeriesStore) -> None:
    influx.status_code = 401

    with pytest.raises(StoreUnavailableError):
        store.update([Reading(1, "temperature", 20.0, T0)])


def test_from_url_sends_token() -> None:
    store = TimeSeriesStore.from_url("http://influx.test/", token="secret", org="o", bucket="b")
    try:
        assert store.client.headers["Authorization"] == "Token secret"
        assert str(store.client.base_url) == "http://influx.test/"
    finally:
        store.close()
