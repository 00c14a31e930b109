from __future__ import annotations

import json

import pytest

from exceptions import MalformedMessageError
from messaging.decoding import decode_message, decode_payload, parse_timestamp

NOW = 1_700_000_000_000


def _clock() -> int:
    return NOW


def test_single_measurement_with_integer_timestamp() -> None:
    readings = decode_payload(
        {"sourceId": 3, "measurementType": "temperature", "value": 20.5, "timestamp": 1_600_000_000_000},
        _clock,
    )

    assert len(readings) == 1
    reading = readings[0]
    assert reading.source_id == 3
    assert reading.measurement_type == "temperature"
    assert reading.value == 20.5
    assert reading.timestamp == 1_600_000_000_000


def test_alternative_field_names_are_accepted() -> None:
    readings = decode_payload(
        {"buoyId": 4, "measurementType": "pressure", "measurementVal": 1013.2, "msSinceEpoch": NOW - 1},
        _clock,
    )

    assert readings[0].source_id == 4
    assert readings[0].value == 1013.2
    assert readings[0].timestamp == NOW - 1


def test_iso_timestamp_is_parsed_as_utc() -> None:
    readings = decode_payload(
        {"sourceId": 1, "measurementType": "temperature", "value": 1.0, "timestamp": "2023-11-14T22:13:20Z"},
        _clock,
    )

    assert readings[0].timestamp == NOW


@pytest.mark.parametrize(
    "raw, expected",
    [
        (None, NOW),
        (12345, 12345),
        ("2023-11-14T22:13:20", NOW),
        ("2023-11-14T22:13:20.250+00:00", NOW + 250),
        ("2023-11-15T00:13:20+02:00", NOW),
    ],
)
def test_parse_timestamp_variants(raw, expected) -> None:
    assert parse_timestamp(raw, NOW) == expected


@pytest.mark.parametrize("raw", [True, "", "yesterday", -1, 2**70, "1969-12-31T23:59:59Z"])
def test_parse_timestamp_rejects_garbage(raw) -> None:
    with pytest.raises(MalformedMessageError):
        parse_timestamp(raw, NOW)


def test_missing_timestamp_defaults_to_now() -> None:
    readings = decode_payload({"sourceId": 1, "measurementType": "temperature", "value": 1.0}, _clock)

    assert readings[0].timestamp == NOW


def test_structured_record_expands_into_one_reading_per_field() -> None:
    readings = decode_payload(
        {
            "buoyId": 9,
            "temperature": 18.5,
            "pressure": 1011.0,
            "latitude": 42.35,
            "longitude": -71.05,
            "timestamp": NOW,
        },
        _clock,
    )

    assert [(r.measurement_type, r.value) for r in readings] == [
        ("temperature", 18.5),
        ("pressure", 1011.0),
        ("latitude", 42.35),
        ("longitude", -71.05),
    ]
    assert {r.timestamp for r in readings} == {NOW}
    assert {r.source_id for r in readings} == {9}


def test_incomplete_structured_record_is_rejected() -> None:
    with pytest.raises(MalformedMessageError, match="Missing required fields"):
        decode_payload({"buoyId": 9, "temperature": 18.5}, _clock)


@pytest.mark.parametrize(
    "payload",
    [
        {"measurementType": "temperature", "value": 1.0},
        {"sourceId": "1", "measurementType": "temperature", "value": 1.0},
        {"sourceId": 1, "measurementType": "temperature"},
        {"sourceId": 1, "measurementType": "", "value": 1.0},
        {"sourceId": 1, "measurementType": "temperature", "value": 1.0, "timestamp": 1.5},
        {"sourceId": 1, "measurementType": "temperature", "value": 1.0, "timestamp": 2**70},
    ],
)
def test_invalid_payloads_raise_malformed(payload) -> None:
    with pytest.raises(MalformedMessageError):
        decode_payload(payload, _clock)


def test_decode_message_reads_json_objects() -> None:
    body = json.dumps({"sourceId": 2, "measurementType": "salinity", "value": 35.0, "timestamp": NOW})

    readings = decode_message(body, _clock)

    assert readings[0].measurement_type == "salinity"


@pytest.mark.parametrize("body", ["not json", "[1, 2]", "42"])
def test_decode_message_rejects_non_objects(body) -> None:
    with pytest.raises(MalformedMessageError):
        decode_message(body, _clock)


def test_decode_message_rejects_excessive_nesting() -> None:
    with pytest.raises(MalformedMessageError, match="nested too deeply"):
        decode_message("[" * 200_000, _clock)
