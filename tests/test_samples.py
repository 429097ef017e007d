import json
from datetime import UTC, datetime, timedelta, timezone

import pytest

from harbor_monitor.samples import (
    MalformedValue,
    MetricSample,
    coerce_value,
    format_timestamp,
    parse_number,
    serialize_batch,
)


def test_format_timestamp_millisecond_utc():
    ts = datetime(2025, 1, 2, 3, 4, 5, 678901, tzinfo=UTC)
    assert format_timestamp(ts) == "2025-01-02T03:04:05.678Z"


def test_format_timestamp_converts_offsets_to_utc():
    ts = datetime(2025, 1, 2, 5, 0, 0, 1000, tzinfo=timezone(timedelta(hours=2)))
    assert format_timestamp(ts) == "2025-01-02T03:00:00.001Z"


def test_parse_number_accepts_numeric_text():
    assert parse_number(" 42.5\n") == 42.5
    assert parse_number(7) == 7.0


@pytest.mark.parametrize("raw", ["n/a", "", None, True, float("nan"), float("inf"), {"a": 1}])
def test_parse_number_rejects_malformed(raw):
    with pytest.raises(MalformedValue):
        parse_number(raw)


def test_coerce_value_falls_back_to_zero():
    assert coerce_value("garbage") == 0.0
    assert coerce_value(float("nan")) == 0.0
    assert coerce_value("12") == 12.0


def test_serialize_batch_matches_wire_format():
    ts = datetime(2025, 1, 1, 0, 0, 0, tzinfo=UTC)
    batch = [
        MetricSample(time=ts, ship_id="web-1", cargo_id="cpu_usage", value=12.5),
        MetricSample(time=ts, ship_id="web-1", cargo_id="ram_usage", value=float("nan")),
    ]
    payload = serialize_batch(batch)
    assert payload == [
        {"time": "2025-01-01T00:00:00.000Z", "ship_id": "web-1", "cargo_id": "cpu_usage", "value": 12.5},
        {"time": "2025-01-01T00:00:00.000Z", "ship_id": "web-1", "cargo_id": "ram_usage", "value": 0.0},
    ]
    # numbers are emitted unquoted
    assert '"value": 12.5' in json.dumps(payload)
