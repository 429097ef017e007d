"""
Metric samples and the batch wire format.
"""
from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any, Dict, List


class MalformedValue(ValueError):
    """Raised when a collector reading cannot be interpreted as a number."""


@dataclass(frozen=True)
class MetricSample:
    time: datetime
    ship_id: str
    cargo_id: str
    value: float

    def to_wire(self) -> Dict[str, Any]:
        return {
            "time": format_timestamp(self.time),
            "ship_id": self.ship_id,
            "cargo_id": self.cargo_id,
            "value": coerce_value(self.value),
        }


def format_timestamp(ts: datetime) -> str:
    """ISO-8601 in UTC with millisecond precision and a trailing Z."""
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=UTC)
    ts = ts.astimezone(UTC)
    return ts.strftime("%Y-%m-%dT%H:%M:%S.") + f"{ts.microsecond // 1000:03d}Z"


def parse_number(raw: Any) -> float:
    if isinstance(raw, bool):
        raise MalformedValue(f"boolean is not a metric value: {raw!r}")
    if isinstance(raw, (int, float)):
        value = float(raw)
    elif isinstance(raw, (str, bytes)):
        try:
            value = float(raw.strip())
        except ValueError as exc:
            raise MalformedValue(f"not a number: {raw!r}") from exc
    else:
        raise MalformedValue(f"unsupported value type: {type(raw).__name__}")
    if not math.isfinite(value):
        raise MalformedValue(f"non-finite value: {raw!r}")
    return value


def coerce_value(raw: Any) -> float:
    try:
        return parse_number(raw)
    except MalformedValue:
        return 0.0


def serialize_batch(batch: List[MetricSample]) -> List[Dict[str, Any]]:
    return [sample.to_wire() for sample in batch]
