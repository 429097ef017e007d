"""
Batch assembly for one sampling tick.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, List, Mapping, Optional, Set

from .collectors import CollectionFailed, ResolvedMetric
from .rates import RateEngine
from .samples import MalformedValue, MetricSample, coerce_value, parse_number

logger = logging.getLogger(__name__)


class BatchAssembler:
    """
    Turns the configured metrics into one ordered batch per tick.

    A failing collector never aborts the batch: it is reported as a single
    sample with value 0.0 under its own identifier.
    """

    def __init__(self, metrics: List[ResolvedMetric], rate_engine: RateEngine, ship_id: str) -> None:
        self.metrics = metrics
        self.rate_engine = rate_engine
        self.ship_id = ship_id
        self._failing: Set[str] = set()

    def assemble(self, now: datetime) -> List[MetricSample]:
        timestamp = now.timestamp()
        batch: List[MetricSample] = []
        for metric in self.metrics:
            reading = self._read(metric)
            if reading is None:
                batch.append(self._sample(now, metric.metric_id, 0.0))
                continue
            if isinstance(reading, Mapping):
                for sub_key, value in reading.items():
                    batch.append(self._sample(now, f"{metric.metric_id}.{sub_key}", coerce_value(value)))
                continue
            if metric.rate_based:
                value = self._rate(metric.metric_id, reading, timestamp)
            else:
                value = coerce_value(reading)
            batch.append(self._sample(now, metric.metric_id, value))
        return batch

    def _read(self, metric: ResolvedMetric) -> Optional[Any]:
        try:
            reading = metric.collect()
        except CollectionFailed as exc:
            if metric.metric_id in self._failing:
                logger.debug("Collection failed: %s", exc)
            else:
                logger.warning("Collection failed, reporting 0.0: %s", exc)
                self._failing.add(metric.metric_id)
            return None
        self._failing.discard(metric.metric_id)
        return reading

    def _rate(self, metric_id: str, reading: Any, timestamp: float) -> float:
        # a garbage counter reading must not become the next baseline
        try:
            raw = parse_number(reading)
        except MalformedValue as exc:
            logger.debug("Malformed counter for %s, reporting 0.0: %s", metric_id, exc)
            return 0.0
        return self.rate_engine.rate(metric_id, raw, timestamp)

    def _sample(self, now: datetime, cargo_id: str, value: float) -> MetricSample:
        return MetricSample(time=now, ship_id=self.ship_id, cargo_id=cargo_id, value=value)
