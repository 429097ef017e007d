"""
Per-second rates for monotonically increasing OS counters.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, Optional

logger = logging.getLogger(__name__)


@dataclass
class CounterState:
    previous_raw_value: float
    previous_timestamp: float


class RateEngine:
    """
    Converts successive raw counter readings into rates.

    State is keyed by metric identifier so each counter keeps its own baseline.
    The first reading for a key records the baseline and yields 0.0. A reading
    whose elapsed time is not positive yields 0.0 and leaves the baseline alone.
    A counter that went backwards (reboot, wrap) yields 0.0 and the new raw
    value becomes the baseline.
    """

    def __init__(self) -> None:
        self._states: Dict[str, CounterState] = {}

    def rate(self, key: str, value: float, timestamp: float) -> float:
        state = self._states.get(key)
        if state is None:
            self._states[key] = CounterState(previous_raw_value=value, previous_timestamp=timestamp)
            return 0.0

        elapsed = timestamp - state.previous_timestamp
        if elapsed <= 0:
            logger.debug("Non-positive elapsed time for %s (%.6fs); emitting 0.0", key, elapsed)
            return 0.0

        delta = value - state.previous_raw_value
        state.previous_raw_value = value
        state.previous_timestamp = timestamp
        if delta < 0:
            logger.info("Counter %s went backwards by %s; treating as reset", key, -delta)
            return 0.0
        return delta / elapsed

    def state(self, key: str) -> Optional[CounterState]:
        return self._states.get(key)

    def reset(self, key: Optional[str] = None) -> None:
        if key is None:
            self._states.clear()
        else:
            self._states.pop(key, None)
