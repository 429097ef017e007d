"""
Sampling scheduler: the run loop and the one-shot self-test.
"""
from __future__ import annotations

import asyncio
import logging
from datetime import UTC, datetime
from typing import Awaitable, Callable, List, Optional

from .collectors import CollectionFailed, CollectorRegistry
from .config import AgentConfig
from .metrics import BatchAssembler
from .rates import RateEngine
from .sender import DeliveryResult, send_batch, send_probe

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]
Sleep = Callable[[float], Awaitable[None]]


def _utcnow() -> datetime:
    return datetime.now(UTC)


class Sampler:
    """
    Owns the collectors, the rate state and the tick cadence for one host.

    Everything runs in a single task. The only suspension points are the
    HTTP request and the sleep between ticks.
    """

    def __init__(
        self,
        config: AgentConfig,
        registry: Optional[CollectorRegistry] = None,
        rate_engine: Optional[RateEngine] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self.config = config
        self.registry = registry or CollectorRegistry()
        self.rate_engine = rate_engine or RateEngine()
        self.clock = clock or _utcnow
        self.metrics = self.registry.resolve(config.enabled_metrics)
        self.assembler = BatchAssembler(self.metrics, self.rate_engine, config.ship_id)

    async def tick(self) -> DeliveryResult:
        now = self.clock()
        batch = self.assembler.assemble(now)
        return await send_batch(self.config, batch)

    async def run_forever(self, sleep: Sleep = asyncio.sleep) -> None:
        """Sample, send and sleep until the task is cancelled or the process stops."""
        interval = self.config.sampling_interval
        while True:
            try:
                await self.tick()
            except Exception:
                logger.exception("Sampling tick failed")
            await sleep(interval)

    async def self_test(self, probe: bool = False, out: Callable[[str], None] = print) -> int:
        """Exercise every configured collector once; returns a process exit status."""
        failed: List[str] = []
        out("Testing selected metrics...")
        for metric in self.metrics:
            try:
                metric.collect()
            except CollectionFailed as exc:
                out(f"Testing {metric.metric_id}... FAILED ({exc.reason})")
                failed.append(metric.metric_id)
                continue
            out(f"Testing {metric.metric_id}... OK")

        if failed:
            out(f"The following metrics failed to collect: {' '.join(failed)}")
        else:
            out("All metrics collected successfully!")

        if probe:
            result = await send_probe(self.config, self.clock())
            if result.success:
                out(f"Test data point sent successfully! API returned HTTP {result.status_code}.")
            else:
                out(f"Failed to send test data point: HTTP {result.status_code} {result.body}".rstrip())
                return 1
        return 1 if failed else 0
