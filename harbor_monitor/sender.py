"""
HTTP delivery of metric batches.

One attempt per batch: no retry and no queue. A batch that fails to send is
dropped and the next tick starts fresh.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any, Dict, List, Optional

import httpx

from .config import AgentConfig
from .samples import MetricSample, format_timestamp, serialize_batch

logger = logging.getLogger(__name__)

API_KEY_HEADER = "X-API-Key"
PROBE_CARGO_ID = "test"

_TEST_CLIENT: Optional[httpx.AsyncClient] = None


def set_test_client(client: httpx.AsyncClient | None) -> None:
    global _TEST_CLIENT
    _TEST_CLIENT = client


class TransmissionFailed(Exception):
    def __init__(self, status_code: Optional[int], body: str) -> None:
        super().__init__(f"HTTP {status_code}: {body}" if status_code is not None else body)
        self.status_code = status_code
        self.body = body


@dataclass
class DeliveryResult:
    success: bool
    status_code: Optional[int] = None
    body: str = ""
    sample_count: int = 0


async def _post_batch(config: AgentConfig, payload: List[Dict[str, Any]]) -> httpx.Response:
    headers = {"Content-Type": "application/json", API_KEY_HEADER: config.api_key}
    client = _TEST_CLIENT or httpx.AsyncClient()
    try:
        try:
            resp = await client.post(
                config.endpoint,
                json=payload,
                headers=headers,
                timeout=config.request_timeout,
            )
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            raise TransmissionFailed(None, f"{type(exc).__name__}: {exc}") from exc
    finally:
        if not _TEST_CLIENT:
            await client.aclose()
    if resp.status_code != 200:
        raise TransmissionFailed(resp.status_code, resp.text)
    return resp


async def _deliver(config: AgentConfig, payload: List[Dict[str, Any]]) -> DeliveryResult:
    try:
        resp = await _post_batch(config, payload)
    except TransmissionFailed as exc:
        if exc.status_code is None:
            logger.error("Error sending metrics to %s: %s", config.endpoint, exc.body)
        else:
            logger.error("Error sending metrics: HTTP %s", exc.status_code)
            logger.error("Response: %s", exc.body)
        return DeliveryResult(success=False, status_code=exc.status_code, body=exc.body, sample_count=len(payload))
    logger.debug("Delivered %s samples (HTTP %s)", len(payload), resp.status_code)
    return DeliveryResult(success=True, status_code=resp.status_code, body=resp.text, sample_count=len(payload))


async def send_batch(config: AgentConfig, batch: List[MetricSample]) -> DeliveryResult:
    """Send one batch as a single JSON array; never raises on delivery failure."""
    payload = serialize_batch(batch)
    logger.debug("Sending payload: %s", payload)
    return await _deliver(config, payload)


async def send_probe(config: AgentConfig, now: datetime | None = None) -> DeliveryResult:
    """Send a single ``test`` data point to check the endpoint and credential."""
    ts = now or datetime.now(UTC)
    payload = [
        {
            "time": format_timestamp(ts),
            "ship_id": config.ship_id,
            "cargo_id": PROBE_CARGO_ID,
            "value": 1.0,
        }
    ]
    return await _deliver(config, payload)
