"""
Main agent loop using asyncio.
"""
from __future__ import annotations

import argparse
import asyncio
import logging
from pathlib import Path

from .collectors import METRIC_DESCRIPTIONS
from .config import ALLOWED_INTERVALS, AgentConfig, load_config
from .scheduler import Sampler

logger = logging.getLogger(__name__)


async def run_loop(config: AgentConfig, sampler: Sampler | None = None) -> None:
    sampler = sampler or Sampler(config)
    await sampler.run_forever()


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run the Harbor Monitor agent.")
    parser.add_argument("--endpoint", dest="endpoint", help="Telemetry batch ingest URL (defaults to config/env).")
    parser.add_argument("--api-key", dest="api_key", help="API key sent in the X-API-Key header.")
    parser.add_argument("--ship-id", dest="ship_id", help="Host identifier to report with (defaults to hostname).")
    parser.add_argument(
        "--interval",
        dest="interval",
        type=int,
        help=f"Sampling interval in seconds, one of {', '.join(map(str, ALLOWED_INTERVALS))}.",
    )
    parser.add_argument("--metrics", dest="metrics", help="Comma separated metric identifiers to collect.")
    parser.add_argument(
        "--config-path",
        dest="config_path",
        help="Path to the agent config file (defaults to HARBOR_MONITOR_CONFIG_PATH or ~/.harbor_monitor/config.json).",
    )
    parser.add_argument(
        "--no-save",
        action="store_true",
        dest="no_save",
        help="Do not persist CLI overrides back to the config file.",
    )
    parser.add_argument("--log-level", dest="log_level", default="INFO", help="Logging level (default INFO).")
    parser.add_argument(
        "--self-test",
        action="store_true",
        dest="self_test",
        help="Collect every enabled metric once, report failures and exit.",
    )
    parser.add_argument(
        "--probe",
        action="store_true",
        help="With --self-test, also send one test data point to the endpoint.",
    )
    parser.add_argument(
        "--list-metrics",
        action="store_true",
        dest="list_metrics",
        help="List the available metric identifiers and exit.",
    )
    return parser.parse_args(argv)


def run(argv: list[str] | None = None) -> int:
    args = _parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, str(args.log_level).upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(message)s",
    )

    if args.list_metrics:
        for kind, description in METRIC_DESCRIPTIONS.items():
            print(f"{kind.value:<18} {description}")
        return 0

    cfg_path = Path(args.config_path).expanduser() if args.config_path else None
    config = load_config(cfg_path).with_overrides(
        endpoint=args.endpoint,
        api_key=args.api_key,
        ship_id=args.ship_id,
        sampling_interval=args.interval,
        enabled_metrics=args.metrics,
    )

    overridden = any(v is not None for v in (args.endpoint, args.api_key, args.ship_id, args.interval, args.metrics))
    if not args.no_save and overridden:
        config.save(cfg_path)

    sampler = Sampler(config)
    if args.self_test:
        return asyncio.run(sampler.self_test(probe=args.probe))

    if not config.endpoint:
        logger.error("No endpoint configured; pass --endpoint or set HARBOR_MONITOR_ENDPOINT")
        return 2

    logger.info(
        "Agent %s reporting %s to %s every %ss",
        config.ship_id,
        ", ".join(config.enabled_metrics),
        config.endpoint,
        config.sampling_interval,
    )
    try:
        asyncio.run(run_loop(config, sampler))
    except KeyboardInterrupt:
        logger.info("Agent stopped")
    return 0


if __name__ == "__main__":
    raise SystemExit(run())
