"""
Configuration loader for the Harbor Monitor agent.
"""
from __future__ import annotations

import json
import logging
import math
import os
import socket
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, Iterable, Tuple

logger = logging.getLogger(__name__)

ALLOWED_INTERVALS = (1, 5, 30, 60, 300)
DEFAULT_INTERVAL = 60
DEFAULT_METRICS = ("cpu_usage", "ram_usage")
DEFAULT_TIMEOUT = 10.0


def _default_config_path() -> Path:
    override = os.getenv("HARBOR_MONITOR_CONFIG_PATH")
    if override:
        return Path(override).expanduser()
    return Path("~/.harbor_monitor/config.json").expanduser()


def normalize_interval(value: Any) -> int:
    try:
        interval = int(value)
    except (TypeError, ValueError):
        interval = None
    if interval not in ALLOWED_INTERVALS:
        logger.warning(
            "Sampling interval %r is not one of %s; using %ss", value, ALLOWED_INTERVALS, DEFAULT_INTERVAL
        )
        return DEFAULT_INTERVAL
    return interval


def normalize_timeout(value: Any) -> float:
    try:
        timeout = float(value)
    except (TypeError, ValueError):
        timeout = math.nan
    if not math.isfinite(timeout) or timeout <= 0:
        logger.warning("Request timeout %r is not a positive number; using %ss", value, DEFAULT_TIMEOUT)
        return DEFAULT_TIMEOUT
    return timeout


def normalize_metrics(metrics: Iterable[str] | str | None) -> Tuple[str, ...]:
    """Ordered, de-duplicated metric ids; falls back to CPU and RAM when empty."""
    if isinstance(metrics, str):
        metrics = metrics.split(",")
    seen: Dict[str, None] = {}
    for metric in metrics or ():
        metric = str(metric).strip()
        if metric:
            seen.setdefault(metric, None)
    if not seen:
        return DEFAULT_METRICS
    return tuple(seen)


@dataclass(frozen=True)
class AgentConfig:
    endpoint: str = ""
    api_key: str = ""
    ship_id: str = field(default_factory=socket.gethostname)
    sampling_interval: int = DEFAULT_INTERVAL
    enabled_metrics: Tuple[str, ...] = DEFAULT_METRICS
    request_timeout: float = DEFAULT_TIMEOUT

    def __post_init__(self) -> None:
        object.__setattr__(self, "sampling_interval", normalize_interval(self.sampling_interval))
        object.__setattr__(self, "enabled_metrics", normalize_metrics(self.enabled_metrics))
        object.__setattr__(self, "request_timeout", normalize_timeout(self.request_timeout))
        object.__setattr__(self, "endpoint", (self.endpoint or "").strip())

    @classmethod
    def load(cls, path: Path | None = None) -> "AgentConfig":
        path = path or _default_config_path()
        if not path.exists():
            path.parent.mkdir(parents=True, exist_ok=True)
            cfg = cls()._apply_env_overrides()
            cfg.save(path)
            return cfg
        with open(path, "r", encoding="utf-8") as fh:
            data = json.load(fh)
        cfg = cls(
            endpoint=data.get("endpoint") or "",
            api_key=data.get("api_key") or "",
            ship_id=data.get("ship_id") or socket.gethostname(),
            sampling_interval=data.get("sampling_interval", DEFAULT_INTERVAL),
            enabled_metrics=data.get("enabled_metrics") or DEFAULT_METRICS,
            request_timeout=data.get("request_timeout", DEFAULT_TIMEOUT),
        )
        return cfg._apply_env_overrides()

    def _apply_env_overrides(self) -> "AgentConfig":
        overrides: Dict[str, Any] = {}
        env_endpoint = os.getenv("HARBOR_MONITOR_ENDPOINT")
        env_api_key = os.getenv("HARBOR_MONITOR_API_KEY")
        env_ship_id = os.getenv("HARBOR_MONITOR_SHIP_ID")
        env_interval = os.getenv("HARBOR_MONITOR_INTERVAL")
        env_metrics = os.getenv("HARBOR_MONITOR_METRICS")
        if env_endpoint:
            overrides["endpoint"] = env_endpoint
        if env_api_key:
            overrides["api_key"] = env_api_key
        if env_ship_id:
            overrides["ship_id"] = env_ship_id
        if env_interval:
            overrides["sampling_interval"] = env_interval
        if env_metrics:
            overrides["enabled_metrics"] = env_metrics
        return self.with_overrides(**overrides)

    def with_overrides(self, **overrides: Any) -> "AgentConfig":
        overrides = {key: value for key, value in overrides.items() if value is not None}
        if not overrides:
            return self
        return replace(self, **overrides)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "endpoint": self.endpoint,
            "api_key": self.api_key,
            "ship_id": self.ship_id,
            "sampling_interval": self.sampling_interval,
            "enabled_metrics": list(self.enabled_metrics),
            "request_timeout": self.request_timeout,
        }

    def save(self, path: Path | None = None) -> None:
        path = path or _default_config_path()
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w", encoding="utf-8") as fh:
            json.dump(self.as_dict(), fh, indent=2)


def load_config(path: Path | None = None) -> AgentConfig:
    return AgentConfig.load(path)
