"""
Collector registry: one reader per metric identifier.

Readers return a number, or a mapping of sub-key to number for structured
metrics. Rate-based metrics return the raw cumulative counter; the batch
assembler turns it into a per-second rate.
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from enum import Enum
from functools import cached_property, partial
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional

import psutil

logger = logging.getLogger(__name__)


class MetricKind(str, Enum):
    CPU_USAGE = "cpu_usage"
    CPU_CORES = "cpu_cores"
    RAM_USAGE = "ram_usage"
    RAM_DETAILED = "ram_detailed"
    DISK_USAGE = "disk_usage"
    DISK_ALL = "disk_all"
    LOAD_AVERAGE_1M = "load_average_1m"
    LOAD_AVERAGE_5M = "load_average_5m"
    LOAD_AVERAGE_15M = "load_average_15m"
    PROCESSES = "processes"
    ZOMBIE_PROCESSES = "zombie_processes"
    NETWORK_IN = "network_in"
    NETWORK_OUT = "network_out"
    NETWORK_ERRORS = "network_errors"
    TEMPERATURE = "temperature"
    UPTIME = "uptime"
    SWAP_USAGE = "swap_usage"
    DISK_IO = "disk_io"
    DISK_READ = "disk_read"
    DISK_WRITE = "disk_write"
    OPEN_FILES = "open_files"
    TCP_CONNECTIONS = "tcp_connections"
    UDP_CONNECTIONS = "udp_connections"
    LOGGED_USERS = "logged_users"
    ENTROPY = "entropy"
    CONTEXT_SWITCHES = "context_switches"
    INTERRUPTS = "interrupts"


METRIC_DESCRIPTIONS: Dict[MetricKind, str] = {
    MetricKind.CPU_USAGE: "Overall CPU usage (%)",
    MetricKind.CPU_CORES: "CPU usage per core (%)",
    MetricKind.RAM_USAGE: "RAM usage (%)",
    MetricKind.RAM_DETAILED: "Memory breakdown (bytes)",
    MetricKind.DISK_USAGE: "Root disk usage (%)",
    MetricKind.DISK_ALL: "Usage of every mounted partition (%)",
    MetricKind.LOAD_AVERAGE_1M: "Load average (1 min)",
    MetricKind.LOAD_AVERAGE_5M: "Load average (5 min)",
    MetricKind.LOAD_AVERAGE_15M: "Load average (15 min)",
    MetricKind.PROCESSES: "Process count",
    MetricKind.ZOMBIE_PROCESSES: "Zombie process count",
    MetricKind.NETWORK_IN: "Network in (bytes/s)",
    MetricKind.NETWORK_OUT: "Network out (bytes/s)",
    MetricKind.NETWORK_ERRORS: "Network error and drop counters",
    MetricKind.TEMPERATURE: "CPU temperature (C)",
    MetricKind.UPTIME: "System uptime (seconds)",
    MetricKind.SWAP_USAGE: "Swap usage (%)",
    MetricKind.DISK_IO: "Disk I/O operations (ops/s)",
    MetricKind.DISK_READ: "Disk reads (ops/s)",
    MetricKind.DISK_WRITE: "Disk writes (ops/s)",
    MetricKind.OPEN_FILES: "Open file descriptors",
    MetricKind.TCP_CONNECTIONS: "Established TCP connections",
    MetricKind.UDP_CONNECTIONS: "UDP sockets",
    MetricKind.LOGGED_USERS: "Logged in users",
    MetricKind.ENTROPY: "Available entropy",
    MetricKind.CONTEXT_SWITCHES: "Context switches (per sec)",
    MetricKind.INTERRUPTS: "Interrupts (per sec)",
}

RATE_METRICS = frozenset(
    {
        MetricKind.NETWORK_IN,
        MetricKind.NETWORK_OUT,
        MetricKind.DISK_IO,
        MetricKind.DISK_READ,
        MetricKind.DISK_WRITE,
        MetricKind.CONTEXT_SWITCHES,
        MetricKind.INTERRUPTS,
    }
)

_TEMPERATURE_LABELS = ("cpu_thermal", "coretemp", "k10temp")
_TCP_ESTABLISHED = "01"


class SourceUnavailable(LookupError):
    """The data source behind a metric does not exist on this host."""


class CollectionFailed(Exception):
    def __init__(self, metric_id: str, reason: str) -> None:
        super().__init__(f"{metric_id}: {reason}")
        self.metric_id = metric_id
        self.reason = reason


@dataclass(frozen=True)
class ResolvedMetric:
    """A configured metric bound to the reader chosen for this host."""

    metric_id: str
    reader: Callable[[], Any]
    rate_based: bool = False

    def collect(self) -> Any:
        try:
            return self.reader()
        except Exception as exc:
            raise CollectionFailed(self.metric_id, str(exc) or type(exc).__name__) from exc


def _read_int(path: Path, field_index: int = 0) -> int:
    with open(path, "r", encoding="utf-8") as fh:
        return int(fh.read().split()[field_index])


def _millidegrees(path: Path) -> float:
    return _read_int(path) / 1000.0


def _psutil_temperature(label: str) -> float:
    readings = psutil.sensors_temperatures().get(label)
    if not readings:
        raise SourceUnavailable(f"sensor {label} stopped reporting")
    return readings[0].current


def _unknown_reader(metric_id: str) -> Callable[[], Any]:
    def reader() -> Any:
        raise SourceUnavailable(f"unknown metric identifier {metric_id!r}")

    return reader


def _partition_key(mountpoint: str) -> str:
    key = mountpoint.strip("/").replace("/", "_")
    return key or "root"


class CollectorRegistry:
    """
    Maps metric identifiers to readers.

    Sources with more than one way to read them (temperature, the network
    interface, connection tables) are probed once and the winning strategy is
    reused on every tick.
    """

    def __init__(self, proc_root: Path | str = "/proc", sys_root: Path | str = "/sys") -> None:
        self.proc_root = Path(proc_root)
        self.sys_root = Path(sys_root)
        self._builders: Dict[MetricKind, Callable[[], Callable[[], Any]]] = {
            MetricKind.CPU_USAGE: lambda: self.cpu_usage,
            MetricKind.CPU_CORES: lambda: self.cpu_cores,
            MetricKind.RAM_USAGE: lambda: self.ram_usage,
            MetricKind.RAM_DETAILED: lambda: self.ram_detailed,
            MetricKind.DISK_USAGE: lambda: self.disk_usage,
            MetricKind.DISK_ALL: lambda: self.disk_all,
            MetricKind.LOAD_AVERAGE_1M: lambda: partial(self.load_average, 0),
            MetricKind.LOAD_AVERAGE_5M: lambda: partial(self.load_average, 1),
            MetricKind.LOAD_AVERAGE_15M: lambda: partial(self.load_average, 2),
            MetricKind.PROCESSES: lambda: self.processes,
            MetricKind.ZOMBIE_PROCESSES: lambda: self.zombie_processes,
            MetricKind.NETWORK_IN: lambda: self._network_reader(self.network_in),
            MetricKind.NETWORK_OUT: lambda: self._network_reader(self.network_out),
            MetricKind.NETWORK_ERRORS: lambda: self._network_reader(self.network_errors),
            MetricKind.TEMPERATURE: self._temperature_reader,
            MetricKind.UPTIME: lambda: self.uptime,
            MetricKind.SWAP_USAGE: lambda: self.swap_usage,
            MetricKind.DISK_IO: lambda: self.disk_io,
            MetricKind.DISK_READ: lambda: self.disk_read,
            MetricKind.DISK_WRITE: lambda: self.disk_write,
            MetricKind.OPEN_FILES: lambda: self.open_files,
            MetricKind.TCP_CONNECTIONS: self._tcp_reader,
            MetricKind.UDP_CONNECTIONS: self._udp_reader,
            MetricKind.LOGGED_USERS: lambda: self.logged_users,
            MetricKind.ENTROPY: lambda: self.entropy,
            MetricKind.CONTEXT_SWITCHES: lambda: self.context_switches,
            MetricKind.INTERRUPTS: lambda: self.interrupts,
        }

    def resolve(self, metric_ids: Iterable[str]) -> List[ResolvedMetric]:
        """Bind each identifier, in order, to its reader."""
        resolved: List[ResolvedMetric] = []
        for metric_id in metric_ids:
            try:
                kind = MetricKind(metric_id)
            except ValueError:
                logger.warning("Unknown metric identifier %s; it will report as failed", metric_id)
                resolved.append(ResolvedMetric(metric_id, _unknown_reader(metric_id)))
                continue
            reader = self._builders[kind]()
            resolved.append(ResolvedMetric(kind.value, reader, kind in RATE_METRICS))
        return resolved

    def _network_reader(self, reader: Callable[[], Any]) -> Callable[[], Any]:
        """Pick the network interface at resolve time and hand back ``reader``."""
        self.network_interface
        return reader

    # -- capability probes -------------------------------------------------

    @cached_property
    def network_interface(self) -> Optional[str]:
        route_table = self.proc_root / "net" / "route"
        try:
            with open(route_table, "r", encoding="utf-8") as fh:
                next(fh, None)
                for line in fh:
                    fields = line.split()
                    if len(fields) > 1 and fields[1] == "00000000":
                        logger.debug("Using default-route interface %s", fields[0])
                        return fields[0]
        except OSError:
            pass
        try:
            nics = psutil.net_io_counters(pernic=True)
        except (OSError, psutil.Error):
            nics = {}
        for name in nics:
            if name != "lo":
                logger.debug("No default route; using interface %s", name)
                return name
        logger.debug("No usable interface found; using host-wide network totals")
        return None

    @cached_property
    def temperature_source(self) -> Optional[Callable[[], float]]:
        sensors = getattr(psutil, "sensors_temperatures", None)
        if sensors is not None:
            try:
                temps = sensors() or {}
            except (OSError, psutil.Error):
                temps = {}
            for label in _TEMPERATURE_LABELS + tuple(temps):
                if temps.get(label):
                    return partial(_psutil_temperature, label)
        for path in (
            self.sys_root / "class" / "thermal" / "thermal_zone0" / "temp",
            self.sys_root / "class" / "hwmon" / "hwmon0" / "temp1_input",
        ):
            if path.is_file():
                return partial(_millidegrees, path)
        return None

    @cached_property
    def connections_via_psutil(self) -> bool:
        try:
            psutil.net_connections(kind="tcp")
        except (OSError, psutil.Error):
            logger.debug("psutil cannot list sockets; falling back to %s/net tables", self.proc_root)
            return False
        return True

    def _temperature_reader(self) -> Callable[[], float]:
        source = self.temperature_source
        if source is not None:
            return source

        def no_sensor() -> float:
            raise SourceUnavailable("no temperature sensor found")

        return no_sensor

    def _tcp_reader(self) -> Callable[[], int]:
        if self.connections_via_psutil:
            return self.tcp_connections
        return partial(self._count_socket_table, ("tcp", "tcp6"), _TCP_ESTABLISHED)

    def _udp_reader(self) -> Callable[[], int]:
        if self.connections_via_psutil:
            return self.udp_connections
        return partial(self._count_socket_table, ("udp", "udp6"), None)

    # -- readers -----------------------------------------------------------

    def cpu_usage(self) -> float:
        return psutil.cpu_percent(interval=None)

    def cpu_cores(self) -> Dict[str, float]:
        per_core = psutil.cpu_percent(interval=None, percpu=True)
        return {f"core{i}": pct for i, pct in enumerate(per_core)}

    def ram_usage(self) -> float:
        return psutil.virtual_memory().percent

    def ram_detailed(self) -> Dict[str, float]:
        mem = psutil.virtual_memory()
        fields = ("total", "used", "free", "shared", "buffers", "cached", "available")
        return {name: getattr(mem, name, 0) for name in fields}

    def disk_usage(self) -> float:
        return psutil.disk_usage("/").percent

    def disk_all(self) -> Dict[str, float]:
        usage: Dict[str, float] = {}
        for partition in psutil.disk_partitions():
            if not partition.device.startswith("/dev/"):
                continue
            try:
                usage[_partition_key(partition.mountpoint)] = psutil.disk_usage(partition.mountpoint).percent
            except (PermissionError, OSError):
                continue
        if not usage:
            raise SourceUnavailable("no mounted block-device partitions")
        return usage

    def load_average(self, index: int) -> float:
        return psutil.getloadavg()[index]

    def processes(self) -> int:
        return len(psutil.pids())

    def zombie_processes(self) -> int:
        return sum(
            1 for proc in psutil.process_iter(["status"]) if proc.info.get("status") == psutil.STATUS_ZOMBIE
        )

    def _nic_counters(self) -> Any:
        iface = self.network_interface
        if iface is None:
            counters = psutil.net_io_counters()
        else:
            counters = psutil.net_io_counters(pernic=True).get(iface)
        if counters is None:
            raise SourceUnavailable(f"no counters for interface {iface}")
        return counters

    def network_in(self) -> int:
        return self._nic_counters().bytes_recv

    def network_out(self) -> int:
        return self._nic_counters().bytes_sent

    def network_errors(self) -> Dict[str, float]:
        counters = self._nic_counters()
        return {
            "rx_errors": counters.errin,
            "rx_dropped": counters.dropin,
            "tx_errors": counters.errout,
            "tx_dropped": counters.dropout,
        }

    def uptime(self) -> float:
        return time.time() - psutil.boot_time()

    def swap_usage(self) -> float:
        return psutil.swap_memory().percent

    def _disk_counters(self) -> Any:
        counters = psutil.disk_io_counters()
        if counters is None:
            raise SourceUnavailable("no disk I/O counters")
        return counters

    def disk_io(self) -> int:
        counters = self._disk_counters()
        return counters.read_count + counters.write_count

    def disk_read(self) -> int:
        return self._disk_counters().read_count

    def disk_write(self) -> int:
        return self._disk_counters().write_count

    def open_files(self) -> int:
        return _read_int(self.proc_root / "sys" / "fs" / "file-nr")

    def tcp_connections(self) -> int:
        return sum(1 for conn in psutil.net_connections(kind="tcp") if conn.status == psutil.CONN_ESTABLISHED)

    def udp_connections(self) -> int:
        return len(psutil.net_connections(kind="udp"))

    def _count_socket_table(self, tables: Iterable[str], state: Optional[str]) -> int:
        count = 0
        found = False
        for table in tables:
            path = self.proc_root / "net" / table
            if not path.is_file():
                continue
            found = True
            with open(path, "r", encoding="utf-8") as fh:
                next(fh, None)
                for line in fh:
                    fields = line.split()
                    if len(fields) > 3 and (state is None or fields[3] == state):
                        count += 1
        if not found:
            raise SourceUnavailable(f"no socket tables under {self.proc_root / 'net'}")
        return count

    def logged_users(self) -> int:
        return len(psutil.users())

    def entropy(self) -> int:
        return _read_int(self.proc_root / "sys" / "kernel" / "random" / "entropy_avail")

    def context_switches(self) -> int:
        return psutil.cpu_stats().ctx_switches

    def interrupts(self) -> int:
        return psutil.cpu_stats().interrupts
