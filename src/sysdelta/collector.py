"""Telemetry collection for sysdelta using psutil."""

import platform
import socket
import time
from datetime import UTC, datetime
from typing import Protocol

import psutil

from sysdelta.errors import CollectionError
from sysdelta.log import get_logger
from sysdelta.telemetry import (
    Connection,
    CpuInfo,
    DiskDevice,
    DiskInfo,
    FilesystemStat,
    MemInfo,
    NetInterface,
    NetStat,
    NetworkInfo,
    OsInfo,
    RawProcess,
    TelemetryBundle,
    UserSession,
)

_log = get_logger("collector")

_PROCESS_ATTRS = [
    "pid",
    "ppid",
    "name",
    "username",
    "status",
    "cpu_percent",
    "memory_percent",
    "memory_info",
    "nice",
    "cmdline",
]

_AF_LINK = getattr(psutil, "AF_LINK", None)


class TelemetryCollector(Protocol):
    """Anything that can produce a TelemetryBundle."""

    def collect(self) -> TelemetryBundle: ...


class PsutilCollector:
    """
    Collects raw machine telemetry with psutil.

    Per-process CPU usage needs two samples: the first call to
    cpu_percent() always returns 0.0. collect() primes every process,
    waits sample_interval seconds, then reads the real values.
    Processes that exit or deny access mid-poll are skipped.
    """

    def __init__(self, sample_interval: float = 0.5) -> None:
        """
        Initialize the PsutilCollector.

        Args:
            sample_interval: Seconds between the priming and the measuring
                pass of per-process CPU usage. Default 0.5s.
        """
        self._sample_interval = max(0.0, sample_interval)

    @property
    def sample_interval(self) -> float:
        """Get the CPU sampling interval."""
        return self._sample_interval

    def collect(self) -> TelemetryBundle:
        """
        Collect a bundle of the current system state.

        Raises:
            CollectionError: If a whole telemetry subtree cannot be read.
        """
        self._prime_cpu_percent()
        if self._sample_interval:
            time.sleep(self._sample_interval)

        collected_at = datetime.now(UTC)
        bundle = TelemetryBundle(
            collected_at=collected_at,
            timezone=_local_timezone(),
            cpu=self._guard("cpu", self._collect_cpu),
            mem=self._guard("mem", self._collect_mem),
            processes=self._guard("processes", self._collect_processes),
            network=self._guard("network", self._collect_network),
            disk=self._guard("disk", self._collect_disk),
            os=self._guard("os", self._collect_os),
            users=self._guard("users", self._collect_users),
        )
        _log.info(
            "telemetry_collected",
            processes=len(bundle.processes),
            connections=len(bundle.network.connections),
            filesystems=len(bundle.disk.filesystems),
        )
        return bundle

    @staticmethod
    def _guard(field: str, func):
        try:
            return func()
        except (psutil.Error, OSError) as exc:
            _log.error("telemetry_section_failed", section=field, error=str(exc))
            raise CollectionError(field, f"Failed to collect {field}: {exc}") from exc

    def _prime_cpu_percent(self) -> None:
        psutil.cpu_percent()
        for proc in psutil.process_iter():
            try:
                proc.cpu_percent(None)
            except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
                continue

    def _collect_cpu(self) -> CpuInfo:
        brand = platform.processor() or platform.machine()
        try:
            freq = psutil.cpu_freq()
        except (AttributeError, NotImplementedError, OSError):
            # Not exposed in some containers and VMs
            freq = None
        return CpuInfo(
            manufacturer=_cpu_manufacturer(brand),
            brand=brand,
            cores=psutil.cpu_count(logical=True) or 0,
            speed_ghz=round(freq.current / 1000, 2) if freq else 0.0,
        )

    def _collect_mem(self) -> MemInfo:
        mem = psutil.virtual_memory()
        return MemInfo(total=mem.total, used=mem.used, available=mem.available)

    def _collect_processes(self) -> list[RawProcess]:
        """
        Collect all running processes.

        Uses psutil.process_iter() with oneshot() context manager for efficiency.
        """
        processes: list[RawProcess] = []

        for proc in psutil.process_iter(attrs=_PROCESS_ATTRS):
            try:
                with proc.oneshot():
                    info = proc.info
                    cmdline = info.get("cmdline") or []
                    mem_info = info.get("memory_info")
                    processes.append(
                        RawProcess(
                            pid=info.get("pid", 0),
                            ppid=info.get("ppid") or 0,
                            name=info.get("name") or "",
                            cpu_percent=info.get("cpu_percent") or 0.0,
                            memory_percent=round(info.get("memory_percent") or 0.0, 2),
                            command=" ".join(cmdline),
                            user=info.get("username") or "",
                            state=info.get("status") or "",
                            priority=info.get("nice") or 0,
                            vms=mem_info.vms if mem_info else 0,
                            rss=mem_info.rss if mem_info else 0,
                        )
                    )
            except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
                continue

        return processes

    def _collect_network(self) -> NetworkInfo:
        if_stats = psutil.net_if_stats()
        interfaces: list[NetInterface] = []
        for iface, addrs in psutil.net_if_addrs().items():
            ip4 = next((a.address for a in addrs if a.family == socket.AF_INET), "")
            ip6 = next((a.address for a in addrs if a.family == socket.AF_INET6), "")
            mac = next((a.address for a in addrs if _AF_LINK is not None and a.family == _AF_LINK), "")
            stat = if_stats.get(iface)
            interfaces.append(
                NetInterface(
                    iface=iface,
                    ip4=ip4,
                    ip6=ip6,
                    mac=mac,
                    type="loopback" if ip4.startswith("127.") else "wired",
                    speed=stat.speed if stat else 0,
                )
            )

        stats = [
            NetStat(
                iface=iface,
                rx_bytes=io.bytes_recv,
                tx_bytes=io.bytes_sent,
                rx_errors=io.errin,
                tx_errors=io.errout,
            )
            for iface, io in psutil.net_io_counters(pernic=True).items()
        ]

        return NetworkInfo(interfaces=interfaces, stats=stats, connections=self._collect_connections())

    def _collect_connections(self) -> list[Connection]:
        try:
            conns = psutil.net_connections(kind="inet")
        except psutil.AccessDenied:
            # macOS requires root to list sockets of other users
            _log.warning("connections_access_denied")
            return []

        names: dict[int, str] = {}
        connections: list[Connection] = []
        for conn in conns:
            if not conn.laddr:
                continue
            connections.append(
                Connection(
                    protocol=_protocol(conn),
                    local_address=conn.laddr.ip,
                    local_port=conn.laddr.port,
                    state=conn.status,
                    process_name=_process_name(conn.pid, names),
                    pid=conn.pid,
                )
            )
        return connections

    def _collect_disk(self) -> DiskInfo:
        devices: dict[str, int] = {}
        filesystems: list[FilesystemStat] = []
        for part in psutil.disk_partitions(all=False):
            try:
                usage = psutil.disk_usage(part.mountpoint)
            except (PermissionError, OSError):
                continue
            filesystems.append(
                FilesystemStat(
                    mount=part.mountpoint,
                    size=usage.total,
                    used=usage.used,
                    available=usage.free,
                    use_percent=usage.percent,
                )
            )
            # A device mounted several times counts once
            devices[part.device] = max(devices.get(part.device, 0), usage.total)

        return DiskInfo(
            devices=[DiskDevice(name=name, size=size) for name, size in devices.items()],
            filesystems=filesystems,
        )

    def _collect_os(self) -> OsInfo:
        uname = platform.uname()
        return OsInfo(
            platform=uname.system.lower(),
            distro=_distro_name(),
            release=uname.release,
            kernel=uname.version,
            arch=uname.machine,
        )

    def _collect_users(self) -> list[UserSession]:
        sessions: list[UserSession] = []
        for user in psutil.users():
            started = datetime.fromtimestamp(user.started)
            sessions.append(
                UserSession(
                    user=user.name,
                    tty=user.terminal or "",
                    date=started.strftime("%Y-%m-%d"),
                    time=started.strftime("%H:%M"),
                )
            )
        return sessions


def _protocol(conn) -> str:
    proto = "tcp" if conn.type == socket.SOCK_STREAM else "udp"
    return f"{proto}6" if conn.family == socket.AF_INET6 else proto


def _process_name(pid: int | None, cache: dict[int, str]) -> str:
    if pid is None:
        return ""
    if pid not in cache:
        try:
            cache[pid] = psutil.Process(pid).name()
        except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
            cache[pid] = ""
    return cache[pid]


def _cpu_manufacturer(brand: str) -> str:
    lowered = brand.lower()
    for vendor in ("intel", "amd", "apple", "arm"):
        if vendor in lowered:
            return vendor.capitalize() if vendor != "amd" else "AMD"
    return ""


def _distro_name() -> str:
    try:
        release = platform.freedesktop_os_release()
    except OSError:
        return platform.system()
    return release.get("PRETTY_NAME") or release.get("NAME") or platform.system()


def _local_timezone() -> str:
    return datetime.now().astimezone().tzname() or "UTC"
