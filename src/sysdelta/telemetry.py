"""Typed raw telemetry handed from a collector to the snapshot builder.

Sizes are raw byte counts and percentages are raw floats; formatting into
the snapshot's fixed-precision strings happens in the builder. Every
collector, whether psutil-backed or fed from a JSON dump through
:meth:`TelemetryBundle.from_mapping`, produces these types.
"""

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from sysdelta.errors import CollectionError

REQUIRED_SECTIONS = ("cpu", "mem", "processes", "network", "disk", "os")


@dataclass(slots=True, frozen=True)
class CpuInfo:
    manufacturer: str
    brand: str
    cores: int
    speed_ghz: float


@dataclass(slots=True, frozen=True)
class MemInfo:
    total: int  # Bytes
    used: int
    available: int


@dataclass(slots=True, frozen=True)
class RawProcess:
    """One process as reported by the collector."""

    pid: int
    ppid: int
    name: str
    cpu_percent: float
    memory_percent: float
    command: str = ""
    user: str = ""
    state: str = ""
    priority: int = 0
    vms: int = 0  # Bytes
    rss: int = 0  # Bytes


@dataclass(slots=True, frozen=True)
class NetInterface:
    iface: str
    ip4: str = ""
    ip6: str = ""
    mac: str = ""
    type: str = ""
    speed: int = 0  # Mbit/s, 0 when unknown


@dataclass(slots=True, frozen=True)
class NetStat:
    iface: str
    rx_bytes: int = 0
    tx_bytes: int = 0
    rx_errors: int = 0
    tx_errors: int = 0


@dataclass(slots=True, frozen=True)
class Connection:
    """An inet socket; only LISTEN sockets end up in a snapshot."""

    protocol: str
    local_address: str
    local_port: int
    state: str
    process_name: str = ""
    pid: int | None = None


@dataclass(slots=True, frozen=True)
class NetworkInfo:
    interfaces: list[NetInterface] = field(default_factory=list)
    stats: list[NetStat] = field(default_factory=list)
    connections: list[Connection] = field(default_factory=list)


@dataclass(slots=True, frozen=True)
class DiskDevice:
    name: str
    size: int  # Bytes


@dataclass(slots=True, frozen=True)
class FilesystemStat:
    mount: str
    size: int  # Bytes
    used: int
    available: int
    use_percent: float


@dataclass(slots=True, frozen=True)
class DiskInfo:
    devices: list[DiskDevice] = field(default_factory=list)
    filesystems: list[FilesystemStat] = field(default_factory=list)


@dataclass(slots=True, frozen=True)
class OsInfo:
    platform: str
    distro: str
    release: str
    kernel: str
    arch: str


@dataclass(slots=True, frozen=True)
class UserSession:
    user: str
    tty: str
    date: str  # YYYY-MM-DD
    time: str  # HH:MM


@dataclass(slots=True, frozen=True)
class TelemetryBundle:
    """Everything a collector gathered at one instant.

    The six machine subtrees are typed as optional so that an incomplete
    bundle can be represented; :class:`~sysdelta.builder.SnapshotBuilder`
    refuses to build from one.
    """

    collected_at: datetime
    timezone: str
    cpu: CpuInfo | None
    mem: MemInfo | None
    processes: list[RawProcess] | None
    network: NetworkInfo | None
    disk: DiskInfo | None
    os: OsInfo | None
    users: list[UserSession] = field(default_factory=list)

    def missing_sections(self) -> list[str]:
        """Names of required subtrees that are absent, in canonical order."""
        return [name for name in REQUIRED_SECTIONS if getattr(self, name) is None]

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "TelemetryBundle":
        """
        Validate a plain mapping (e.g. decoded JSON) into a bundle.

        Required subtrees must be present; optional leaf fields fall back to
        the dataclass defaults. Malformed leaves raise CollectionError naming
        the subtree.

        Args:
            data: Mapping with the bundle's field names as keys.
        """
        for name in REQUIRED_SECTIONS:
            if data.get(name) is None:
                raise CollectionError(name)

        collected_at = data.get("collected_at")
        if isinstance(collected_at, str):
            collected_at = datetime.fromisoformat(collected_at)
        elif collected_at is None:
            collected_at = datetime.now(UTC)
        if collected_at.tzinfo is None:
            collected_at = collected_at.replace(tzinfo=UTC)

        network = data["network"]
        disk = data["disk"]
        return cls(
            collected_at=collected_at,
            timezone=str(data.get("timezone") or "UTC"),
            cpu=_build("cpu", CpuInfo, data["cpu"]),
            mem=_build("mem", MemInfo, data["mem"]),
            processes=[_build("processes", RawProcess, p) for p in data["processes"]],
            network=NetworkInfo(
                interfaces=[_build("network", NetInterface, i) for i in network.get("interfaces", [])],
                stats=[_build("network", NetStat, s) for s in network.get("stats", [])],
                connections=[_build("network", Connection, c) for c in network.get("connections", [])],
            ),
            disk=DiskInfo(
                devices=[_build("disk", DiskDevice, d) for d in disk.get("devices", [])],
                filesystems=[_build("disk", FilesystemStat, f) for f in disk.get("filesystems", [])],
            ),
            os=_build("os", OsInfo, data["os"]),
            users=[_build("users", UserSession, u) for u in data.get("users") or []],
        )


def _build(section: str, cls: type, values: Mapping[str, Any]) -> Any:
    try:
        return cls(**values)
    except TypeError as exc:
        raise CollectionError(section, f"Invalid telemetry in {section}: {exc}") from exc
