"""Data models for sysdelta snapshots and change reports."""

from collections.abc import Mapping
from dataclasses import asdict, dataclass, field
from typing import Any

from sysdelta.errors import MalformedSnapshotError
from sysdelta.telemetry import NetInterface, NetStat, UserSession

SNAPSHOT_VERSION = "2.0"
SIGNING_METHOD = "SHA256"


@dataclass(slots=True, frozen=True)
class SnapshotMetadata:
    snapshot_name: str
    timestamp: str  # ISO-8601 UTC, e.g. 2024-05-01T10:00:00.000Z
    timezone: str
    snapshot_version: str = SNAPSHOT_VERSION
    data_collection_method: str = "psutil"


@dataclass(slots=True, frozen=True)
class FilesystemUsage:
    mount: str
    size_gb: str
    used_gb: str
    available_gb: str
    use_percent: str


@dataclass(slots=True, frozen=True)
class SystemInfo:
    """Machine-wide facts. Sizes are fixed 2-decimal strings."""

    cpu_manufacturer: str
    cpu_brand: str
    cpu_cores: int
    cpu_speed_ghz: float
    total_memory_gb: str
    used_memory_gb: str
    available_memory_gb: str
    os_platform: str
    os_distro: str
    os_release: str
    os_kernel: str
    os_arch: str
    disk_count: int
    total_disk_size_gb: str
    filesystem_info: tuple[FilesystemUsage, ...] = ()


@dataclass(slots=True, frozen=True)
class PortRecord:
    protocol: str
    local_address: str
    local_port: int
    process_name: str
    pid: int | None


@dataclass(slots=True, frozen=True)
class ProcessRecord:
    """Immutable record of one running process."""

    name: str
    pid: int
    ppid: int
    cpu_usage: float  # percent
    mem_usage: float  # percent
    command: str
    user: str
    state: str
    priority: int
    virtual_memory_mb: str
    resident_memory_mb: str


@dataclass(slots=True, frozen=True)
class NetworkSection:
    interfaces: tuple[NetInterface, ...] = ()
    stats: tuple[NetStat, ...] = ()
    listening_ports: tuple[PortRecord, ...] = ()


@dataclass(slots=True, frozen=True)
class Integrity:
    sha256_checksum: str
    signed_at: str
    signing_method: str = SIGNING_METHOD


@dataclass(slots=True, frozen=True)
class Snapshot:
    """Immutable, checksummed capture of a machine's state at one instant."""

    metadata: SnapshotMetadata
    system: SystemInfo
    network: NetworkSection
    running_processes: tuple[ProcessRecord, ...]
    users: tuple[UserSession, ...] = ()
    integrity: Integrity | None = None

    @property
    def name(self) -> str:
        return self.metadata.snapshot_name

    @property
    def timestamp(self) -> str:
        return self.metadata.timestamp

    def to_dict(self, include_integrity: bool = True) -> dict[str, Any]:
        """Convert to the JSON-ready snapshot shape."""
        data = _plain(asdict(self))
        if not include_integrity or self.integrity is None:
            data.pop("integrity")
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Snapshot":
        """
        Rebuild a snapshot from its JSON shape.

        Sections the diff engine depends on (metadata.timestamp,
        running_processes, network.listening_ports, system.used_memory_gb)
        are required and raise MalformedSnapshotError when absent.
        Descriptive sections may be missing in older snapshots and come
        back empty. Records in them with unknown or missing fields raise
        MalformedSnapshotError for their section.

        Args:
            data: Decoded snapshot JSON.
        """
        if not isinstance(data, Mapping):
            raise MalformedSnapshotError("snapshot", "Snapshot must be a JSON object")

        metadata = _section(data, "metadata")
        system = _section(data, "system")
        network = _section(data, "network")
        timestamp = _require(metadata, "timestamp", "metadata.timestamp")
        used_memory_gb = _require(system, "used_memory_gb", "system.used_memory_gb")
        ports = _require(network, "listening_ports", "network.listening_ports")
        processes = _require(data, "running_processes", "running_processes")

        try:
            running_processes = tuple(_process_from_dict(p) for p in processes)
        except (KeyError, TypeError, ValueError) as exc:
            raise MalformedSnapshotError("running_processes", f"Invalid process record: {exc}") from exc
        try:
            listening_ports = tuple(_port_from_dict(p) for p in ports)
        except (KeyError, TypeError, ValueError) as exc:
            raise MalformedSnapshotError("network.listening_ports", f"Invalid port record: {exc}") from exc

        integrity = data.get("integrity")
        return cls(
            metadata=SnapshotMetadata(
                snapshot_name=str(metadata.get("snapshot_name", "")),
                timestamp=str(timestamp),
                timezone=str(metadata.get("timezone", "")),
                snapshot_version=str(metadata.get("snapshot_version", SNAPSHOT_VERSION)),
                data_collection_method=str(metadata.get("data_collection_method", "")),
            ),
            system=SystemInfo(
                cpu_manufacturer=system.get("cpu_manufacturer", ""),
                cpu_brand=system.get("cpu_brand", ""),
                cpu_cores=system.get("cpu_cores", 0),
                cpu_speed_ghz=system.get("cpu_speed_ghz", 0.0),
                total_memory_gb=system.get("total_memory_gb", "0.00"),
                used_memory_gb=str(used_memory_gb),
                available_memory_gb=system.get("available_memory_gb", "0.00"),
                os_platform=system.get("os_platform", ""),
                os_distro=system.get("os_distro", ""),
                os_release=system.get("os_release", ""),
                os_kernel=system.get("os_kernel", ""),
                os_arch=system.get("os_arch", ""),
                disk_count=system.get("disk_count", 0),
                total_disk_size_gb=system.get("total_disk_size_gb", "0.00"),
                filesystem_info=_records(FilesystemUsage, system.get("filesystem_info"), "system.filesystem_info"),
            ),
            network=NetworkSection(
                interfaces=_records(NetInterface, network.get("interfaces"), "network.interfaces"),
                stats=_records(NetStat, network.get("stats"), "network.stats"),
                listening_ports=listening_ports,
            ),
            running_processes=running_processes,
            users=_records(UserSession, data.get("users"), "users"),
            integrity=_records(Integrity, [integrity], "integrity")[0] if integrity else None,
        )


@dataclass(slots=True, frozen=True)
class ProcessChange:
    """CPU/memory movement of one process present in both snapshots."""

    name: str
    cpu_before: float
    cpu_after: float
    cpu_change: float
    mem_before: float
    mem_after: float
    mem_change: float


@dataclass(slots=True, frozen=True)
class ChangeReport:
    """Structured diff between a baseline and an after snapshot."""

    baseline_timestamp: str
    after_timestamp: str
    time_diff_minutes: int
    new_processes: tuple[ProcessRecord, ...] = ()
    removed_processes: tuple[ProcessRecord, ...] = ()
    process_changes: tuple[ProcessChange, ...] = ()
    memory_change_gb: str = "0.00"
    new_listening_ports: tuple[PortRecord, ...] = ()

    @property
    def has_changes(self) -> bool:
        """True when any process, port or memory difference was found."""
        return bool(
            self.new_processes
            or self.removed_processes
            or self.process_changes
            or self.new_listening_ports
            or self.memory_change_gb != "0.00"
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to the comparison response wire shape."""
        return _plain(asdict(self))


@dataclass(slots=True, frozen=True)
class SnapshotMeta:
    """Listing row describing a stored snapshot without its payload."""

    id: str
    snapshot_name: str
    timestamp: str
    machine_id: str = ""
    machine_name: str = ""

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "SnapshotMeta":
        return cls(
            id=str(data["id"]),
            snapshot_name=data.get("snapshot_name") or "",
            timestamp=data.get("timestamp") or "",
            machine_id=data.get("machine_id") or "",
            machine_name=data.get("machine_name") or "",
        )


def _plain(value: Any) -> Any:
    """Turn tuples produced by asdict() into lists, recursively."""
    if isinstance(value, dict):
        return {k: _plain(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_plain(v) for v in value]
    return value


def _section(data: Mapping[str, Any], name: str) -> Mapping[str, Any]:
    value = data.get(name)
    if not isinstance(value, Mapping):
        raise MalformedSnapshotError(name)
    return value


def _require(data: Mapping[str, Any], key: str, section: str) -> Any:
    value = data.get(key)
    if value is None:
        raise MalformedSnapshotError(section)
    return value


def _records(cls: type, items: Any, section: str) -> tuple:
    """Build descriptive records; null means empty, unknown or missing keys are malformed."""
    try:
        return tuple(cls(**item) for item in items or ())
    except TypeError as exc:
        raise MalformedSnapshotError(section, f"Invalid record: {exc}") from exc


def _process_from_dict(p: Mapping[str, Any]) -> ProcessRecord:
    return ProcessRecord(
        name=str(p["name"]),
        pid=int(p.get("pid") or 0),
        ppid=int(p.get("ppid") or 0),
        cpu_usage=float(p["cpu_usage"]),
        mem_usage=float(p["mem_usage"]),
        command=p.get("command", ""),
        user=p.get("user", ""),
        state=p.get("state", ""),
        priority=int(p.get("priority") or 0),
        virtual_memory_mb=str(p.get("virtual_memory_mb", "0.00")),
        resident_memory_mb=str(p.get("resident_memory_mb", "0.00")),
    )


def _port_from_dict(p: Mapping[str, Any]) -> PortRecord:
    pid = p.get("pid")
    return PortRecord(
        protocol=p.get("protocol", ""),
        local_address=p.get("local_address", ""),
        local_port=int(p["local_port"]),
        process_name=p.get("process_name", ""),
        pid=int(pid) if pid is not None else None,
    )
