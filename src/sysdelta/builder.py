"""Snapshot construction and integrity signing."""

from collections.abc import Callable
from datetime import UTC, datetime
from decimal import ROUND_HALF_UP, Decimal

from sysdelta.canonical import compute_checksum
from sysdelta.errors import CollectionError
from sysdelta.log import get_logger
from sysdelta.models import (
    FilesystemUsage,
    Integrity,
    NetworkSection,
    PortRecord,
    ProcessRecord,
    Snapshot,
    SnapshotMetadata,
    SystemInfo,
)
from sysdelta.telemetry import RawProcess, TelemetryBundle

MAX_LISTENING_PORTS = 50
LISTEN_STATE = "LISTEN"
NOT_AVAILABLE = "N/A"

_GIB = Decimal(1024**3)
_MIB = Decimal(1024**2)
_TWO_PLACES = Decimal("0.01")

_log = get_logger("builder")


def format_fixed(value: Decimal | float | int) -> str:
    """Format a number as a 2-decimal string, rounding half away from zero."""
    quantized = Decimal(str(value)).quantize(_TWO_PLACES, rounding=ROUND_HALF_UP)
    if quantized == 0:
        quantized = abs(quantized)
    return f"{quantized:.2f}"


def format_gb(num_bytes: int) -> str:
    """Format a byte count as gibibytes with two decimals."""
    return format_fixed(Decimal(num_bytes) / _GIB)


def format_mb(num_bytes: int) -> str:
    """Format a byte count as mebibytes with two decimals."""
    return format_fixed(Decimal(num_bytes) / _MIB)


def format_timestamp(moment: datetime) -> str:
    """Render a datetime as ISO-8601 UTC with millisecond precision and a Z suffix."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=UTC)
    return moment.astimezone(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


class SnapshotBuilder:
    """
    Turns a TelemetryBundle into a signed Snapshot.

    The builder holds no state besides its clock and is safe to share
    between threads.
    """

    def __init__(
        self,
        clock: Callable[[], datetime] | None = None,
        collection_method: str = "psutil",
    ) -> None:
        """
        Initialize the SnapshotBuilder.

        Args:
            clock: Returns the signing time. Defaults to the current UTC time.
            collection_method: Recorded in the snapshot metadata.
        """
        self._clock = clock or (lambda: datetime.now(UTC))
        self._collection_method = collection_method

    def build(self, raw: TelemetryBundle, name: str) -> Snapshot:
        """
        Build a checksummed snapshot from raw telemetry.

        Args:
            raw: Telemetry gathered by a collector.
            name: Human-readable snapshot name.

        Raises:
            CollectionError: If a required telemetry subtree is absent.
        """
        missing = raw.missing_sections()
        if missing:
            raise CollectionError(missing[0])

        unsigned = Snapshot(
            metadata=SnapshotMetadata(
                snapshot_name=name,
                timestamp=format_timestamp(raw.collected_at),
                timezone=raw.timezone,
                data_collection_method=self._collection_method,
            ),
            system=self._build_system(raw),
            network=NetworkSection(
                interfaces=tuple(raw.network.interfaces),
                stats=tuple(raw.network.stats),
                listening_ports=self._build_ports(raw),
            ),
            running_processes=self._build_processes(raw.processes),
            users=tuple(raw.users),
        )

        checksum = compute_checksum(unsigned.to_dict(include_integrity=False))
        snapshot = Snapshot(
            metadata=unsigned.metadata,
            system=unsigned.system,
            network=unsigned.network,
            running_processes=unsigned.running_processes,
            users=unsigned.users,
            integrity=Integrity(sha256_checksum=checksum, signed_at=format_timestamp(self._clock())),
        )
        _log.debug(
            "snapshot_built",
            snapshot_name=name,
            processes=len(snapshot.running_processes),
            listening_ports=len(snapshot.network.listening_ports),
            checksum=checksum,
        )
        return snapshot

    def _build_system(self, raw: TelemetryBundle) -> SystemInfo:
        cpu, mem, disk, os_info = raw.cpu, raw.mem, raw.disk, raw.os
        return SystemInfo(
            cpu_manufacturer=cpu.manufacturer,
            cpu_brand=cpu.brand,
            cpu_cores=cpu.cores,
            cpu_speed_ghz=float(cpu.speed_ghz),
            total_memory_gb=format_gb(mem.total),
            used_memory_gb=format_gb(mem.used),
            available_memory_gb=format_gb(mem.available),
            os_platform=os_info.platform,
            os_distro=os_info.distro,
            os_release=os_info.release,
            os_kernel=os_info.kernel,
            os_arch=os_info.arch,
            disk_count=len(disk.devices),
            # Sum in bytes first so rounding happens once
            total_disk_size_gb=format_gb(sum(d.size for d in disk.devices)),
            filesystem_info=tuple(
                FilesystemUsage(
                    mount=fs.mount,
                    size_gb=format_gb(fs.size),
                    used_gb=format_gb(fs.used),
                    available_gb=format_gb(fs.available),
                    use_percent=format_fixed(fs.use_percent),
                )
                for fs in disk.filesystems
            ),
        )

    def _build_ports(self, raw: TelemetryBundle) -> tuple[PortRecord, ...]:
        ports: list[PortRecord] = []
        for conn in raw.network.connections:
            if conn.state != LISTEN_STATE:
                continue
            ports.append(
                PortRecord(
                    protocol=conn.protocol,
                    local_address=conn.local_address,
                    local_port=conn.local_port,
                    process_name=conn.process_name,
                    pid=conn.pid,
                )
            )
            if len(ports) == MAX_LISTENING_PORTS:
                break
        return tuple(ports)

    def _build_processes(self, processes: list[RawProcess]) -> tuple[ProcessRecord, ...]:
        records = [
            ProcessRecord(
                name=p.name,
                pid=p.pid,
                ppid=p.ppid,
                cpu_usage=float(p.cpu_percent),
                mem_usage=float(p.memory_percent),
                command=p.command or NOT_AVAILABLE,
                user=p.user or NOT_AVAILABLE,
                state=p.state or NOT_AVAILABLE,
                priority=p.priority or 0,
                virtual_memory_mb=format_mb(p.vms),
                resident_memory_mb=format_mb(p.rss),
            )
            for p in processes
        ]
        # sorted() is stable, ties keep collector order
        return tuple(sorted(records, key=lambda r: r.cpu_usage, reverse=True))
