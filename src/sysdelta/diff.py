"""Deterministic comparison of two snapshots."""

import math
from collections.abc import Callable, Mapping
from datetime import UTC, datetime
from decimal import Decimal, InvalidOperation
from typing import Any

from sysdelta.builder import format_fixed
from sysdelta.config import PortMatchKey, ProcessMatchKey, ThresholdConfig
from sysdelta.errors import MalformedSnapshotError
from sysdelta.models import ChangeReport, PortRecord, ProcessChange, ProcessRecord, Snapshot

_MS_PER_MINUTE = 60_000

_PROCESS_KEYS: dict[ProcessMatchKey, Callable[[ProcessRecord], Any]] = {
    ProcessMatchKey.NAME: lambda p: p.name,
    ProcessMatchKey.NAME_AND_COMMAND: lambda p: (p.name, p.command),
}

_PORT_KEYS: dict[PortMatchKey, Callable[[PortRecord], Any]] = {
    PortMatchKey.PORT_ONLY: lambda p: p.local_port,
    PortMatchKey.PORT_AND_PROTOCOL: lambda p: (p.local_port, p.protocol),
}


def compare(
    baseline: Snapshot | Mapping[str, Any],
    after: Snapshot | Mapping[str, Any],
    config: ThresholdConfig | None = None,
) -> ChangeReport:
    """
    Compare a baseline snapshot with a later one.

    Pure and deterministic: inputs are never modified and the same pair
    always yields the same report. Processes are joined on the key chosen
    by ``config.process_match_key``; when several records share a key the
    first one in snapshot order is used for change detection.
    CPU and memory deltas are exact decimal differences of the values as
    written, so 0.6 -> 1.1 is a change of exactly 0.5.

    Args:
        baseline: The earlier snapshot, as a Snapshot or its dict shape.
        after: The later snapshot. Not required to be chronologically later.
        config: Thresholds and match keys. Defaults to ThresholdConfig().

    Raises:
        MalformedSnapshotError: If either snapshot lacks running_processes,
            network.listening_ports, system.used_memory_gb or
            metadata.timestamp.
    """
    config = config or ThresholdConfig()
    baseline = _as_snapshot(baseline)
    after = _as_snapshot(after)

    process_key = _PROCESS_KEYS[config.process_match_key]
    baseline_lookup = _first_by_key(baseline.running_processes, process_key)
    after_lookup = _first_by_key(after.running_processes, process_key)

    new_processes = tuple(p for p in after.running_processes if process_key(p) not in baseline_lookup)
    removed_processes = tuple(p for p in baseline.running_processes if process_key(p) not in after_lookup)

    cpu_threshold = Decimal(str(config.cpu_threshold))
    mem_threshold = Decimal(str(config.mem_threshold))
    process_changes: list[ProcessChange] = []
    for proc in after.running_processes:
        before = baseline_lookup.get(process_key(proc))
        if before is None:
            continue
        cpu_change = _delta(before.cpu_usage, proc.cpu_usage)
        mem_change = _delta(before.mem_usage, proc.mem_usage)
        # Strictly greater: a delta equal to the threshold is not reported
        if abs(cpu_change) > cpu_threshold or abs(mem_change) > mem_threshold:
            process_changes.append(
                ProcessChange(
                    name=proc.name,
                    cpu_before=before.cpu_usage,
                    cpu_after=proc.cpu_usage,
                    cpu_change=float(cpu_change),
                    mem_before=before.mem_usage,
                    mem_after=proc.mem_usage,
                    mem_change=float(mem_change),
                )
            )

    port_key = _PORT_KEYS[config.port_match_key]
    baseline_ports = {port_key(p) for p in baseline.network.listening_ports}
    new_ports = tuple(p for p in after.network.listening_ports if port_key(p) not in baseline_ports)

    return ChangeReport(
        baseline_timestamp=baseline.timestamp,
        after_timestamp=after.timestamp,
        time_diff_minutes=time_diff_minutes(baseline.timestamp, after.timestamp),
        new_processes=new_processes,
        removed_processes=removed_processes,
        process_changes=tuple(process_changes),
        memory_change_gb=memory_change_gb(baseline.system.used_memory_gb, after.system.used_memory_gb),
        new_listening_ports=new_ports,
    )


def time_diff_minutes(baseline_timestamp: str, after_timestamp: str) -> int:
    """
    Whole minutes from baseline to after, negative if after is earlier.

    Halves round toward positive infinity (90 seconds -> 2, -90 seconds -> -1).
    """
    start = _parse_timestamp(baseline_timestamp)
    end = _parse_timestamp(after_timestamp)
    delta = end - start
    millis = (delta.days * 86_400 + delta.seconds) * 1000 + delta.microseconds // 1000
    return math.floor(millis / _MS_PER_MINUTE + 0.5)


def memory_change_gb(baseline_used: str, after_used: str) -> str:
    """Difference of two decimal GB strings, as a 2-decimal string."""
    try:
        before = Decimal(str(baseline_used))
        now = Decimal(str(after_used))
    except InvalidOperation:
        raise MalformedSnapshotError(
            "system.used_memory_gb", f"Not a decimal number: {baseline_used!r} / {after_used!r}"
        ) from None
    if not (before.is_finite() and now.is_finite()):
        raise MalformedSnapshotError(
            "system.used_memory_gb", f"Not a finite number: {baseline_used!r} / {after_used!r}"
        )
    return format_fixed(now - before)


def _delta(before: float, after: float) -> Decimal:
    """Exact decimal difference of two percentages as written (1.1 - 0.6 == 0.5)."""
    start = Decimal(str(before))
    end = Decimal(str(after))
    if not (start.is_finite() and end.is_finite()):
        raise MalformedSnapshotError("running_processes", f"Not a finite usage: {before!r} / {after!r}")
    return end - start


def _as_snapshot(value: Snapshot | Mapping[str, Any]) -> Snapshot:
    if isinstance(value, Snapshot):
        return value
    return Snapshot.from_dict(value)


def _first_by_key(processes: tuple[ProcessRecord, ...], key: Callable[[ProcessRecord], Any]) -> dict[Any, ProcessRecord]:
    lookup: dict[Any, ProcessRecord] = {}
    for proc in processes:
        lookup.setdefault(key(proc), proc)
    return lookup


def _parse_timestamp(value: str) -> datetime:
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except (AttributeError, ValueError):
        raise MalformedSnapshotError("metadata.timestamp", f"Invalid timestamp: {value!r}") from None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


class DiffEngine:
    """Binds a ThresholdConfig to :func:`compare` for handlers and the UI."""

    def __init__(self, config: ThresholdConfig | None = None) -> None:
        self._config = config or ThresholdConfig()

    @property
    def config(self) -> ThresholdConfig:
        return self._config

    def compare(self, baseline: Snapshot | Mapping[str, Any], after: Snapshot | Mapping[str, Any]) -> ChangeReport:
        """Compare two snapshots with the bound configuration."""
        return compare(baseline, after, self._config)
