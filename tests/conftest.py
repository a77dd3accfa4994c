"""Shared builders for sysdelta tests."""

from datetime import UTC, datetime

import pytest

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

GIB = 1024**3
COLLECTED_AT = datetime(2024, 5, 1, 10, 0, 0, tzinfo=UTC)
SIGNED_AT = datetime(2024, 5, 1, 10, 0, 1, tzinfo=UTC)


def make_bundle(**overrides) -> TelemetryBundle:
    """Build a small but complete TelemetryBundle."""
    values = dict(
        collected_at=COLLECTED_AT,
        timezone="UTC",
        cpu=CpuInfo(manufacturer="Intel", brand="Intel Core i7", cores=8, speed_ghz=2.8),
        mem=MemInfo(total=16 * GIB, used=4 * GIB, available=12 * GIB),
        processes=[
            RawProcess(pid=1, ppid=0, name="init", cpu_percent=0.1, memory_percent=0.2, command="/sbin/init"),
            RawProcess(pid=200, ppid=1, name="chrome", cpu_percent=10.0, memory_percent=5.0, rss=512 * 1024**2),
            RawProcess(pid=300, ppid=1, name="sshd", cpu_percent=0.0, memory_percent=0.1, user="root"),
        ],
        network=NetworkInfo(
            interfaces=[NetInterface(iface="eth0", ip4="10.0.0.5", mac="aa:bb:cc:dd:ee:ff", speed=1000)],
            stats=[NetStat(iface="eth0", rx_bytes=100, tx_bytes=200)],
            connections=[
                Connection(protocol="tcp", local_address="0.0.0.0", local_port=22, state="LISTEN",
                           process_name="sshd", pid=300),
                Connection(protocol="tcp", local_address="10.0.0.5", local_port=51000, state="ESTABLISHED",
                           process_name="chrome", pid=200),
            ],
        ),
        disk=DiskInfo(
            devices=[DiskDevice(name="/dev/sda", size=500 * GIB)],
            filesystems=[FilesystemStat(mount="/", size=500 * GIB, used=100 * GIB, available=400 * GIB,
                                        use_percent=20.0)],
        ),
        os=OsInfo(platform="linux", distro="Ubuntu 24.04", release="6.8.0", kernel="#1 SMP", arch="x86_64"),
        users=[UserSession(user="alice", tty="pts/0", date="2024-05-01", time="09:00")],
    )
    values.update(overrides)
    return TelemetryBundle(**values)


def make_process(name: str, cpu_usage: float = 0.0, mem_usage: float = 0.0, pid: int = 100, **extra) -> dict:
    """A running_processes entry in snapshot JSON shape."""
    record = {
        "name": name,
        "pid": pid,
        "ppid": 1,
        "cpu_usage": cpu_usage,
        "mem_usage": mem_usage,
        "command": f"/usr/bin/{name}",
        "user": "alice",
        "state": "running",
        "priority": 0,
        "virtual_memory_mb": "100.00",
        "resident_memory_mb": "10.00",
    }
    record.update(extra)
    return record


def make_port(local_port: int, protocol: str = "tcp", **extra) -> dict:
    """A listening_ports entry in snapshot JSON shape."""
    record = {
        "protocol": protocol,
        "local_address": "0.0.0.0",
        "local_port": local_port,
        "process_name": "server",
        "pid": 42,
    }
    record.update(extra)
    return record


def make_snapshot(
    processes: list[dict] | None = None,
    ports: list[dict] | None = None,
    used_memory_gb: str = "4.00",
    timestamp: str = "2024-05-01T10:00:00.000Z",
    name: str = "snap",
) -> dict:
    """A snapshot in its JSON shape with only the fields comparison needs filled in."""
    return {
        "metadata": {
            "snapshot_name": name,
            "timestamp": timestamp,
            "timezone": "UTC",
            "snapshot_version": "2.0",
            "data_collection_method": "psutil",
        },
        "system": {"used_memory_gb": used_memory_gb},
        "network": {"interfaces": [], "stats": [], "listening_ports": ports or []},
        "running_processes": processes or [],
        "users": [],
    }


@pytest.fixture
def bundle() -> TelemetryBundle:
    return make_bundle()
