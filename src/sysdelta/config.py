"""Comparison thresholds and environment-driven configuration."""

import os
import socket
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path

DEFAULT_CPU_THRESHOLD = 0.5
DEFAULT_MEM_THRESHOLD = 0.5
DEFAULT_SNAPSHOT_DIR = Path.home() / ".local" / "share" / "sysdelta"


class PortMatchKey(StrEnum):
    """How listening ports are matched between two snapshots."""

    PORT_ONLY = "port_only"
    PORT_AND_PROTOCOL = "port_and_protocol"


class ProcessMatchKey(StrEnum):
    """
    How processes are joined between two snapshots.

    The join key is not unique: several instances of one program share a
    name. The first record carrying a key wins, later ones are only visible
    through new/removed detection of their own keys.
    """

    NAME = "name"
    NAME_AND_COMMAND = "name_and_command"


@dataclass(slots=True, frozen=True)
class ThresholdConfig:
    """Static parameters for comparing two snapshots."""

    cpu_threshold: float = DEFAULT_CPU_THRESHOLD  # percentage points
    mem_threshold: float = DEFAULT_MEM_THRESHOLD  # percentage points
    port_match_key: PortMatchKey = PortMatchKey.PORT_ONLY
    process_match_key: ProcessMatchKey = ProcessMatchKey.NAME

    def __post_init__(self) -> None:
        if self.cpu_threshold < 0:
            raise ValueError(f"cpu_threshold must be >= 0, got {self.cpu_threshold}")
        if self.mem_threshold < 0:
            raise ValueError(f"mem_threshold must be >= 0, got {self.mem_threshold}")
        # Accept plain strings for the enum fields
        object.__setattr__(self, "port_match_key", PortMatchKey(self.port_match_key))
        object.__setattr__(self, "process_match_key", ProcessMatchKey(self.process_match_key))


@dataclass(slots=True, frozen=True)
class SysdeltaConfig:
    """Runtime configuration for the agent, UI and service."""

    server_url: str = ""
    api_key: str = ""
    machine_id: str = ""
    machine_name: str = ""
    snapshot_dir: Path = DEFAULT_SNAPSHOT_DIR
    log_level: str = "info"
    sample_interval: float = 0.5
    http_timeout: float = 10.0
    thresholds: ThresholdConfig = field(default_factory=ThresholdConfig)

    @property
    def upload_enabled(self) -> bool:
        """Whether a remote store is configured."""
        return bool(self.server_url and self.api_key)


def _env(key: str, default: str = "") -> str:
    return os.environ.get(f"SYSDELTA_{key}", default)


def _env_float(key: str, default: float, min_val: float | None = None) -> float:
    raw = _env(key, str(default))
    try:
        val = float(raw)
    except ValueError:
        raise ValueError(f"SYSDELTA_{key} must be a number, got {raw!r}") from None
    if min_val is not None and val < min_val:
        raise ValueError(f"SYSDELTA_{key} must be >= {min_val}, got {val}")
    return val


def _validate_log_level(value: str) -> str:
    valid = {"debug", "info", "warning", "error"}
    if value.lower() not in valid:
        raise ValueError(f"Invalid log level: {value}. Must be one of {valid}")
    return value.lower()


def _validate_choice(key: str, enum_cls: type[StrEnum], default: StrEnum) -> StrEnum:
    value = _env(key, default.value)
    try:
        return enum_cls(value)
    except ValueError:
        choices = ", ".join(m.value for m in enum_cls)
        raise ValueError(f"Invalid SYSDELTA_{key}: {value}. Must be one of {choices}") from None


def load_config() -> SysdeltaConfig:
    """Load configuration from SYSDELTA_* environment variables."""
    hostname = socket.gethostname()
    snapshot_dir = _env("SNAPSHOT_DIR")
    machine_id = _env("MACHINE_ID") or hostname

    return SysdeltaConfig(
        server_url=_env("SERVER_URL").rstrip("/"),
        api_key=_env("API_KEY"),
        machine_id=machine_id,
        machine_name=_env("MACHINE_NAME") or machine_id,
        snapshot_dir=Path(snapshot_dir).expanduser() if snapshot_dir else DEFAULT_SNAPSHOT_DIR,
        log_level=_validate_log_level(_env("LOG_LEVEL", "info")),
        sample_interval=_env_float("SAMPLE_INTERVAL", 0.5, min_val=0.0),
        http_timeout=_env_float("HTTP_TIMEOUT", 10.0, min_val=0.1),
        thresholds=ThresholdConfig(
            cpu_threshold=_env_float("CPU_THRESHOLD", DEFAULT_CPU_THRESHOLD, min_val=0.0),
            mem_threshold=_env_float("MEM_THRESHOLD", DEFAULT_MEM_THRESHOLD, min_val=0.0),
            port_match_key=_validate_choice("PORT_MATCH_KEY", PortMatchKey, PortMatchKey.PORT_ONLY),
            process_match_key=_validate_choice("PROCESS_MATCH_KEY", ProcessMatchKey, ProcessMatchKey.NAME),
        ),
    )
