"""Snapshot persistence: a JSON directory store and an in-memory store."""

import json
import re
import threading
import uuid
from pathlib import Path
from typing import Any, Protocol

from sysdelta.errors import MalformedSnapshotError, NotFoundError, StorageError
from sysdelta.log import get_logger
from sysdelta.models import Snapshot, SnapshotMeta

_log = get_logger("store")

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


class SnapshotStore(Protocol):
    """Get/list/insert/delete snapshots by opaque id."""

    def insert(self, snapshot: Snapshot, machine_id: str = "", machine_name: str = "") -> str: ...

    def get(self, snapshot_id: str) -> Snapshot: ...

    def list(self, machine_id: str | None = None) -> list[SnapshotMeta]: ...

    def delete(self, snapshot_id: str) -> None: ...


def _meta(snapshot_id: str, snapshot: Snapshot, machine_id: str, machine_name: str) -> SnapshotMeta:
    return SnapshotMeta(
        id=snapshot_id,
        snapshot_name=snapshot.name,
        timestamp=snapshot.timestamp,
        machine_id=machine_id,
        machine_name=machine_name or machine_id,
    )


def _newest_first(rows: list[SnapshotMeta], machine_id: str | None) -> list[SnapshotMeta]:
    if machine_id:
        rows = [row for row in rows if row.machine_id == machine_id]
    return sorted(rows, key=lambda row: row.timestamp, reverse=True)


class InMemoryStore:
    """Dict-backed store with uuid ids. Useful for the service and tests."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._rows: dict[str, tuple[SnapshotMeta, Snapshot]] = {}

    def insert(self, snapshot: Snapshot, machine_id: str = "", machine_name: str = "") -> str:
        snapshot_id = str(uuid.uuid4())
        with self._lock:
            self._rows[snapshot_id] = (_meta(snapshot_id, snapshot, machine_id, machine_name), snapshot)
        return snapshot_id

    def get(self, snapshot_id: str) -> Snapshot:
        with self._lock:
            row = self._rows.get(snapshot_id)
        if row is None:
            raise NotFoundError(snapshot_id)
        return row[1]

    def list(self, machine_id: str | None = None) -> list[SnapshotMeta]:
        with self._lock:
            rows = [meta for meta, _ in self._rows.values()]
        return _newest_first(rows, machine_id)

    def delete(self, snapshot_id: str) -> None:
        with self._lock:
            if self._rows.pop(snapshot_id, None) is None:
                raise NotFoundError(snapshot_id)


class JsonDirectoryStore:
    """
    Stores each snapshot as ``<id>.json`` in a directory.

    The id is the snapshot name with unsafe characters replaced, so taking
    a snapshot under an existing name overwrites it. Distinct names that
    clean up to the same id (``"a b"`` and ``"a_b"``) get a numeric suffix
    instead (``a_b_2``). Files hold an envelope
    ``{"machine_id", "machine_name", "data"}`` where ``data`` is the
    snapshot JSON; bare snapshot files without the envelope are read too.
    """

    def __init__(self, directory: Path | str) -> None:
        """
        Initialize the JsonDirectoryStore.

        Args:
            directory: Where snapshot files live. Created on first insert.
        """
        self._dir = Path(directory)
        self._lock = threading.Lock()

    @property
    def directory(self) -> Path:
        return self._dir

    @staticmethod
    def snapshot_id(name: str) -> str:
        """Derive the file-safe id used for a snapshot name."""
        cleaned = _UNSAFE_CHARS.sub("_", name).strip("._")
        return cleaned or "snapshot"

    def insert(self, snapshot: Snapshot, machine_id: str = "", machine_name: str = "") -> str:
        envelope = {
            "machine_id": machine_id,
            "machine_name": machine_name or machine_id,
            "data": snapshot.to_dict(),
        }
        with self._lock:
            snapshot_id = self._id_for(snapshot.name)
            path = self._path(snapshot_id)
            tmp_path = path.with_suffix(".json.tmp")
            try:
                self._dir.mkdir(parents=True, exist_ok=True)
                tmp_path.write_text(json.dumps(envelope, indent=2), encoding="utf-8")
                tmp_path.replace(path)
            except OSError as exc:
                raise StorageError(f"Failed to write snapshot {snapshot_id}: {exc}") from exc
        _log.info("snapshot_saved", snapshot_id=snapshot_id, path=str(path))
        return snapshot_id

    def get(self, snapshot_id: str) -> Snapshot:
        envelope = self._read(snapshot_id)
        try:
            return Snapshot.from_dict(envelope["data"])
        except MalformedSnapshotError:
            raise
        except (TypeError, ValueError) as exc:
            raise StorageError(f"Snapshot {snapshot_id} is corrupt: {exc}") from exc

    def list(self, machine_id: str | None = None) -> list[SnapshotMeta]:
        if not self._dir.is_dir():
            return []
        rows: list[SnapshotMeta] = []
        for path in self._dir.glob("*.json"):
            try:
                envelope = self._read(path.stem)
            except (NotFoundError, StorageError) as exc:
                _log.warning("snapshot_unreadable", path=str(path), error=str(exc))
                continue
            metadata = envelope["data"].get("metadata") or {}
            rows.append(
                SnapshotMeta(
                    id=path.stem,
                    snapshot_name=metadata.get("snapshot_name") or path.stem,
                    timestamp=metadata.get("timestamp") or "",
                    machine_id=envelope.get("machine_id") or "",
                    machine_name=envelope.get("machine_name") or "",
                )
            )
        return _newest_first(rows, machine_id)

    def delete(self, snapshot_id: str) -> None:
        path = self._path(snapshot_id)
        with self._lock:
            try:
                path.unlink()
            except FileNotFoundError:
                raise NotFoundError(snapshot_id) from None
            except OSError as exc:
                raise StorageError(f"Failed to delete snapshot {snapshot_id}: {exc}") from exc
        _log.info("snapshot_deleted", snapshot_id=snapshot_id)

    def _id_for(self, name: str) -> str:
        """Id for *name*: its own file if it exists, else the first free one."""
        base = self.snapshot_id(name)
        candidate = base
        suffix = 2
        while self._path(candidate).exists() and self._stored_name(candidate) != name:
            candidate = f"{base}_{suffix}"
            suffix += 1
        return candidate

    def _stored_name(self, snapshot_id: str) -> str | None:
        try:
            metadata = self._read(snapshot_id)["data"].get("metadata")
        except StorageError:
            return None
        return metadata.get("snapshot_name") if isinstance(metadata, dict) else None

    def _path(self, snapshot_id: str) -> Path:
        if snapshot_id != self.snapshot_id(snapshot_id):
            raise NotFoundError(snapshot_id)
        return self._dir / f"{snapshot_id}.json"

    def _read(self, snapshot_id: str) -> dict[str, Any]:
        path = self._path(snapshot_id)
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            raise NotFoundError(snapshot_id) from None
        except (OSError, json.JSONDecodeError) as exc:
            raise StorageError(f"Failed to read snapshot {snapshot_id}: {exc}") from exc
        if not isinstance(raw, dict):
            raise StorageError(f"Snapshot {snapshot_id} is not a JSON object")
        if "data" not in raw:
            raw = {"data": raw}
        if not isinstance(raw["data"], dict):
            raise StorageError(f"Snapshot {snapshot_id} is not a JSON object")
        return raw
