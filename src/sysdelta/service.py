"""Framework-free request handlers for the snapshot server.

Each handler takes the caller's credential explicitly and checks it
against the :class:`AuthPolicy` the service was built with, so no handler
reads authorization settings from the environment. A web framework only
has to decode the request, call a handler, and turn a raised
:class:`~sysdelta.errors.SysdeltaError` into a response with
:func:`error_response`.
"""

import hmac
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from sysdelta.canonical import verify_snapshot
from sysdelta.diff import DiffEngine
from sysdelta.errors import (
    AuthorizationError,
    CollectionError,
    MalformedSnapshotError,
    NotFoundError,
    StorageError,
    SysdeltaError,
    TransportError,
    ValidationError,
)
from sysdelta.log import get_logger
from sysdelta.models import Snapshot
from sysdelta.store import SnapshotStore

_log = get_logger("service")

_STATUS_CODES: dict[type[SysdeltaError], int] = {
    AuthorizationError: 401,
    ValidationError: 400,
    NotFoundError: 404,
    MalformedSnapshotError: 422,
    CollectionError: 500,
    StorageError: 500,
    TransportError: 502,
}


@dataclass(slots=True, frozen=True)
class AuthPolicy:
    """Shared-secret check for the ``x-api-key`` credential.

    An empty api_key rejects every request rather than allowing all.
    """

    api_key: str

    def check(self, credential: str | None) -> None:
        """Raise AuthorizationError unless *credential* matches the key."""
        if not self.api_key or not credential:
            raise AuthorizationError("Unauthorized")
        if not hmac.compare_digest(credential.encode("utf-8"), self.api_key.encode("utf-8")):
            raise AuthorizationError("Unauthorized")


class SnapshotService:
    """Upload, list, fetch, delete and compare stored snapshots."""

    def __init__(self, store: SnapshotStore, auth: AuthPolicy, engine: DiffEngine | None = None) -> None:
        self._store = store
        self._auth = auth
        self._engine = engine or DiffEngine()

    def upload(self, request: Mapping[str, Any], credential: str | None) -> dict[str, Any]:
        """
        Store a snapshot sent by an agent.

        Args:
            request: ``{machine_id, machine_name?, snapshot_name, data}``.
            credential: Caller's API key.

        Raises:
            ValidationError: If a required field is missing, the snapshot
                checksum does not match its content, or the content only
                matches before missing sections are filled in.
            MalformedSnapshotError: If the snapshot JSON cannot be read.
        """
        self._auth.check(credential)
        for field in ("machine_id", "snapshot_name", "data"):
            if not request.get(field):
                raise ValidationError(field)

        data = request["data"]
        if not isinstance(data, Mapping):
            raise ValidationError("data", "Snapshot data must be a JSON object")
        if not verify_snapshot(data):
            raise ValidationError("data.integrity", "Snapshot checksum does not match its content")
        snapshot = Snapshot.from_dict(data)
        # Defaults filled in by from_dict would make the stored copy unverifiable
        if not verify_snapshot(snapshot):
            raise ValidationError("data", "Snapshot is incomplete and does not match its checksum once normalised")

        machine_id = str(request["machine_id"])
        snapshot_id = self._store.insert(
            snapshot,
            machine_id=machine_id,
            machine_name=str(request.get("machine_name") or machine_id),
        )
        _log.info("snapshot_received", snapshot_id=snapshot_id, machine_id=machine_id)
        return {"success": True, "id": snapshot_id}

    def list(self, credential: str | None, machine_id: str | None = None) -> list[dict[str, Any]]:
        """List stored snapshots, newest first, optionally for one machine."""
        self._auth.check(credential)
        return [meta.to_dict() for meta in self._store.list(machine_id)]

    def get(self, snapshot_id: str, credential: str | None) -> dict[str, Any]:
        """Return the full snapshot JSON for *snapshot_id*."""
        self._auth.check(credential)
        return self._store.get(snapshot_id).to_dict()

    def delete(self, snapshot_id: str, credential: str | None) -> dict[str, Any]:
        self._auth.check(credential)
        self._store.delete(snapshot_id)
        _log.info("snapshot_removed", snapshot_id=snapshot_id)
        return {"success": True}

    def compare(self, request: Mapping[str, Any], credential: str | None) -> dict[str, Any]:
        """
        Compare two stored snapshots.

        Args:
            request: ``{baseline_id, after_id}``.
            credential: Caller's API key.

        Returns:
            The ChangeReport in its wire shape.
        """
        self._auth.check(credential)
        for field in ("baseline_id", "after_id"):
            if not request.get(field):
                raise ValidationError(field, "baseline_id and after_id are required")

        baseline = self._store.get(str(request["baseline_id"]))
        after = self._store.get(str(request["after_id"]))
        report = self._engine.compare(baseline, after)
        _log.info(
            "snapshots_compared",
            baseline_id=request["baseline_id"],
            after_id=request["after_id"],
            new_processes=len(report.new_processes),
            removed_processes=len(report.removed_processes),
            process_changes=len(report.process_changes),
        )
        return report.to_dict()


def error_response(exc: SysdeltaError) -> tuple[int, dict[str, str]]:
    """Map a sysdelta error to an HTTP status code and JSON body."""
    for exc_type in type(exc).__mro__:
        if exc_type in _STATUS_CODES:
            return _STATUS_CODES[exc_type], {"error": str(exc)}
    return 500, {"error": str(exc)}
