"""Tests for the request handlers and AuthPolicy."""

import copy

import pytest

from conftest import make_bundle
from sysdelta.builder import SnapshotBuilder
from sysdelta.canonical import compute_checksum, verify_snapshot
from sysdelta.config import ThresholdConfig
from sysdelta.diff import DiffEngine
from sysdelta.errors import (
    AuthorizationError,
    CollectionError,
    MalformedSnapshotError,
    NotFoundError,
    StorageError,
    TransportError,
    ValidationError,
)
from sysdelta.service import AuthPolicy, SnapshotService, error_response
from sysdelta.store import InMemoryStore
from sysdelta.telemetry import RawProcess

KEY = "s3cret"


@pytest.fixture
def service() -> SnapshotService:
    return SnapshotService(InMemoryStore(), AuthPolicy(KEY))


def upload_request(name: str = "before", processes=None) -> dict:
    bundle = make_bundle(processes=processes) if processes is not None else make_bundle()
    snapshot = SnapshotBuilder().build(bundle, name)
    return {"machine_id": "m1", "machine_name": "Laptop", "snapshot_name": name, "data": snapshot.to_dict()}


class TestAuthPolicy:
    """Shared-secret checks."""

    def test_accepts_matching_key(self):
        AuthPolicy(KEY).check(KEY)

    @pytest.mark.parametrize("credential", [None, "", "wrong", KEY + "x"])
    def test_rejects_other_credentials(self, credential):
        with pytest.raises(AuthorizationError):
            AuthPolicy(KEY).check(credential)

    def test_unset_key_rejects_everything(self):
        with pytest.raises(AuthorizationError):
            AuthPolicy("").check("")


class TestUpload:
    """POST /api/snapshots."""

    def test_upload_and_get(self, service):
        request = upload_request()

        response = service.upload(request, KEY)

        assert response["success"] is True
        assert service.get(response["id"], KEY) == request["data"]

    def test_upload_requires_auth(self, service):
        with pytest.raises(AuthorizationError):
            service.upload(upload_request(), "wrong")

    @pytest.mark.parametrize("field", ["machine_id", "snapshot_name", "data"])
    def test_missing_field(self, service, field):
        request = upload_request()
        del request[field]

        with pytest.raises(ValidationError) as excinfo:
            service.upload(request, KEY)
        assert excinfo.value.field == field

    def test_tampered_snapshot_is_rejected(self, service):
        request = upload_request()
        request["data"]["running_processes"][0]["cpu_usage"] = 99.0

        with pytest.raises(ValidationError) as excinfo:
            service.upload(request, KEY)
        assert excinfo.value.field == "data.integrity"

    def test_unsigned_snapshot_is_rejected(self, service):
        request = upload_request()
        del request["data"]["integrity"]

        with pytest.raises(ValidationError):
            service.upload(request, KEY)

    def test_stored_snapshot_still_verifies(self, service):
        request = upload_request()
        # A JavaScript client sends 10.0 as 10
        request["data"]["running_processes"][0]["cpu_usage"] = 10
        request["data"]["running_processes"][0]["mem_usage"] = 5

        snapshot_id = service.upload(request, KEY)["id"]

        assert verify_snapshot(service.get(snapshot_id, KEY))

    def test_snapshot_changed_by_normalisation_is_rejected(self, service):
        request = upload_request()
        data = request["data"]
        del data["users"]
        data["integrity"]["sha256_checksum"] = compute_checksum(data)

        with pytest.raises(ValidationError) as excinfo:
            service.upload(request, KEY)
        assert excinfo.value.field == "data"


class TestListGetDelete:
    """Listing, fetching and deleting."""

    def test_list_filters_by_machine(self, service):
        service.upload(upload_request("a"), KEY)
        other = upload_request("b")
        other["machine_id"] = "m2"
        service.upload(other, KEY)

        rows = service.list(KEY, machine_id="m1")

        assert [row["snapshot_name"] for row in rows] == ["a"]
        assert rows[0]["machine_name"] == "Laptop"
        assert len(service.list(KEY)) == 2

    def test_delete(self, service):
        snapshot_id = service.upload(upload_request(), KEY)["id"]

        assert service.delete(snapshot_id, KEY) == {"success": True}
        with pytest.raises(NotFoundError):
            service.get(snapshot_id, KEY)

    def test_handlers_require_auth(self, service):
        with pytest.raises(AuthorizationError):
            service.list("wrong")
        with pytest.raises(AuthorizationError):
            service.get("x", None)
        with pytest.raises(AuthorizationError):
            service.delete("x", None)


class TestCompare:
    """POST /api/compare."""

    def test_compare(self, service):
        before = upload_request(
            "before", [RawProcess(pid=1, ppid=0, name="chrome", cpu_percent=10.0, memory_percent=5.0)]
        )
        after = upload_request(
            "after",
            [
                RawProcess(pid=1, ppid=0, name="chrome", cpu_percent=10.6, memory_percent=5.0),
                RawProcess(pid=2, ppid=0, name="node", cpu_percent=2.0, memory_percent=1.0),
            ],
        )
        baseline_id = service.upload(before, KEY)["id"]
        after_id = service.upload(after, KEY)["id"]

        report = service.compare({"baseline_id": baseline_id, "after_id": after_id}, KEY)

        assert [p["name"] for p in report["new_processes"]] == ["node"]
        assert report["removed_processes"] == []
        assert [c["name"] for c in report["process_changes"]] == ["chrome"]
        assert report["memory_change_gb"] == "0.00"
        assert report["time_diff_minutes"] == 0

    @pytest.mark.parametrize("missing", ["baseline_id", "after_id"])
    def test_compare_requires_both_ids(self, service, missing):
        request = {"baseline_id": "a", "after_id": "b"}
        del request[missing]

        with pytest.raises(ValidationError):
            service.compare(request, KEY)

    def test_compare_unknown_id(self, service):
        snapshot_id = service.upload(upload_request(), KEY)["id"]

        with pytest.raises(NotFoundError):
            service.compare({"baseline_id": snapshot_id, "after_id": "missing"}, KEY)

    def test_compare_uses_engine_config(self):
        service = SnapshotService(InMemoryStore(), AuthPolicy(KEY), DiffEngine(ThresholdConfig(cpu_threshold=50)))
        before = upload_request("before", [RawProcess(pid=1, ppid=0, name="p", cpu_percent=1.0, memory_percent=0)])
        after = upload_request("after", [RawProcess(pid=1, ppid=0, name="p", cpu_percent=20.0, memory_percent=0)])
        ids = [service.upload(r, KEY)["id"] for r in (before, after)]

        report = service.compare({"baseline_id": ids[0], "after_id": ids[1]}, KEY)

        assert report["process_changes"] == []

    def test_compare_does_not_touch_stored_snapshots(self, service):
        request = upload_request()
        snapshot_id = service.upload(request, KEY)["id"]
        stored = copy.deepcopy(service.get(snapshot_id, KEY))

        service.compare({"baseline_id": snapshot_id, "after_id": snapshot_id}, KEY)

        assert service.get(snapshot_id, KEY) == stored


@pytest.mark.parametrize(
    ("exc", "status"),
    [
        (AuthorizationError("Unauthorized"), 401),
        (ValidationError("after_id"), 400),
        (NotFoundError("x"), 404),
        (MalformedSnapshotError("running_processes"), 422),
        (CollectionError("cpu"), 500),
        (StorageError("disk full"), 500),
        (TransportError("timeout"), 502),
    ],
)
def test_error_response(exc, status):
    code, body = error_response(exc)

    assert code == status
    assert body == {"error": str(exc)}
