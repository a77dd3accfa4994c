"""Tests for the sysdelta application."""

import dataclasses
import json
from datetime import datetime

import pytest
from textual.widgets import DataTable, Input, TabbedContent

from conftest import make_bundle
from sysdelta.app import (
    ReportView,
    SnapshotDetail,
    SnapshotList,
    SysdeltaApp,
    default_snapshot_name,
    format_delta,
)
from sysdelta.builder import SnapshotBuilder
from sysdelta.config import SysdeltaConfig
from sysdelta.errors import CollectionError
from sysdelta.store import JsonDirectoryStore
from sysdelta.telemetry import RawProcess


class FakeCollector:
    """Returns canned telemetry instead of reading the host."""

    def __init__(self, error: Exception | None = None) -> None:
        self.calls = 0
        self._error = error

    def collect(self):
        self.calls += 1
        if self._error is not None:
            raise self._error
        return make_bundle()


def make_app(tmp_path, collector=None) -> SysdeltaApp:
    config = SysdeltaConfig(snapshot_dir=tmp_path, sample_interval=0)
    return SysdeltaApp(config, store=JsonDirectoryStore(tmp_path), collector=collector or FakeCollector())


def seed_pair(store: JsonDirectoryStore) -> None:
    builder = SnapshotBuilder()
    before = make_bundle(
        processes=[RawProcess(pid=1, ppid=0, name="chrome", cpu_percent=10.0, memory_percent=5.0)]
    )
    after = dataclasses.replace(
        before,
        collected_at=datetime.fromisoformat("2024-05-01T10:30:00+00:00"),
        processes=[
            RawProcess(pid=1, ppid=0, name="chrome", cpu_percent=12.0, memory_percent=5.0),
            RawProcess(pid=2, ppid=0, name="node", cpu_percent=2.0, memory_percent=1.0),
        ],
    )
    store.insert(builder.build(before, "before"))
    store.insert(builder.build(after, "after"))


def test_format_delta():
    assert format_delta(0.6) == "+0.6"
    assert format_delta(-2.04) == "-2.0"
    assert format_delta(0.0) == "+0.0"


def test_default_snapshot_name():
    assert default_snapshot_name(datetime(2024, 5, 1, 9, 5, 7)) == "snapshot_20240501_090507"


@pytest.mark.asyncio
async def test_app_creation(tmp_path):
    """Test SysdeltaApp can be instantiated."""
    app = make_app(tmp_path)
    assert app.title == "sysdelta"
    assert app.sub_title == "System Snapshot Diff"
    assert not app.is_capturing


@pytest.mark.asyncio
async def test_app_compose(tmp_path):
    """Test SysdeltaApp composes correctly."""
    app = make_app(tmp_path)
    async with app.run_test() as pilot:
        assert pilot.app.query_one("#snapshot-table") is not None
        assert pilot.app.query_one("#report-summary") is not None
        assert pilot.app.query_one("#new-ports") is not None


@pytest.mark.asyncio
async def test_app_quit_binding(tmp_path):
    """Test that 'q' binding triggers quit."""
    app = make_app(tmp_path)
    async with app.run_test() as pilot:
        await pilot.press("q")
        assert pilot.app._exit


@pytest.mark.asyncio
async def test_lists_stored_snapshots(tmp_path):
    seed_pair(JsonDirectoryStore(tmp_path))
    app = make_app(tmp_path)
    async with app.run_test() as pilot:
        await pilot.pause()
        rows = pilot.app.query_one(SnapshotList).rows
        assert [row.snapshot_name for row in rows] == ["after", "before"]


@pytest.mark.asyncio
async def test_take_snapshot(tmp_path):
    collector = FakeCollector()
    app = make_app(tmp_path, collector)
    async with app.run_test() as pilot:
        await pilot.press("s")
        pilot.app._capture_thread.join(timeout=5.0)
        pilot.app._check_for_updates()
        await pilot.pause()

        rows = pilot.app.query_one(SnapshotList).rows
        assert collector.calls == 1
        assert len(rows) == 1
        assert rows[0].snapshot_name.startswith("snapshot_")
        assert len(list(tmp_path.glob("*.json"))) == 1


@pytest.mark.asyncio
async def test_failed_snapshot_saves_nothing(tmp_path):
    app = make_app(tmp_path, FakeCollector(CollectionError("processes")))
    async with app.run_test() as pilot:
        await pilot.press("s")
        pilot.app._capture_thread.join(timeout=5.0)
        pilot.app._check_for_updates()
        await pilot.pause()

        assert pilot.app.query_one(SnapshotList).rows == []
        assert list(tmp_path.glob("*.json")) == []


@pytest.mark.asyncio
async def test_mark_baseline_and_compare(tmp_path):
    seed_pair(JsonDirectoryStore(tmp_path))
    app = make_app(tmp_path)
    async with app.run_test() as pilot:
        await pilot.pause()
        table = pilot.app.query_one("#snapshot-table", DataTable)

        table.move_cursor(row=1)
        await pilot.press("b")
        assert pilot.app.query_one(SnapshotList).baseline_id == "before"

        table.move_cursor(row=0)
        await pilot.press("c")
        await pilot.pause()

        report_view = pilot.app.query_one(ReportView)
        assert report_view.query_one("#new-processes", DataTable).row_count == 1
        assert report_view.query_one("#removed-processes", DataTable).row_count == 0
        assert report_view.query_one("#process-changes", DataTable).row_count == 1
        assert report_view.query_one("#new-ports", DataTable).row_count == 0


@pytest.mark.asyncio
async def test_compare_without_baseline_does_nothing(tmp_path):
    seed_pair(JsonDirectoryStore(tmp_path))
    app = make_app(tmp_path)
    async with app.run_test() as pilot:
        await pilot.pause()
        await pilot.press("c")
        await pilot.pause()

        assert pilot.app.query_one("#new-processes", DataTable).row_count == 0


@pytest.mark.asyncio
async def test_delete_binding(tmp_path):
    seed_pair(JsonDirectoryStore(tmp_path))
    app = make_app(tmp_path)
    async with app.run_test() as pilot:
        await pilot.pause()
        await pilot.press("d")
        await pilot.pause()

        rows = pilot.app.query_one(SnapshotList).rows
        assert [row.snapshot_name for row in rows] == ["before"]
        assert not (tmp_path / "after.json").exists()


@pytest.mark.asyncio
async def test_unexpected_capture_error_is_reported(tmp_path):
    app = make_app(tmp_path, FakeCollector(RuntimeError("sensor exploded")))
    messages: list[str] = []
    app.notify = lambda message, **kwargs: messages.append(message)
    async with app.run_test() as pilot:
        await pilot.press("s")
        pilot.app._capture_thread.join(timeout=5.0)
        pilot.app._check_for_updates()
        await pilot.pause()

        assert any("sensor exploded" in message for message in messages)
        assert pilot.app.query_one(SnapshotList).rows == []
        assert not pilot.app.is_capturing


@pytest.mark.asyncio
async def test_named_snapshot(tmp_path):
    app = make_app(tmp_path)
    async with app.run_test() as pilot:
        await pilot.press("n")
        assert pilot.app.focused is pilot.app.query_one("#snapshot-name", Input)

        await pilot.press(*"baseline", "enter")
        await pilot.pause()
        pilot.app._capture_thread.join(timeout=5.0)
        pilot.app._check_for_updates()
        await pilot.pause()

        rows = pilot.app.query_one(SnapshotList).rows
        assert [row.snapshot_name for row in rows] == ["baseline"]
        assert (tmp_path / "baseline.json").is_file()
        assert pilot.app.query_one("#snapshot-name", Input).value == ""
        assert pilot.app.focused is pilot.app.query_one("#snapshot-table", DataTable)


@pytest.mark.asyncio
async def test_view_snapshot_details(tmp_path):
    seed_pair(JsonDirectoryStore(tmp_path))
    app = make_app(tmp_path)
    async with app.run_test() as pilot:
        await pilot.pause()
        await pilot.press("v")
        await pilot.pause()

        detail = pilot.app.query_one(SnapshotDetail)
        assert pilot.app.query_one(TabbedContent).active == "details-tab"
        assert detail.integrity_status == "verified"
        assert detail.query_one("#detail-processes", DataTable).row_count == 2
        assert detail.query_one("#detail-ports", DataTable).row_count == 1


@pytest.mark.asyncio
async def test_filter_detail_processes(tmp_path):
    seed_pair(JsonDirectoryStore(tmp_path))
    app = make_app(tmp_path)
    async with app.run_test() as pilot:
        await pilot.pause()
        await pilot.press("v")
        await pilot.pause()
        processes = pilot.app.query_one("#detail-processes", DataTable)

        pilot.app.query_one("#process-filter", Input).value = "NODE"
        await pilot.pause()
        assert processes.row_count == 1

        pilot.app.query_one("#process-filter", Input).value = "1"
        await pilot.pause()
        assert processes.row_count == 1

        pilot.app.query_one("#process-filter", Input).value = ""
        await pilot.pause()
        assert processes.row_count == 2


@pytest.mark.asyncio
async def test_tampered_snapshot_shows_mismatch(tmp_path):
    data = SnapshotBuilder().build(make_bundle(), "tampered").to_dict()
    data["running_processes"][0]["cpu_usage"] = 99.0
    (tmp_path / "tampered.json").write_text(json.dumps(data), encoding="utf-8")
    app = make_app(tmp_path)
    async with app.run_test() as pilot:
        await pilot.pause()
        await pilot.press("v")
        await pilot.pause()

        assert pilot.app.query_one(SnapshotDetail).integrity_status == "mismatch"


@pytest.mark.asyncio
async def test_compare_switches_to_comparison_tab(tmp_path):
    seed_pair(JsonDirectoryStore(tmp_path))
    app = make_app(tmp_path)
    async with app.run_test() as pilot:
        await pilot.pause()
        pilot.app.query_one("#snapshot-table", DataTable).move_cursor(row=1)
        await pilot.press("b")
        pilot.app.query_one("#snapshot-table", DataTable).move_cursor(row=0)
        await pilot.press("c")
        await pilot.pause()

        assert pilot.app.query_one(TabbedContent).active == "comparison-tab"
