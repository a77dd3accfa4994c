"""sysdelta - Textual application for taking and comparing snapshots."""

import threading
from datetime import datetime
from pathlib import Path
from queue import Empty, Queue

from textual.app import App, ComposeResult
from textual.containers import Container, Horizontal, VerticalScroll
from textual.widgets import DataTable, Footer, Input, Static, TabbedContent, TabPane

from sysdelta.builder import SnapshotBuilder
from sysdelta.canonical import verify_snapshot
from sysdelta.collector import PsutilCollector, TelemetryCollector
from sysdelta.config import SysdeltaConfig, load_config
from sysdelta.diff import DiffEngine
from sysdelta.errors import SysdeltaError
from sysdelta.log import get_logger, setup_logging
from sysdelta.models import ChangeReport, ProcessRecord, Snapshot, SnapshotMeta
from sysdelta.store import JsonDirectoryStore, SnapshotStore
from sysdelta.transport import HttpTransport

_log = get_logger("app")


def format_delta(value: float) -> str:
    """Format a signed percentage-point change."""
    return f"{value:+.1f}"


def default_snapshot_name(moment: datetime | None = None) -> str:
    """Name used for snapshots taken from the UI."""
    moment = moment or datetime.now()
    return moment.strftime("snapshot_%Y%m%d_%H%M%S")


class SnapshotList(Container):
    """Table of stored snapshots with baseline/after markers."""

    DEFAULT_CSS = """
    SnapshotList {
        width: 45;
        border: solid $primary;
    }

    SnapshotList DataTable {
        height: 1fr;
    }

    SnapshotList Input {
        dock: bottom;
    }
    """

    def __init__(self, *args, **kwargs) -> None:
        """Initialize SnapshotList."""
        super().__init__(*args, **kwargs)
        self._rows: list[SnapshotMeta] = []
        self.baseline_id: str | None = None

    def compose(self) -> ComposeResult:
        """Compose the snapshot table and the name prompt."""
        yield DataTable(id="snapshot-table")
        yield Input(placeholder="Snapshot name, Enter to take", id="snapshot-name")

    def on_mount(self) -> None:
        """Initialize the data table when mounted."""
        table = self.query_one("#snapshot-table", DataTable)
        table.cursor_type = "row"
        table.add_column(" ", key="mark", width=2)
        table.add_column("Name", key="name", width=24)
        table.add_column("Taken (UTC)", key="timestamp", width=16)

    @property
    def rows(self) -> list[SnapshotMeta]:
        return list(self._rows)

    def selected(self) -> SnapshotMeta | None:
        """Return the snapshot under the cursor."""
        table = self.query_one("#snapshot-table", DataTable)
        if not self._rows or table.cursor_row < 0 or table.cursor_row >= len(self._rows):
            return None
        return self._rows[table.cursor_row]

    def update_rows(self, rows: list[SnapshotMeta]) -> None:
        """Replace the table contents, keeping the baseline marker if it still exists."""
        table = self.query_one("#snapshot-table", DataTable)
        cursor_row = table.cursor_row
        table.clear()
        self._rows = list(rows)
        if self.baseline_id not in {row.id for row in rows}:
            self.baseline_id = None
        for row in self._rows:
            table.add_row(
                "B" if row.id == self.baseline_id else "",
                row.snapshot_name[:24],
                row.timestamp[:16].replace("T", " "),
                key=row.id,
            )
        if self._rows:
            table.move_cursor(row=min(max(cursor_row, 0), len(self._rows) - 1))

    def mark_baseline(self, snapshot_id: str) -> None:
        self.baseline_id = snapshot_id
        self.update_rows(self._rows)


class ReportView(VerticalScroll):
    """Renders a ChangeReport as a summary and four tables."""

    DEFAULT_CSS = """
    ReportView {
        width: 1fr;
        border: solid $secondary;
        padding: 0 1;
    }

    ReportView DataTable {
        height: auto;
        max-height: 12;
        margin-bottom: 1;
    }
    """

    def compose(self) -> ComposeResult:
        """Compose the report layout."""
        yield Static("Mark a baseline with b, then compare with c.", id="report-summary", markup=False)
        yield Static("New processes", classes="section-title")
        yield DataTable(id="new-processes")
        yield Static("Removed processes", classes="section-title")
        yield DataTable(id="removed-processes")
        yield Static("Changed processes", classes="section-title")
        yield DataTable(id="process-changes")
        yield Static("New listening ports", classes="section-title")
        yield DataTable(id="new-ports")

    def on_mount(self) -> None:
        """Add columns to the report tables."""
        for table_id in ("#new-processes", "#removed-processes"):
            table = self.query_one(table_id, DataTable)
            table.add_column("PID", key="pid", width=8)
            table.add_column("Name", key="name", width=20)
            table.add_column("CPU%", key="cpu", width=7)
            table.add_column("MEM%", key="mem", width=7)
            table.add_column("Command", key="command")

        changes = self.query_one("#process-changes", DataTable)
        changes.add_column("Name", key="name", width=20)
        changes.add_column("CPU before", key="cpu_before", width=10)
        changes.add_column("CPU after", key="cpu_after", width=10)
        changes.add_column("ΔCPU", key="cpu_change", width=7)
        changes.add_column("MEM before", key="mem_before", width=10)
        changes.add_column("MEM after", key="mem_after", width=10)
        changes.add_column("ΔMEM", key="mem_change", width=7)

        ports = self.query_one("#new-ports", DataTable)
        ports.add_column("Proto", key="protocol", width=6)
        ports.add_column("Address", key="address", width=24)
        ports.add_column("Port", key="port", width=6)
        ports.add_column("Process", key="process")

    def show_report(self, report: ChangeReport, baseline_name: str, after_name: str) -> None:
        """Render *report*."""
        self.query_one("#report-summary", Static).update(
            f"{baseline_name} → {after_name}  "
            f"({report.time_diff_minutes} min apart)\n"
            f"Used memory change: {report.memory_change_gb} GB  |  "
            f"new: {len(report.new_processes)}  removed: {len(report.removed_processes)}  "
            f"changed: {len(report.process_changes)}  new ports: {len(report.new_listening_ports)}"
        )

        for table_id, processes in (
            ("#new-processes", report.new_processes),
            ("#removed-processes", report.removed_processes),
        ):
            table = self.query_one(table_id, DataTable)
            table.clear()
            for proc in processes:
                table.add_row(
                    str(proc.pid),
                    proc.name[:20],
                    f"{proc.cpu_usage:5.1f}",
                    f"{proc.mem_usage:5.1f}",
                    proc.command[:60],
                )

        changes = self.query_one("#process-changes", DataTable)
        changes.clear()
        for change in report.process_changes:
            changes.add_row(
                change.name[:20],
                f"{change.cpu_before:5.1f}",
                f"{change.cpu_after:5.1f}",
                format_delta(change.cpu_change),
                f"{change.mem_before:5.1f}",
                f"{change.mem_after:5.1f}",
                format_delta(change.mem_change),
            )

        ports = self.query_one("#new-ports", DataTable)
        ports.clear()
        for port in report.new_listening_ports:
            ports.add_row(port.protocol, port.local_address, str(port.local_port), port.process_name)


class SnapshotDetail(VerticalScroll):
    """One snapshot: metadata, integrity status and a filterable process table."""

    DEFAULT_CSS = """
    SnapshotDetail {
        width: 1fr;
        border: solid $secondary;
        padding: 0 1;
    }

    SnapshotDetail DataTable {
        height: auto;
        max-height: 20;
        margin-bottom: 1;
    }
    """

    def __init__(self, *args, **kwargs) -> None:
        """Initialize SnapshotDetail."""
        super().__init__(*args, **kwargs)
        self._processes: tuple[ProcessRecord, ...] = ()
        self.integrity_status: str | None = None

    def compose(self) -> ComposeResult:
        """Compose the detail layout."""
        yield Static("Select a snapshot and press v to view it.", id="detail-summary", markup=False)
        yield Static("", id="detail-system", markup=False)
        yield Input(placeholder="Filter processes by name, PID or command", id="process-filter")
        yield DataTable(id="detail-processes")
        yield Static("Listening ports", classes="section-title")
        yield DataTable(id="detail-ports")

    def on_mount(self) -> None:
        """Add columns to the detail tables."""
        processes = self.query_one("#detail-processes", DataTable)
        processes.add_column("PID", key="pid", width=8)
        processes.add_column("Name", key="name", width=20)
        processes.add_column("CPU%", key="cpu", width=7)
        processes.add_column("MEM%", key="mem", width=7)
        processes.add_column("User", key="user", width=10)
        processes.add_column("Command", key="command")

        ports = self.query_one("#detail-ports", DataTable)
        ports.add_column("Proto", key="protocol", width=6)
        ports.add_column("Address", key="address", width=24)
        ports.add_column("Port", key="port", width=6)
        ports.add_column("Process", key="process")

    def show_snapshot(self, snapshot: Snapshot) -> None:
        """Render *snapshot* and check its checksum."""
        integrity = snapshot.integrity
        if integrity is None:
            self.integrity_status = "unsigned"
            status = "✗ Unsigned"
        elif verify_snapshot(snapshot):
            self.integrity_status = "verified"
            status = f"✓ Verified | SHA256: {integrity.sha256_checksum[:16]}… | Signed: {integrity.signed_at}"
        else:
            self.integrity_status = "mismatch"
            status = "✗ Checksum mismatch: content changed after signing"
        self.query_one("#detail-summary", Static).update(f"{snapshot.name}  {snapshot.timestamp}\n{status}")

        system = snapshot.system
        self.query_one("#detail-system", Static).update(
            f"CPU: {system.cpu_brand or 'N/A'} ({system.cpu_cores} cores)  |  "
            f"Memory: {system.used_memory_gb} / {system.total_memory_gb} GB  |  "
            f"OS: {system.os_distro or 'N/A'} {system.os_release}  |  "
            f"Disk: {system.total_disk_size_gb} GB"
        )

        ports = self.query_one("#detail-ports", DataTable)
        ports.clear()
        for port in snapshot.network.listening_ports:
            ports.add_row(port.protocol, port.local_address, str(port.local_port), port.process_name)

        self._processes = snapshot.running_processes
        self.filter_processes(self.query_one("#process-filter", Input).value)

    def filter_processes(self, query: str) -> None:
        """Show processes whose name or command contains *query*, or whose PID equals it."""
        query = query.strip().lower()
        table = self.query_one("#detail-processes", DataTable)
        table.clear()
        for proc in self._processes:
            if query and query not in proc.name.lower() and query not in proc.command.lower() and query != str(proc.pid):
                continue
            table.add_row(
                str(proc.pid),
                proc.name[:20],
                f"{proc.cpu_usage:5.1f}",
                f"{proc.mem_usage:5.1f}",
                proc.user[:10],
                proc.command[:60],
            )

    def on_input_changed(self, event: Input.Changed) -> None:
        if event.input.id == "process-filter":
            self.filter_processes(event.value)


class SysdeltaApp(App):
    """Main sysdelta application."""

    TITLE = "sysdelta"
    SUB_TITLE = "System Snapshot Diff"

    CSS = """
    Screen {
        layout: vertical;
    }

    #main {
        height: 1fr;
    }

    #views {
        width: 1fr;
    }

    .section-title {
        text-style: bold;
    }
    """

    BINDINGS = [
        ("q", "quit", "Quit"),
        ("s", "snapshot", "Snapshot"),
        ("n", "name_snapshot", "Name"),
        ("v", "view", "View"),
        ("b", "mark_baseline", "Baseline"),
        ("c", "compare", "Compare"),
        ("d", "delete", "Delete"),
        ("u", "upload", "Upload"),
        ("r", "refresh", "Refresh"),
    ]

    def __init__(
        self,
        config: SysdeltaConfig | None = None,
        store: SnapshotStore | None = None,
        collector: TelemetryCollector | None = None,
        transport: HttpTransport | None = None,
    ) -> None:
        """Initialize the SysdeltaApp."""
        super().__init__()
        self._config = config or SysdeltaConfig()
        self._store = store or JsonDirectoryStore(self._config.snapshot_dir)
        self._collector = collector or PsutilCollector(sample_interval=self._config.sample_interval)
        self._builder = SnapshotBuilder()
        self._engine = DiffEngine(self._config.thresholds)
        self._transport = transport or HttpTransport(
            server_url=self._config.server_url,
            machine_id=self._config.machine_id,
            machine_name=self._config.machine_name,
            timeout=self._config.http_timeout,
        )
        self._update_queue: Queue[Snapshot | Exception] = Queue()
        self._capture_thread: threading.Thread | None = None

    @property
    def is_capturing(self) -> bool:
        """Check if a snapshot is being taken in the background."""
        return self._capture_thread is not None and self._capture_thread.is_alive()

    def compose(self) -> ComposeResult:
        """Compose the application layout."""
        with Horizontal(id="main"):
            yield SnapshotList(id="snapshot-list")
            with TabbedContent(id="views"):
                with TabPane("Details", id="details-tab"):
                    yield SnapshotDetail(id="snapshot-detail")
                with TabPane("Comparison", id="comparison-tab"):
                    yield ReportView(id="report-view")
        yield Footer()

    def on_mount(self) -> None:
        """Load stored snapshots and start polling for captured ones."""
        # Child tables add their columns in their own on_mount
        self.call_after_refresh(self.action_refresh)
        self.set_interval(0.5, self._check_for_updates)

    def _capture(self, name: str) -> None:
        """Collect and build a snapshot; runs in a background thread."""
        try:
            bundle = self._collector.collect()
            snapshot = self._builder.build(bundle, name)
            self._store.insert(snapshot, machine_id=self._config.machine_id, machine_name=self._config.machine_name)
            self._update_queue.put(snapshot)
        except SysdeltaError as exc:
            _log.error("snapshot_failed", snapshot_name=name, error=str(exc))
            self._update_queue.put(exc)
        except Exception as exc:
            # Unexpected errors must still reach the UI
            _log.exception("snapshot_crashed", snapshot_name=name)
            self._update_queue.put(exc)

    def _check_for_updates(self) -> None:
        """Drain captured snapshots and refresh the list."""
        while True:
            try:
                item = self._update_queue.get_nowait()
            except Empty:
                break
            if isinstance(item, Exception):
                self.notify(f"Snapshot failed: {item}", severity="error")
            else:
                self.notify(f"Saved {item.name} ({item.integrity.sha256_checksum[:12]}…)")
                self.action_refresh()

    def action_snapshot(self) -> None:
        """Take a snapshot in the background, named from the prompt or the clock."""
        if self.is_capturing:
            self.notify("A snapshot is already being taken")
            return
        name_input = self.query_one("#snapshot-name", Input)
        name = name_input.value.strip() or default_snapshot_name()
        name_input.value = ""
        self._capture_thread = threading.Thread(
            target=self._capture,
            args=(name,),
            daemon=True,
            name="SnapshotCapture",
        )
        self._capture_thread.start()
        self.notify(f"Taking {name}…")

    def action_refresh(self) -> None:
        """Reload the snapshot list from the store."""
        try:
            rows = self._store.list()
        except SysdeltaError as exc:
            self.notify(f"Could not list snapshots: {exc}", severity="error")
            return
        self.query_one(SnapshotList).update_rows(rows)

    def action_mark_baseline(self) -> None:
        snapshot_list = self.query_one(SnapshotList)
        selected = snapshot_list.selected()
        if selected is None:
            return
        snapshot_list.mark_baseline(selected.id)
        self.notify(f"Baseline: {selected.snapshot_name}")

    def action_compare(self) -> None:
        """Compare the marked baseline with the snapshot under the cursor."""
        snapshot_list = self.query_one(SnapshotList)
        selected = snapshot_list.selected()
        if snapshot_list.baseline_id is None or selected is None:
            self.notify("Mark a baseline first, then select the after snapshot", severity="warning")
            return
        try:
            baseline = self._store.get(snapshot_list.baseline_id)
            after = self._store.get(selected.id)
            report = self._engine.compare(baseline, after)
        except SysdeltaError as exc:
            self.notify(f"Comparison failed: {exc}", severity="error")
            return
        self.query_one(ReportView).show_report(report, baseline.name, after.name)
        self.query_one(TabbedContent).active = "comparison-tab"

    def action_view(self) -> None:
        """Show the snapshot under the cursor in the details tab."""
        selected = self.query_one(SnapshotList).selected()
        if selected is None:
            return
        try:
            snapshot = self._store.get(selected.id)
        except SysdeltaError as exc:
            self.notify(f"Could not load {selected.snapshot_name}: {exc}", severity="error")
            return
        self.query_one(SnapshotDetail).show_snapshot(snapshot)
        self.query_one(TabbedContent).active = "details-tab"

    def action_name_snapshot(self) -> None:
        """Focus the name prompt; Enter takes the snapshot."""
        self.query_one("#snapshot-name", Input).focus()

    def on_input_submitted(self, event: Input.Submitted) -> None:
        if event.input.id != "snapshot-name":
            return
        self.action_snapshot()
        self.query_one("#snapshot-table", DataTable).focus()

    def on_data_table_row_selected(self, event: DataTable.RowSelected) -> None:
        if event.data_table.id == "snapshot-table":
            self.action_view()

    def action_delete(self) -> None:
        selected = self.query_one(SnapshotList).selected()
        if selected is None:
            return
        try:
            self._store.delete(selected.id)
        except SysdeltaError as exc:
            self.notify(f"Delete failed: {exc}", severity="error")
            return
        self.notify(f"Deleted {selected.snapshot_name}")
        self.action_refresh()

    def action_upload(self) -> None:
        """Upload the selected snapshot to the configured server."""
        selected = self.query_one(SnapshotList).selected()
        if selected is None:
            return
        if not self._config.upload_enabled:
            self.notify("Set SYSDELTA_SERVER_URL and SYSDELTA_API_KEY to upload", severity="warning")
            return
        try:
            snapshot = self._store.get(selected.id)
            remote_id = self._transport.submit(snapshot, self._config.server_url, self._config.api_key)
        except SysdeltaError as exc:
            self.notify(f"Upload failed: {exc}", severity="error")
            return
        self.notify(f"Uploaded {selected.snapshot_name} as {remote_id}")

    def action_quit(self) -> None:
        """Handle quit action."""
        self.exit()


def main() -> None:
    """Entry point for the sysdelta application."""
    config = load_config()
    log_path = Path(config.snapshot_dir) / "sysdelta.log"
    log_path.parent.mkdir(parents=True, exist_ok=True)
    with log_path.open("a", encoding="utf-8") as log_file:
        # The terminal belongs to Textual, so logs go to a file
        setup_logging(config.log_level, stream=log_file, json=False)
        app = SysdeltaApp(config)
        app.run()


if __name__ == "__main__":
    main()
