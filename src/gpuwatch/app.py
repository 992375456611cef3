"""gpuwatch - Textual dashboard."""

from rich.markup import escape
from textual.app import App, ComposeResult
from textual.binding import Binding
from textual.containers import Container, Horizontal
from textual.css.query import NoMatches
from textual.widgets import DataTable, Footer, Static

from gpuwatch.config import Settings
from gpuwatch.controller import (
    ClearFilters,
    CycleDeviceFilter,
    CycleUserFilter,
    JumpToday,
    ManualRefresh,
    ManualSave,
    PageDay,
    PageSnapshot,
    SessionState,
    ToggleAutoRecord,
    ToggleHistory,
    ToggleMemSort,
    filtered_snapshot,
)
from gpuwatch.models import ProcessReading, Snapshot, check_alerts, user_totals
from gpuwatch.runner import SessionRunner
from gpuwatch.sampler import TelemetrySampler
from gpuwatch.store import SnapshotStore


def usage_bar(percent: float, color: str, width: int = 20) -> str:
    """Render a percentage as a fixed-width markup bar."""
    filled = min(max(int(percent / (100 / width)), 0), width)
    return f"[{color}]█[/{color}]" * filled + "[dim]░[/dim]" * (width - filled)


def describe_filters(state: SessionState) -> str:
    """Summarize the active display filters, or return an empty string."""
    parts = []
    if state.user_filter is not None:
        parts.append(f"user:{state.user_filter}")
    if state.device_filter is not None:
        parts.append(f"GPU:{state.device_filter}")
    if state.sort_by_mem:
        parts.append("sorted:mem")
    return f"[filters: {', '.join(parts)}]" if parts else ""


class StatusLine(Static):
    """Mode, status, errors and active filters."""

    DEFAULT_CSS = """
    StatusLine {
        height: auto;
        padding: 0 1;
        background: $surface;
    }
    """

    def show(self, state: SessionState, alerts: list[str]) -> None:
        """Update the line from the session state."""
        parts = [f"[b]gpuwatch[/b] {escape(state.status)}"]
        if state.error:
            parts.append(f"[red]{escape(state.error)}[/red]")
        filters = describe_filters(state)
        if filters:
            parts.append(f"[orange1]{escape(filters)}[/orange1]")
        if alerts:
            parts.append(f"[yellow]⚠ {escape(alerts[0])}[/yellow]")
        self.update("  ".join(parts))


class DevicePanel(Static):
    """Per-device utilization, memory, temperature and power."""

    DEFAULT_CSS = """
    DevicePanel {
        width: 2fr;
        height: auto;
        padding: 1;
    }
    """

    def show(self, snapshot: Snapshot | None) -> None:
        """Render the devices of a snapshot."""
        if snapshot is None or not snapshot.devices:
            self.update("[dim]no GPU data[/dim]")
            return
        lines = []
        for dev in sorted(snapshot.devices, key=lambda d: d.index):
            lines.append(f"[b]GPU{dev.index}[/b] {dev.name}")
            lines.append(f"  Util \\[{usage_bar(dev.util_gpu, 'green')}] {dev.util_gpu:5.1f}%")
            lines.append(
                f"  Mem  \\[{usage_bar(dev.mem_percent, 'cyan')}] "
                f"{dev.mem_used_mb:.0f}/{dev.mem_total_mb:.0f} MB"
            )
            lines.append(
                f"  {dev.temp_c:.0f}°C  {dev.power_draw_w:.0f}/{dev.power_limit_w:.0f} W"
            )
        self.update("\n".join(lines))


class UserPanel(Static):
    """GPU memory held by each user."""

    DEFAULT_CSS = """
    UserPanel {
        width: 1fr;
        height: auto;
        padding: 1;
    }
    """

    def show(self, snapshot: Snapshot | None) -> None:
        """Render per-user memory totals."""
        totals = user_totals(snapshot) if snapshot else []
        if not totals:
            self.update("[dim]no compute processes[/dim]")
            return
        self.update(
            "[b]USER          MEM (MB)[/b]\n"
            + "\n".join(f"{user[:12]:<12} {mem:10.0f}" for user, mem in totals)
        )


class ProcessTable(Container):
    """Container for the compute process table."""

    DEFAULT_CSS = """
    ProcessTable {
        height: 1fr;
        border: solid $primary;
    }
    """

    def __init__(self, *args, **kwargs) -> None:
        """Initialize ProcessTable."""
        super().__init__(*args, **kwargs)
        self._row_keys: list[str] = []

    @property
    def row_keys(self) -> list[str]:
        """Row keys in display order."""
        return list(self._row_keys)

    def compose(self) -> ComposeResult:
        """Compose the process table."""
        yield DataTable(id="process-table")

    def on_mount(self) -> None:
        """Initialize the data table when mounted."""
        table = self.query_one("#process-table", DataTable)
        table.cursor_type = "row"
        table.add_column("PID", key="pid", width=8)
        table.add_column("USER", key="user", width=12)
        table.add_column("GPU", key="gpu", width=5)
        table.add_column("MEM (MB)", key="mem", width=10)
        table.add_column("Process", key="name")

    def update_processes(self, processes: tuple[ProcessReading, ...], gpu_of: dict[str, int]) -> None:
        """
        Replace the table rows.

        Args:
            processes: Processes in display order.
            gpu_of: Device uuid -> device index, for the GPU column.
        """
        table = self.query_one("#process-table", DataTable)
        table.clear()
        self._row_keys = []
        for proc in processes:
            key = f"{proc.pid}:{proc.gpu_uuid}"
            if key in self._row_keys:
                continue
            gpu = gpu_of.get(proc.gpu_uuid)
            table.add_row(
                str(proc.pid),
                proc.user[:12],
                "-" if gpu is None else str(gpu),
                f"{proc.used_mem_mb:.0f}",
                proc.name[:60],
                key=key,
            )
            self._row_keys.append(key)


class GpuwatchApp(App):
    """Main gpuwatch application."""

    TITLE = "gpuwatch"
    SUB_TITLE = "Per-user GPU usage"

    CSS = """
    Screen {
        layout: vertical;
    }

    #panels {
        height: auto;
    }
    """

    BINDINGS = [
        ("q", "quit", "Quit"),
        ("r", "refresh", "Refresh"),
        ("s", "save", "Save"),
        ("h", "history", "History"),
        ("t", "today", "Today"),
        ("a", "auto_record", "Auto-record"),
        Binding("left", "page_snapshot(-1)", "Prev", priority=True),
        Binding("right", "page_snapshot(1)", "Next", priority=True),
        Binding("up", "page_day(-1)", "Prev day", priority=True),
        Binding("down", "page_day(1)", "Next day", priority=True),
        ("f", "filter_user", "User"),
        ("g", "filter_gpu", "GPU"),
        ("m", "sort_mem", "Sort mem"),
        ("c", "clear_filters", "Clear"),
    ]

    def __init__(
        self,
        settings: Settings | None = None,
        sampler: TelemetrySampler | None = None,
        store: SnapshotStore | None = None,
    ) -> None:
        """
        Initialize the GpuwatchApp.

        Args:
            settings: Session settings. Defaults to Settings.from_env().
            sampler: Telemetry source. Built from settings when omitted.
            store: Open snapshot store. Opened from settings when omitted.
        """
        super().__init__()
        self._settings = settings or Settings.from_env()
        self._sampler = sampler or TelemetrySampler(
            executable=self._settings.executable,
            timeout=self._settings.query_timeout,
        )
        self._owns_store = store is None
        self._store = store or SnapshotStore.open(self._settings.db_path)
        self._runner = SessionRunner(
            self._sampler,
            self._store,
            interval=self._settings.interval,
            listener=self._show_state,
        )

    @property
    def runner(self) -> SessionRunner:
        """Get the session runner."""
        return self._runner

    def compose(self) -> ComposeResult:
        """Compose the application layout."""
        yield StatusLine(id="status")
        yield Horizontal(DevicePanel(id="devices"), UserPanel(id="users"), id="panels")
        yield ProcessTable()
        yield Footer()

    def on_mount(self) -> None:
        """Start sampling once the widgets exist."""
        self._runner.start()

    async def on_unmount(self) -> None:
        """Stop sampling when the app goes away."""
        await self._runner.stop()
        if self._owns_store:
            self._store.close()

    def _show_state(self, state: SessionState) -> None:
        """Redraw every widget from the session state."""
        snapshot = filtered_snapshot(state)
        alerts = (
            check_alerts(state.current, self._settings.max_temp, self._settings.max_mem)
            if state.current
            else []
        )
        gpu_of = {d.uuid: d.index for d in state.current.devices} if state.current else {}
        try:
            self.query_one(StatusLine).show(state, alerts)
            self.query_one(DevicePanel).show(snapshot)
            self.query_one(UserPanel).show(snapshot)
            self.query_one(ProcessTable).update_processes(
                snapshot.processes if snapshot else (), gpu_of
            )
        except NoMatches:
            pass  # Widgets not mounted yet, or already torn down

    def action_refresh(self) -> None:
        self._runner.dispatch(ManualRefresh())

    def action_save(self) -> None:
        self._runner.dispatch(ManualSave())

    def action_history(self) -> None:
        self._runner.dispatch(ToggleHistory())

    def action_today(self) -> None:
        self._runner.dispatch(JumpToday())

    def action_auto_record(self) -> None:
        self._runner.dispatch(ToggleAutoRecord())

    def action_page_snapshot(self, delta: int) -> None:
        self._runner.dispatch(PageSnapshot(delta))

    def action_page_day(self, delta: int) -> None:
        self._runner.dispatch(PageDay(delta))

    def action_filter_user(self) -> None:
        self._runner.dispatch(CycleUserFilter())

    def action_filter_gpu(self) -> None:
        self._runner.dispatch(CycleDeviceFilter())

    def action_sort_mem(self) -> None:
        self._runner.dispatch(ToggleMemSort())

    def action_clear_filters(self) -> None:
        self._runner.dispatch(ClearFilters())

    async def action_quit(self) -> None:
        """Handle quit action with graceful cleanup."""
        await self._runner.stop()
        self.exit()
