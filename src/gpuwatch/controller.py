"""Session state machine for gpuwatch.

The session is an immutable SessionState plus a pure transition function,
apply(state, message) -> (state, commands). Commands describe work for the
runner (sample, save, list a day, load a snapshot, start or stop the
sampling timer); the runner reports each result back as exactly one message.

Every task command carries a token drawn from a single increasing counter.
History results are applied only when their token is the latest one
dispatched for that category, and only while still in history mode; live
samples only while in live mode and only when newer than the one displayed.
"""

import logging
from dataclasses import dataclass, field, replace
from datetime import date, timedelta
from enum import Enum

from gpuwatch.models import Snapshot, SnapshotMeta

logger = logging.getLogger(__name__)

NO_SNAPSHOTS_STATUS = "no snapshots on this date"


class Mode(Enum):
    """Session display modes."""

    LIVE = "live"
    HISTORY = "history"


# Commands


@dataclass(slots=True, frozen=True)
class SampleCommand:
    """Acquire a snapshot; persist it first when persist is set."""

    token: int
    persist: bool = False


@dataclass(slots=True, frozen=True)
class SaveCommand:
    """Persist an already acquired snapshot."""

    token: int
    snapshot: Snapshot


@dataclass(slots=True, frozen=True)
class ListDayCommand:
    """List the snapshots stored for a day."""

    token: int
    day: date


@dataclass(slots=True, frozen=True)
class LoadCommand:
    """Load a stored snapshot by id."""

    token: int
    snapshot_id: int


@dataclass(slots=True, frozen=True)
class StartTicker:
    """Arm the repeating sampling timer."""


@dataclass(slots=True, frozen=True)
class StopTicker:
    """Disarm the repeating sampling timer."""


Command = SampleCommand | SaveCommand | ListDayCommand | LoadCommand | StartTicker | StopTicker


# User and timer messages


@dataclass(slots=True, frozen=True)
class Tick:
    """The sampling timer fired."""


@dataclass(slots=True, frozen=True)
class ManualRefresh:
    pass


@dataclass(slots=True, frozen=True)
class ManualSave:
    pass


@dataclass(slots=True, frozen=True)
class ToggleHistory:
    today: date = field(default_factory=date.today)


@dataclass(slots=True, frozen=True)
class JumpToday:
    pass


@dataclass(slots=True, frozen=True)
class PageDay:
    delta: int


@dataclass(slots=True, frozen=True)
class PageSnapshot:
    delta: int


@dataclass(slots=True, frozen=True)
class ToggleAutoRecord:
    pass


@dataclass(slots=True, frozen=True)
class CycleUserFilter:
    pass


@dataclass(slots=True, frozen=True)
class CycleDeviceFilter:
    pass


@dataclass(slots=True, frozen=True)
class ToggleMemSort:
    pass


@dataclass(slots=True, frozen=True)
class ClearFilters:
    pass


# Completion messages


@dataclass(slots=True, frozen=True)
class Sampled:
    token: int
    snapshot: Snapshot


@dataclass(slots=True, frozen=True)
class SampleFailed:
    token: int
    error: Exception


@dataclass(slots=True, frozen=True)
class Saved:
    token: int
    snapshot_id: int
    snapshot: Snapshot


@dataclass(slots=True, frozen=True)
class SaveFailed:
    token: int
    error: Exception


@dataclass(slots=True, frozen=True)
class DayListed:
    token: int
    metas: tuple[SnapshotMeta, ...]


@dataclass(slots=True, frozen=True)
class DayListFailed:
    token: int
    error: Exception


@dataclass(slots=True, frozen=True)
class SnapshotLoaded:
    token: int
    snapshot: Snapshot


@dataclass(slots=True, frozen=True)
class LoadFailed:
    token: int
    error: Exception


@dataclass(slots=True, frozen=True)
class SessionState:
    """Immutable state of an interactive session."""

    mode: Mode = Mode.LIVE
    auto_record: bool = True
    selected_day: date = field(default_factory=date.today)
    metas: tuple[SnapshotMeta, ...] = ()
    cursor: int = 0
    current: Snapshot | None = None
    status: str = ""
    error: str | None = None

    user_filter: str | None = None
    device_filter: int | None = None  # DeviceReading.index
    sort_by_mem: bool = False

    next_token: int = 1
    day_token: int = 0
    load_token: int = 0
    sample_token: int = 0  # last applied live sample

    @property
    def is_live(self) -> bool:
        """Check if the session shows live telemetry."""
        return self.mode is Mode.LIVE

    @property
    def ticking(self) -> bool:
        """Check if the sampling timer should be running."""
        return self.mode is Mode.LIVE and self.auto_record


def initial_state(today: date | None = None) -> SessionState:
    """Live mode, auto-record on, today selected, nothing displayed."""
    return SessionState(selected_day=today or date.today())


def startup(state: SessionState) -> tuple[SessionState, list[Command]]:
    """Commands that bring a fresh session up: one refresh and the timer."""
    state, refresh = _sample(state, persist=False)
    commands: list[Command] = [refresh]
    if state.ticking:
        commands.append(StartTicker())
    return state, commands


def _take_token(state: SessionState) -> tuple[SessionState, int]:
    return replace(state, next_token=state.next_token + 1), state.next_token


def _sample(state: SessionState, persist: bool) -> tuple[SessionState, SampleCommand]:
    state, token = _take_token(state)
    return state, SampleCommand(token=token, persist=persist)


def _list_day(state: SessionState, day: date) -> tuple[SessionState, ListDayCommand]:
    state, token = _take_token(state)
    return replace(state, selected_day=day, day_token=token), ListDayCommand(token=token, day=day)


def _load(state: SessionState, index: int) -> tuple[SessionState, LoadCommand]:
    state, token = _take_token(state)
    command = LoadCommand(token=token, snapshot_id=state.metas[index].id)
    return replace(state, cursor=index, load_token=token), command


def _ticker_change(before: SessionState, after: SessionState) -> list[Command]:
    if after.ticking and not before.ticking:
        return [StartTicker()]
    if before.ticking and not after.ticking:
        return [StopTicker()]
    return []


def _cycle(values: list, current):
    """Next value after current in values, wrapping to None after the last."""
    if not values:
        return None
    if current is None:
        return values[0]
    try:
        position = values.index(current)
    except ValueError:
        return None
    if position + 1 < len(values):
        return values[position + 1]
    return None


def _live_status(snapshot: Snapshot, auto_record: bool) -> str:
    return f"LIVE {snapshot.timestamp:%H:%M:%S} | autosave:{'on' if auto_record else 'off'}"


def _history_status(state: SessionState, snapshot: Snapshot) -> str:
    return (
        f"HISTORY {snapshot.timestamp:%Y-%m-%d %H:%M:%S} "
        f"({state.cursor + 1}/{len(state.metas)})"
    )


def _apply_command(state: SessionState, message) -> tuple[SessionState, list[Command]]:
    if isinstance(message, Tick):
        if not state.ticking:
            return state, []
        state, command = _sample(state, persist=True)
        return state, [command]

    if isinstance(message, ManualRefresh):
        if not state.is_live:
            return state, []
        state, command = _sample(state, persist=False)
        return state, [command]

    if isinstance(message, ManualSave):
        if not state.is_live:
            return state, []
        if state.current is None:
            return replace(state, error="no current snapshot", status="error"), []
        if state.current.is_saved:
            error = f"snapshot already saved as #{state.current.id}"
            return replace(state, error=error, status="error"), []
        state, token = _take_token(state)
        return state, [SaveCommand(token=token, snapshot=state.current)]

    if isinstance(message, ToggleHistory):
        if state.is_live:
            after = replace(state, mode=Mode.HISTORY, metas=(), cursor=0)
            after, command = _list_day(after, message.today)
            return after, [*_ticker_change(state, after), command]
        after = replace(state, mode=Mode.LIVE)
        after, command = _sample(after, persist=False)
        return after, [command, *_ticker_change(state, after)]

    if isinstance(message, JumpToday):
        after = replace(state, mode=Mode.LIVE)
        after, command = _sample(after, persist=False)
        return after, [command, *_ticker_change(state, after)]

    if isinstance(message, PageDay):
        if state.is_live:
            return state, []
        state, command = _list_day(state, state.selected_day + timedelta(days=message.delta))
        return state, [command]

    if isinstance(message, PageSnapshot):
        if state.is_live or not state.metas:
            return state, []
        index = min(max(state.cursor + message.delta, 0), len(state.metas) - 1)
        state, command = _load(state, index)
        return state, [command]

    if isinstance(message, ToggleAutoRecord):
        if not state.is_live:
            return state, []
        after = replace(state, auto_record=not state.auto_record)
        return after, _ticker_change(state, after)

    if isinstance(message, CycleUserFilter):
        users = sorted({p.user for p in state.current.processes}) if state.current else []
        return replace(state, user_filter=_cycle(users, state.user_filter)), []

    if isinstance(message, CycleDeviceFilter):
        indexes = sorted({d.index for d in state.current.devices}) if state.current else []
        return replace(state, device_filter=_cycle(indexes, state.device_filter)), []

    if isinstance(message, ToggleMemSort):
        return replace(state, sort_by_mem=not state.sort_by_mem), []

    if isinstance(message, ClearFilters):
        return replace(state, user_filter=None, device_filter=None, sort_by_mem=False), []

    raise TypeError(f"unknown message: {message!r}")


def _apply_result(state: SessionState, message) -> tuple[SessionState, list[Command]]:
    if isinstance(message, Sampled):
        if not state.is_live or message.token <= state.sample_token:
            logger.debug("Dropping stale sample (token %d)", message.token)
            return state, []
        snapshot = message.snapshot
        return replace(
            state,
            current=snapshot,
            sample_token=message.token,
            status=_live_status(snapshot, state.auto_record),
            error=None,
        ), []

    if isinstance(message, SampleFailed):
        if not state.is_live:
            logger.debug("Dropping sample failure in history mode: %s", message.error)
            return state, []
        if message.token <= state.sample_token:
            logger.debug("Dropping stale sample failure (token %d)", message.token)
            return state, []
        # Sampling failures never end the session; the last snapshot stays up
        return replace(state, error=str(message.error), status="error"), []

    if isinstance(message, Saved):
        if not state.is_live:
            logger.info("Saved snapshot #%d while browsing history", message.snapshot_id)
            return state, []
        current = state.current
        if current is not None and current == message.snapshot:
            current = message.snapshot.with_id(message.snapshot_id)
        status = f"saved snapshot #{message.snapshot_id}"
        return replace(state, current=current, status=status, error=None), []

    if isinstance(message, SaveFailed):
        return replace(state, error=str(message.error), status="error"), []

    if isinstance(message, DayListed):
        if state.is_live or message.token != state.day_token:
            logger.debug("Dropping stale day listing (token %d)", message.token)
            return state, []
        state = replace(state, metas=tuple(message.metas), cursor=0, error=None)
        if not state.metas:
            return replace(state, current=None, status=NO_SNAPSHOTS_STATUS), []
        state, command = _load(state, 0)
        return state, [command]

    if isinstance(message, SnapshotLoaded):
        if state.is_live or message.token != state.load_token:
            logger.debug("Dropping stale snapshot load (token %d)", message.token)
            return state, []
        status = _history_status(state, message.snapshot)
        return replace(state, current=message.snapshot, status=status, error=None), []

    if isinstance(message, (DayListFailed, LoadFailed)):
        if state.is_live or message.token not in (state.day_token, state.load_token):
            logger.debug("Dropping stale history failure (token %d)", message.token)
            return state, []
        return replace(state, error=str(message.error), status="error"), []

    return _apply_command(state, message)


def apply(state: SessionState, message) -> tuple[SessionState, list[Command]]:
    """
    Fold one message into the session state.

    Returns:
        The new state and the commands the runner must execute.

    Raises:
        TypeError: message is not a session message.
    """
    return _apply_result(state, message)


def filtered_snapshot(state: SessionState) -> Snapshot | None:
    """The current snapshot as seen through the active display filters."""
    snapshot = state.current
    if snapshot is None:
        return None

    devices = snapshot.devices
    processes = snapshot.processes
    if state.device_filter is not None:
        devices = tuple(d for d in devices if d.index == state.device_filter)
        uuids = {d.uuid for d in devices}
        processes = tuple(p for p in processes if p.gpu_uuid in uuids)
    if state.user_filter is not None:
        wanted = state.user_filter.lower()
        processes = tuple(p for p in processes if p.user.lower() == wanted)
    if state.sort_by_mem:
        processes = tuple(sorted(processes, key=lambda p: p.used_mem_mb, reverse=True))

    return replace(snapshot, devices=devices, processes=processes)
