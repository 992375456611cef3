"""Asyncio driver for the gpuwatch session state machine."""

import asyncio
import logging
from collections.abc import Callable

from gpuwatch.controller import (
    DayListed,
    DayListFailed,
    ListDayCommand,
    LoadCommand,
    LoadFailed,
    SampleCommand,
    Sampled,
    SampleFailed,
    SaveCommand,
    Saved,
    SaveFailed,
    SessionState,
    SnapshotLoaded,
    StartTicker,
    StopTicker,
    Tick,
    apply,
    initial_state,
    startup,
)
from gpuwatch.errors import GpuwatchError
from gpuwatch.sampler import TelemetrySampler
from gpuwatch.store import SnapshotStore

logger = logging.getLogger(__name__)


class SessionRunner:
    """
    Executes session commands on the running event loop.

    Sampler and store calls block, so each one runs in a worker thread via
    asyncio.to_thread(); its outcome comes back as one message folded in
    through dispatch(). The sampling timer is a single asyncio task that
    posts Tick messages until it is stopped.
    """

    def __init__(
        self,
        sampler: TelemetrySampler,
        store: SnapshotStore,
        interval: float = 5.0,
        listener: Callable[[SessionState], None] | None = None,
        state: SessionState | None = None,
    ) -> None:
        """
        Initialize the SessionRunner.

        Args:
            sampler: Telemetry source.
            store: Snapshot persistence.
            interval: Seconds between Tick messages while auto-recording.
            listener: Called with the new state after every message.
            state: Initial session state. Defaults to initial_state().
        """
        self._sampler = sampler
        self._store = store
        self._interval = interval
        self._listener = listener
        self._state = state or initial_state()
        self._ticker: asyncio.Task | None = None
        self._tasks: set[asyncio.Task] = set()

    @property
    def state(self) -> SessionState:
        """Get the current session state."""
        return self._state

    @property
    def interval(self) -> float:
        """Get the sampling interval."""
        return self._interval

    @property
    def is_ticking(self) -> bool:
        """Check if the sampling timer is armed."""
        return self._ticker is not None and not self._ticker.done()

    @property
    def pending(self) -> int:
        """Number of commands still in flight."""
        return len(self._tasks)

    def start(self) -> None:
        """Issue the startup refresh and arm the timer. Needs a running loop."""
        self._state, commands = startup(self._state)
        self._notify()
        self._execute(commands)

    async def stop(self) -> None:
        """Stop the timer and wait for in-flight commands to finish."""
        self._stop_ticker()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

    async def drain(self) -> None:
        """Wait until no command is in flight, including follow-ups."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def dispatch(self, message) -> None:
        """Fold a message into the state and run the resulting commands."""
        self._state, commands = apply(self._state, message)
        self._notify()
        self._execute(commands)

    def _notify(self) -> None:
        if self._listener is not None:
            self._listener(self._state)

    def _execute(self, commands) -> None:
        for command in commands:
            if isinstance(command, StartTicker):
                self._start_ticker()
            elif isinstance(command, StopTicker):
                self._stop_ticker()
            else:
                task = asyncio.create_task(self._perform(command))
                self._tasks.add(task)
                task.add_done_callback(self._tasks.discard)

    def _start_ticker(self) -> None:
        if self.is_ticking:
            return
        self._ticker = asyncio.create_task(self._tick_loop(), name="gpuwatch-ticker")

    def _stop_ticker(self) -> None:
        if self._ticker is not None:
            self._ticker.cancel()
            self._ticker = None

    async def _tick_loop(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            self.dispatch(Tick())

    async def _perform(self, command) -> None:
        try:
            message = await self._run_command(command)
        except Exception as exc:
            logger.exception("Unexpected failure running %s", type(command).__name__)
            message = _failure_for(command, exc)
        self.dispatch(message)

    async def _run_command(self, command):
        """Run one task command and translate its outcome into a message."""
        if isinstance(command, SampleCommand):
            try:
                snapshot = await asyncio.to_thread(self._sampler.sample)
            except GpuwatchError as exc:
                logger.warning("Sampling failed: %s", exc)
                return SampleFailed(command.token, exc)
            if command.persist:
                try:
                    snapshot_id = await asyncio.to_thread(self._store.save_snapshot, snapshot)
                except GpuwatchError as exc:
                    logger.warning("Auto-record failed: %s", exc)
                    return SaveFailed(command.token, exc)
                snapshot = snapshot.with_id(snapshot_id)
            return Sampled(command.token, snapshot)

        if isinstance(command, SaveCommand):
            try:
                snapshot_id = await asyncio.to_thread(self._store.save_snapshot, command.snapshot)
            except GpuwatchError as exc:
                logger.warning("Saving snapshot failed: %s", exc)
                return SaveFailed(command.token, exc)
            return Saved(command.token, snapshot_id, command.snapshot)

        if isinstance(command, ListDayCommand):
            try:
                metas = await asyncio.to_thread(self._store.list_snapshots_by_date, command.day)
            except GpuwatchError as exc:
                logger.warning("Listing %s failed: %s", command.day, exc)
                return DayListFailed(command.token, exc)
            return DayListed(command.token, tuple(metas))

        if isinstance(command, LoadCommand):
            try:
                snapshot = await asyncio.to_thread(self._store.load_snapshot, command.snapshot_id)
            except GpuwatchError as exc:
                logger.warning("Loading snapshot #%d failed: %s", command.snapshot_id, exc)
                return LoadFailed(command.token, exc)
            return SnapshotLoaded(command.token, snapshot)

        raise TypeError(f"unknown command: {command!r}")


def _failure_for(command, exc: Exception):
    """The failure message that answers a task command."""
    if isinstance(command, SampleCommand):
        return SampleFailed(command.token, exc)
    if isinstance(command, SaveCommand):
        return SaveFailed(command.token, exc)
    if isinstance(command, ListDayCommand):
        return DayListFailed(command.token, exc)
    if isinstance(command, LoadCommand):
        return LoadFailed(command.token, exc)
    raise TypeError(f"unknown command: {command!r}") from exc
