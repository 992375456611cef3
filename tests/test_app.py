"""Tests for the gpuwatch Textual application."""

import sqlite3
from dataclasses import replace
from datetime import datetime

import pytest
from conftest import FakeSampler, make_snapshot

from gpuwatch.app import (
    DevicePanel,
    GpuwatchApp,
    ProcessTable,
    StatusLine,
    UserPanel,
    describe_filters,
    usage_bar,
)
from gpuwatch.config import Settings
from gpuwatch.controller import Mode, initial_state
from gpuwatch.errors import BackendUnavailableError


@pytest.fixture
def settings(tmp_path):
    return Settings(interval=60, db_path=tmp_path / "gpuwatch.db")


@pytest.fixture
def app(settings, store):
    return GpuwatchApp(settings, sampler=FakeSampler(), store=store)


def test_usage_bar_width():
    """Test usage_bar always renders the full width."""
    for percent in (-5.0, 0.0, 42.0, 100.0, 250.0):
        bar = usage_bar(percent, "green")
        assert bar.count("█") + bar.count("░") == 20


def test_usage_bar_fill():
    assert usage_bar(50.0, "green").count("█") == 10


def test_describe_filters():
    state = initial_state()
    assert describe_filters(state) == ""

    state = replace(state, user_filter="alice", device_filter=1, sort_by_mem=True)
    assert describe_filters(state) == "[filters: user:alice, GPU:1, sorted:mem]"


@pytest.mark.asyncio
async def test_app_creation(app):
    """Test GpuwatchApp can be instantiated."""
    assert app.title == "gpuwatch"
    assert app.sub_title == "Per-user GPU usage"
    assert app.runner is not None


@pytest.mark.asyncio
async def test_app_compose(app):
    """Test GpuwatchApp composes correctly."""
    async with app.run_test() as pilot:
        assert pilot.app.query_one("#status", StatusLine) is not None
        assert pilot.app.query_one("#devices", DevicePanel) is not None
        assert pilot.app.query_one("#users", UserPanel) is not None
        assert pilot.app.query_one("#process-table") is not None


@pytest.mark.asyncio
async def test_app_shows_first_sample(app):
    """Test the startup refresh reaches the process table."""
    async with app.run_test() as pilot:
        await app.runner.drain()
        await pilot.pause()

        table = pilot.app.query_one(ProcessTable)
        assert len(table.row_keys) == 3
        assert app.runner.state.current is not None


@pytest.mark.asyncio
async def test_app_history_binding(app, store):
    """Test 'h' switches to history and shows today's stored snapshots."""
    now = datetime.now().astimezone().replace(microsecond=0)
    saved = store.save_snapshot(make_snapshot(now))

    async with app.run_test() as pilot:
        await pilot.press("h")
        await app.runner.drain()
        await pilot.pause()

        state = app.runner.state
        assert state.mode is Mode.HISTORY
        assert not app.runner.is_ticking
        assert state.current.id == saved

        await pilot.press("t")
        await app.runner.drain()
        assert app.runner.state.mode is Mode.LIVE
        assert app.runner.is_ticking


@pytest.mark.asyncio
async def test_app_filter_bindings(app):
    """Test 'f' and 'c' cycle and clear the user filter."""
    async with app.run_test() as pilot:
        await app.runner.drain()

        await pilot.press("f")
        assert app.runner.state.user_filter == "alice"
        await pilot.pause()
        assert len(pilot.app.query_one(ProcessTable).row_keys) == 2

        await pilot.press("m")
        assert app.runner.state.sort_by_mem

        await pilot.press("c")
        assert app.runner.state.user_filter is None
        assert not app.runner.state.sort_by_mem


@pytest.mark.asyncio
async def test_app_auto_record_binding(app):
    async with app.run_test() as pilot:
        await pilot.press("a")
        assert app.runner.state.auto_record is False
        assert not app.runner.is_ticking


@pytest.mark.asyncio
async def test_app_survives_backend_failure(settings, store):
    """Test the dashboard keeps running when nvidia-smi is unavailable."""
    sampler = FakeSampler()
    sampler.error = BackendUnavailableError()
    app = GpuwatchApp(settings, sampler=sampler, store=store)

    async with app.run_test() as pilot:
        await app.runner.drain()
        await pilot.pause()

        assert app.runner.state.error == "nvidia-smi not found or not working"
        assert app.runner.state.current is None
        assert pilot.app.query_one(ProcessTable).row_keys == []


@pytest.mark.asyncio
async def test_app_quit_binding(app):
    """Test that 'q' binding triggers quit."""
    async with app.run_test() as pilot:
        await pilot.press("q")
        assert not app.runner.is_ticking
        assert pilot.app._exit


@pytest.mark.asyncio
async def test_app_closes_store_it_opened(settings):
    """Test a store opened by the app itself is closed on exit."""
    app = GpuwatchApp(settings, sampler=FakeSampler())

    async with app.run_test() as pilot:
        await app.runner.drain()
        await pilot.press("q")

    with pytest.raises(sqlite3.ProgrammingError):
        app._store.count_snapshots()


@pytest.mark.asyncio
async def test_app_leaves_passed_store_open(app, store):
    async with app.run_test():
        await app.runner.drain()

    assert store.count_snapshots() == 0
