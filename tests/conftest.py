"""Shared fixtures for gpuwatch tests."""

from datetime import datetime, timedelta

import pytest

from gpuwatch.errors import AcquisitionError
from gpuwatch.models import DeviceReading, ProcessReading, Snapshot
from gpuwatch.store import SnapshotStore


def make_device(index: int = 0, uuid: str | None = None, **overrides) -> DeviceReading:
    fields = {
        "index": index,
        "name": "NVIDIA A100-SXM4-40GB",
        "uuid": uuid or f"GPU-{index:04d}",
        "util_gpu": 50.0,
        "util_mem": 30.0,
        "mem_used_mb": 12000.0,
        "mem_total_mb": 40960.0,
        "temp_c": 60.0,
        "power_draw_w": 210.5,
        "power_limit_w": 400.0,
    }
    fields.update(overrides)
    return DeviceReading(**fields)


def make_process(pid: int = 1234, user: str = "alice", gpu_uuid: str = "GPU-0000", **overrides) -> ProcessReading:
    fields = {
        "pid": pid,
        "name": "python",
        "used_mem_mb": 4000.0,
        "gpu_uuid": gpu_uuid,
        "user": user,
    }
    fields.update(overrides)
    return ProcessReading(**fields)


def make_snapshot(timestamp: datetime | None = None, **overrides) -> Snapshot:
    fields = {
        "timestamp": timestamp or datetime(2024, 1, 1, 12, 0, 0).astimezone(),
        "devices": (make_device(0), make_device(1)),
        "processes": (
            make_process(100, "alice", "GPU-0000", used_mem_mb=1000.0),
            make_process(200, "bob", "GPU-0001", used_mem_mb=3000.0),
            make_process(300, "alice", "GPU-0001", used_mem_mb=2000.0),
        ),
    }
    fields.update(overrides)
    return Snapshot(**fields)


class FakeSampler:
    """Stands in for TelemetrySampler; returns snapshots one second apart."""

    def __init__(self, start: datetime | None = None) -> None:
        self.calls = 0
        self.error: AcquisitionError | None = None
        self._next = start or datetime.now().astimezone().replace(microsecond=0)

    def sample(self) -> Snapshot:
        self.calls += 1
        if self.error is not None:
            raise self.error
        snapshot = make_snapshot(self._next)
        self._next += timedelta(seconds=1)
        return snapshot


@pytest.fixture
def store(tmp_path):
    """A fresh snapshot store in a temporary directory."""
    with SnapshotStore.open(tmp_path / "gpuwatch.db") as opened:
        yield opened


@pytest.fixture
def fake_sampler():
    return FakeSampler()
