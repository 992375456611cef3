"""Data models for gpuwatch."""

from collections import defaultdict
from dataclasses import dataclass, replace
from datetime import datetime

UNRESOLVED_USER = "?"


@dataclass(slots=True, frozen=True)
class DeviceReading:
    """Immutable reading of one GPU device."""

    index: int
    name: str
    uuid: str
    util_gpu: float  # 0.0 - 100.0
    util_mem: float  # 0.0 - 100.0
    mem_used_mb: float
    mem_total_mb: float
    temp_c: float
    power_draw_w: float
    power_limit_w: float

    @property
    def mem_percent(self) -> float:
        """Framebuffer memory in use, as a percentage of the total."""
        if self.mem_total_mb <= 0:
            return 0.0
        return self.mem_used_mb / self.mem_total_mb * 100.0


@dataclass(slots=True, frozen=True)
class ProcessReading:
    """Immutable reading of one compute process on one device."""

    pid: int
    name: str
    used_mem_mb: float
    gpu_uuid: str  # DeviceReading.uuid; may dangle
    user: str  # account name, "uid:<n>" or "?"


@dataclass(slots=True, frozen=True)
class Snapshot:
    """
    Point-in-time capture of all devices and compute processes.

    A snapshot without an id has never been written to the store.
    """

    timestamp: datetime
    devices: tuple[DeviceReading, ...] = ()
    processes: tuple[ProcessReading, ...] = ()
    id: int | None = None

    @property
    def is_saved(self) -> bool:
        """Check if the snapshot has been persisted."""
        return self.id is not None

    def with_id(self, snapshot_id: int) -> "Snapshot":
        """Return the persisted copy of this snapshot."""
        return replace(self, id=snapshot_id)


@dataclass(slots=True, frozen=True)
class SnapshotMeta:
    """Identifier and timestamp of a persisted snapshot."""

    id: int
    timestamp: datetime


def user_totals(snapshot: Snapshot) -> list[tuple[str, float]]:
    """Sum used GPU memory per user, largest consumer first."""
    totals: dict[str, float] = defaultdict(float)
    for proc in snapshot.processes:
        totals[proc.user] += proc.used_mem_mb
    return sorted(totals.items(), key=lambda item: (-item[1], item[0]))


def check_alerts(snapshot: Snapshot, max_temp: float, max_mem: float) -> list[str]:
    """Describe every device running hotter or fuller than the thresholds."""
    alerts = []
    for dev in snapshot.devices:
        if dev.temp_c > max_temp:
            alerts.append(
                f"GPU {dev.index} ({dev.name}) temperature {dev.temp_c:.1f}°C "
                f"exceeds threshold {max_temp:.1f}°C"
            )
        if dev.util_mem > max_mem:
            alerts.append(
                f"GPU {dev.index} ({dev.name}) memory utilization {dev.util_mem:.1f}% "
                f"exceeds threshold {max_mem:.1f}%"
            )
    return alerts
