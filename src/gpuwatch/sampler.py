"""Telemetry acquisition for gpuwatch."""

import csv
import logging
import pwd
import subprocess
from collections.abc import Callable, Mapping
from datetime import datetime

import psutil

from gpuwatch.errors import AcquisitionError, BackendUnavailableError
from gpuwatch.models import UNRESOLVED_USER, DeviceReading, ProcessReading, Snapshot

logger = logging.getLogger(__name__)

DEVICE_FIELDS = [
    "index",
    "name",
    "uuid",
    "utilization.gpu",
    "utilization.memory",
    "memory.used",
    "memory.total",
    "temperature.gpu",
    "power.draw",
    "power.limit",
]
PROCESS_FIELDS = ["pid", "process_name", "used_memory", "gpu_uuid"]
CSV_FORMAT = "--format=csv,noheader,nounits"

Runner = Callable[..., subprocess.CompletedProcess]


def _to_float(value: str) -> float:
    """Parse a numeric field; '[N/A]' and friends read as 0."""
    try:
        return float(value.strip())
    except ValueError:
        return 0.0


def _to_int(value: str) -> int:
    try:
        return int(value.strip())
    except ValueError:
        return 0


def _rows(text: str) -> list[list[str]]:
    lines = [line for line in text.splitlines() if line.strip()]
    return [[field.strip() for field in row] for row in csv.reader(lines, skipinitialspace=True)]


def parse_devices(text: str) -> list[DeviceReading]:
    """
    Parse the CSV output of a --query-gpu call.

    Rows with fewer than the expected fields are skipped.
    """
    devices: list[DeviceReading] = []
    for row in _rows(text):
        if len(row) < len(DEVICE_FIELDS):
            logger.debug("Skipping short device row: %r", row)
            continue
        devices.append(
            DeviceReading(
                index=_to_int(row[0]),
                name=row[1],
                uuid=row[2],
                util_gpu=_to_float(row[3]),
                util_mem=_to_float(row[4]),
                mem_used_mb=_to_float(row[5]),
                mem_total_mb=_to_float(row[6]),
                temp_c=_to_float(row[7]),
                power_draw_w=_to_float(row[8]),
                power_limit_w=_to_float(row[9]),
            )
        )
    return devices


def parse_processes(text: str) -> list[tuple[int, str, float, str]]:
    """Parse the CSV output of a --query-compute-apps call into raw tuples."""
    procs = []
    for row in _rows(text):
        if len(row) < len(PROCESS_FIELDS):
            continue
        pid = _to_int(row[0])
        if pid <= 0:
            continue
        procs.append((pid, row[1], _to_float(row[2]), row[3]))
    return procs


def real_uid(pid: int) -> int | None:
    """Return the real uid owning pid, or None if it cannot be read."""
    try:
        return psutil.Process(pid).uids().real
    except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
        # Process exited between the query and the lookup
        return None


def read_user_directory() -> dict[int, str]:
    """Snapshot the system account database as uid -> name."""
    return {entry.pw_uid: entry.pw_name for entry in pwd.getpwall()}


def resolve_owner(uid: int | None, directory: Mapping[int, str]) -> str:
    """Map a uid to an account name, falling back to sentinel values."""
    if uid is None:
        return UNRESOLVED_USER
    return directory.get(uid, f"uid:{uid}")


class TelemetrySampler:
    """
    Samples GPU devices and compute processes through nvidia-smi.

    Holds no state between calls; every sample() runs the queries afresh
    and re-reads the account directory.
    """

    def __init__(
        self,
        executable: str = "nvidia-smi",
        timeout: float = 10.0,
        run: Runner = subprocess.run,
        uid_of: Callable[[int], int | None] = real_uid,
        user_directory: Callable[[], Mapping[int, str]] = read_user_directory,
    ) -> None:
        """
        Initialize the TelemetrySampler.

        Args:
            executable: Name or path of the nvidia-smi binary.
            timeout: Per-invocation timeout in seconds.
            run: subprocess.run compatible callable.
            uid_of: Returns the real uid of a pid, or None.
            user_directory: Returns the uid -> account name mapping.
        """
        self._executable = executable
        self._timeout = timeout
        self._run = run
        self._uid_of = uid_of
        self._user_directory = user_directory

    @property
    def executable(self) -> str:
        """Get the device-query executable."""
        return self._executable

    def _invoke(self, *args: str) -> subprocess.CompletedProcess:
        return self._run(
            [self._executable, *args],
            capture_output=True,
            encoding="utf-8",
            errors="replace",
            timeout=self._timeout,
            check=False,
        )

    def check_backend(self) -> None:
        """Raise BackendUnavailableError unless nvidia-smi answers `-L`."""
        try:
            result = self._invoke("-L")
        except (OSError, subprocess.TimeoutExpired) as exc:
            raise BackendUnavailableError() from exc
        if result.returncode != 0:
            raise BackendUnavailableError()

    def query_devices(self) -> list[DeviceReading]:
        """Run the device query."""
        try:
            result = self._invoke(f"--query-gpu={','.join(DEVICE_FIELDS)}", CSV_FORMAT)
        except (OSError, subprocess.TimeoutExpired) as exc:
            raise AcquisitionError(f"nvidia-smi gpu query: {exc}") from exc
        if result.returncode != 0:
            raise AcquisitionError(
                f"nvidia-smi gpu query: exit status {result.returncode}: {result.stderr.strip()}"
            )
        return parse_devices(result.stdout)

    def query_processes(self) -> list[tuple[int, str, float, str]]:
        """
        Run the compute-process query.

        Failures are not errors: no compute apps and a broken query both
        yield an empty list.
        """
        try:
            result = self._invoke(f"--query-compute-apps={','.join(PROCESS_FIELDS)}", CSV_FORMAT)
        except (OSError, subprocess.TimeoutExpired) as exc:
            logger.debug("Process query failed: %s", exc)
            return []
        if result.returncode != 0:
            logger.debug("Process query exited with %d", result.returncode)
            return []
        return parse_processes(result.stdout or "")

    def sample(self) -> Snapshot:
        """Take one snapshot of all devices and compute processes."""
        self.check_backend()
        devices = self.query_devices()
        raw_procs = self.query_processes()

        directory = self._user_directory() if raw_procs else {}
        processes = tuple(
            ProcessReading(
                pid=pid,
                name=name,
                used_mem_mb=used,
                gpu_uuid=gpu_uuid,
                user=resolve_owner(self._uid_of(pid), directory),
            )
            for pid, name, used, gpu_uuid in raw_procs
        )

        return Snapshot(
            timestamp=datetime.now().astimezone().replace(microsecond=0),
            devices=tuple(devices),
            processes=processes,
        )
