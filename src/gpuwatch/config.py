"""Runtime settings for gpuwatch."""

import os
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from pathlib import Path

MIN_INTERVAL = 0.5  # seconds


def default_db_path() -> Path:
    """~/.local/share/gpuwatch/gpuwatch.db"""
    return Path.home() / ".local" / "share" / "gpuwatch" / "gpuwatch.db"


@dataclass(slots=True, frozen=True)
class Settings:
    """Settings for a gpuwatch session."""

    interval: float = 5.0  # seconds between auto-recorded samples
    db_path: Path = field(default_factory=default_db_path)
    executable: str = "nvidia-smi"
    query_timeout: float = 10.0
    max_temp: float = 90.0  # °C
    max_mem: float = 95.0  # percent
    keep_days: int | None = None  # None keeps everything
    log_level: str = "INFO"

    def __post_init__(self) -> None:
        object.__setattr__(self, "interval", max(MIN_INTERVAL, float(self.interval)))
        object.__setattr__(self, "db_path", Path(self.db_path).expanduser())
        object.__setattr__(self, "log_level", self.log_level.upper())

    @property
    def log_path(self) -> Path:
        """Log file used while the TUI owns the terminal."""
        return self.db_path.with_suffix(".log")

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "Settings":
        """
        Build settings from GPUWATCH_* environment variables.

        Unset variables keep their defaults.
        """
        env = os.environ if environ is None else environ
        settings = cls()
        overrides: dict = {}
        if "GPUWATCH_INTERVAL" in env:
            overrides["interval"] = float(env["GPUWATCH_INTERVAL"])
        if "GPUWATCH_DB" in env:
            overrides["db_path"] = Path(env["GPUWATCH_DB"])
        if "GPUWATCH_NVIDIA_SMI" in env:
            overrides["executable"] = env["GPUWATCH_NVIDIA_SMI"]
        if "GPUWATCH_KEEP_DAYS" in env:
            overrides["keep_days"] = int(env["GPUWATCH_KEEP_DAYS"])
        if "GPUWATCH_LOG_LEVEL" in env:
            overrides["log_level"] = env["GPUWATCH_LOG_LEVEL"]
        return replace(settings, **overrides)
