"""gpuwatch command line entry point.

    gpuwatch                 interactive dashboard
    gpuwatch --once          sample once, print a summary and exit
    gpuwatch --list-users    sample once, print GPU memory per user and exit
    gpuwatch --continuous    sample and save forever, no dashboard
"""

import argparse
import logging
import sys
import time
from dataclasses import replace
from pathlib import Path

from gpuwatch.config import Settings
from gpuwatch.errors import AcquisitionError, StoreError, StoreUnavailableError
from gpuwatch.models import Snapshot, check_alerts, user_totals
from gpuwatch.sampler import TelemetrySampler
from gpuwatch.store import SnapshotStore

__version__ = "1.1.0"

LOG_FORMAT = "%(asctime)s  %(levelname)s %(message)s"

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="gpuwatch", description="Per-user GPU usage monitor")
    parser.add_argument("--interval", type=float, help="sampling interval in seconds (default: 5)")
    parser.add_argument("--db", type=Path, help="database path (default: ~/.local/share/gpuwatch/gpuwatch.db)")
    parser.add_argument("--once", action="store_true", help="sample once and exit (no TUI)")
    parser.add_argument("--continuous", action="store_true", help="sample and save without TUI")
    parser.add_argument("--list-users", action="store_true", help="list users holding GPU memory and exit")
    parser.add_argument("--max-temp", type=float, help="alert threshold for GPU temperature (°C)")
    parser.add_argument("--max-mem", type=float, help="alert threshold for memory utilization (%%)")
    parser.add_argument("--keep-days", type=int, help="in --continuous mode, prune older snapshots")
    parser.add_argument("--version", action="version", version=f"gpuwatch {__version__}")
    return parser


def settings_from_args(args: argparse.Namespace, base: Settings | None = None) -> Settings:
    """Overlay command line flags on environment settings."""
    settings = base or Settings.from_env()
    overrides = {
        "interval": args.interval,
        "db_path": args.db,
        "max_temp": args.max_temp,
        "max_mem": args.max_mem,
        "keep_days": args.keep_days,
    }
    return replace(settings, **{k: v for k, v in overrides.items() if v is not None})


def print_snapshot(snapshot: Snapshot, out=None) -> None:
    out = out or sys.stdout
    print(f"Snapshot at {snapshot.timestamp.isoformat()}", file=out)
    for dev in sorted(snapshot.devices, key=lambda d: d.index):
        print(
            f"GPU {dev.index}: {dev.name} - Util: {dev.util_gpu:.1f}%, "
            f"Mem: {dev.util_mem:.1f}%, Temp: {dev.temp_c:.1f}°C",
            file=out,
        )


def print_user_totals(snapshot: Snapshot, out=None) -> None:
    out = out or sys.stdout
    print("Users currently using GPUs:", file=out)
    print(f"{'User':<16}{'Memory (MB)':>12}", file=out)
    for user, mem in user_totals(snapshot):
        print(f"{user:<16}{mem:>12.1f}", file=out)


def report_alerts(snapshot: Snapshot, settings: Settings) -> None:
    for alert in check_alerts(snapshot, settings.max_temp, settings.max_mem):
        print(f"ALERT: {alert}", file=sys.stderr)


def run_once(settings: Settings, sampler: TelemetrySampler, list_users: bool = False) -> int:
    """Sample once and print either the device summary or per-user totals."""
    try:
        snapshot = sampler.sample()
    except AcquisitionError as exc:
        logger.error("Failed to sample: %s", exc)
        return 1
    report_alerts(snapshot, settings)
    if list_users:
        print_user_totals(snapshot)
    else:
        print_snapshot(snapshot)
    return 0


def run_continuous(
    settings: Settings,
    sampler: TelemetrySampler,
    store: SnapshotStore,
    iterations: int | None = None,
) -> int:
    """Sample and save every interval; iterations bounds the loop for tests."""
    print(f"Continuous mode: sampling every {settings.interval:g} seconds (Ctrl+C to stop)")
    count = 0
    while iterations is None or count < iterations:
        count += 1
        started = time.monotonic()
        try:
            snapshot = sampler.sample()
            report_alerts(snapshot, settings)
            snapshot_id = store.save_snapshot(snapshot)
            print(f"[{snapshot.timestamp:%H:%M:%S}] Saved snapshot #{snapshot_id}")
            if settings.keep_days is not None:
                store.prune_older_than(settings.keep_days)
        except AcquisitionError as exc:
            logger.warning("Sample error: %s", exc)
        except StoreError as exc:
            logger.warning("Save error: %s", exc)
        if iterations is None or count < iterations:
            time.sleep(max(0.0, settings.interval - (time.monotonic() - started)))
    return 0


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    settings = settings_from_args(args)
    sampler = TelemetrySampler(executable=settings.executable, timeout=settings.query_timeout)
    headless = args.once or args.list_users or args.continuous

    if headless:
        logging.basicConfig(level=settings.log_level, format=LOG_FORMAT)
    else:
        settings.log_path.parent.mkdir(parents=True, exist_ok=True)
        logging.basicConfig(level=settings.log_level, format=LOG_FORMAT, filename=settings.log_path)

    if args.once or args.list_users:
        return run_once(settings, sampler, list_users=args.list_users)

    try:
        store = SnapshotStore.open(settings.db_path)
    except StoreUnavailableError as exc:
        logger.error("open db: %s", exc)
        print(f"gpuwatch: {exc}", file=sys.stderr)
        return 1

    with store:
        if args.continuous:
            try:
                return run_continuous(settings, sampler, store)
            except KeyboardInterrupt:
                return 0

        from gpuwatch.app import GpuwatchApp

        GpuwatchApp(settings, sampler=sampler, store=store).run()
    return 0


if __name__ == "__main__":
    sys.exit(main())
