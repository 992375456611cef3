"""SQLite persistence for gpuwatch snapshots."""

import logging
import sqlite3
import threading
from datetime import date, datetime, time, timedelta
from pathlib import Path

from gpuwatch.errors import (
    NoSnapshotsError,
    SnapshotNotFoundError,
    StoreUnavailableError,
    TransactionError,
)
from gpuwatch.models import DeviceReading, ProcessReading, Snapshot, SnapshotMeta

logger = logging.getLogger(__name__)

SCHEMA = [
    """CREATE TABLE IF NOT EXISTS snapshots (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        ts INTEGER NOT NULL
    )""",
    """CREATE TABLE IF NOT EXISTS gpu_stats (
        snapshot_id INTEGER NOT NULL,
        gpu_index INTEGER,
        name TEXT, uuid TEXT,
        util_gpu REAL, util_mem REAL,
        mem_used_mb REAL, mem_total_mb REAL,
        temp_c REAL, power_w REAL, power_limit_w REAL,
        FOREIGN KEY(snapshot_id) REFERENCES snapshots(id) ON DELETE CASCADE
    )""",
    """CREATE TABLE IF NOT EXISTS proc_stats (
        snapshot_id INTEGER NOT NULL,
        gpu_uuid TEXT,
        pid INTEGER NOT NULL,
        process_name TEXT,
        used_mem_mb REAL,
        user TEXT,
        FOREIGN KEY(snapshot_id) REFERENCES snapshots(id) ON DELETE CASCADE
    )""",
    "CREATE INDEX IF NOT EXISTS idx_snapshots_ts ON snapshots(ts)",
    "CREATE INDEX IF NOT EXISTS idx_gpu_snapshot ON gpu_stats(snapshot_id)",
    "CREATE INDEX IF NOT EXISTS idx_proc_snapshot ON proc_stats(snapshot_id)",
]


def _to_unix(ts: datetime) -> int:
    return int(ts.timestamp())


def _from_unix(ts: int) -> datetime:
    return datetime.fromtimestamp(ts).astimezone()


def day_bounds(day: date) -> tuple[int, int]:
    """Unix range [local midnight, local midnight + 24h) for a calendar day."""
    start = datetime.combine(day, time.min).astimezone()
    end = start + timedelta(hours=24)
    return _to_unix(start), _to_unix(end)


class SnapshotStore:
    """
    Transactional snapshot storage on a single SQLite file.

    One long-lived connection is shared by every caller; a lock serializes
    access to it so reads and writes from worker threads never interleave
    inside a transaction.
    """

    def __init__(self, conn: sqlite3.Connection, path: Path | None = None) -> None:
        """Wrap an already migrated connection. Use SnapshotStore.open()."""
        self._conn = conn
        self._path = path
        self._lock = threading.Lock()

    @classmethod
    def open(cls, path: str | Path) -> "SnapshotStore":
        """
        Open or create the store at path and apply the schema.

        Raises:
            StoreUnavailableError: The file is inaccessible or migration failed.
        """
        db_path = Path(path)
        conn = None
        try:
            if str(db_path) != ":memory:":
                db_path.parent.mkdir(parents=True, exist_ok=True)
            conn = sqlite3.connect(db_path, check_same_thread=False, isolation_level=None)
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA foreign_keys=ON")
            for stmt in SCHEMA:
                conn.execute(stmt)
        except (OSError, sqlite3.Error) as exc:
            if conn is not None:
                conn.close()
            raise StoreUnavailableError(f"cannot open store at {db_path}: {exc}") from exc
        logger.debug("Opened snapshot store at %s", db_path)
        return cls(conn, db_path)

    @property
    def path(self) -> Path | None:
        """Get the database path."""
        return self._path

    def close(self) -> None:
        """Close the underlying connection."""
        with self._lock:
            self._conn.close()

    def __enter__(self) -> "SnapshotStore":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def _insert_device(self, snapshot_id: int, dev: DeviceReading) -> None:
        self._conn.execute(
            "INSERT INTO gpu_stats(snapshot_id, gpu_index, name, uuid, util_gpu, util_mem,"
            " mem_used_mb, mem_total_mb, temp_c, power_w, power_limit_w)"
            " VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                snapshot_id,
                dev.index,
                dev.name,
                dev.uuid,
                dev.util_gpu,
                dev.util_mem,
                dev.mem_used_mb,
                dev.mem_total_mb,
                dev.temp_c,
                dev.power_draw_w,
                dev.power_limit_w,
            ),
        )

    def _insert_process(self, snapshot_id: int, proc: ProcessReading) -> None:
        self._conn.execute(
            "INSERT INTO proc_stats(snapshot_id, gpu_uuid, pid, process_name, used_mem_mb, user)"
            " VALUES (?, ?, ?, ?, ?, ?)",
            (snapshot_id, proc.gpu_uuid, proc.pid, proc.name, proc.used_mem_mb, proc.user),
        )

    def save_snapshot(self, snapshot: Snapshot) -> int:
        """
        Persist a snapshot with all its rows in one transaction.

        Returns:
            The id assigned to the snapshot.

        Raises:
            TransactionError: Any insert failed; nothing was written.
        """
        if snapshot.id is not None:
            raise ValueError(f"snapshot already saved as #{snapshot.id}")

        with self._lock:
            try:
                self._conn.execute("BEGIN IMMEDIATE")
                cur = self._conn.execute(
                    "INSERT INTO snapshots(ts) VALUES (?)", (_to_unix(snapshot.timestamp),)
                )
                snapshot_id = cur.lastrowid
                for dev in snapshot.devices:
                    self._insert_device(snapshot_id, dev)
                for proc in snapshot.processes:
                    self._insert_process(snapshot_id, proc)
                self._conn.execute("COMMIT")
            except sqlite3.Error as exc:
                if self._conn.in_transaction:
                    self._conn.execute("ROLLBACK")
                raise TransactionError(f"saving snapshot failed: {exc}") from exc

        logger.info(
            "Saved snapshot #%d (%d devices, %d processes)",
            snapshot_id,
            len(snapshot.devices),
            len(snapshot.processes),
        )
        return snapshot_id

    def load_snapshot(self, snapshot_id: int) -> Snapshot:
        """
        Load a full snapshot by id.

        Raises:
            SnapshotNotFoundError: No snapshot has that id.
        """
        with self._lock:
            return self._load_unlocked(snapshot_id)

    def _load_unlocked(self, snapshot_id: int) -> Snapshot:
        header = self._conn.execute(
            "SELECT id, ts FROM snapshots WHERE id = ?", (snapshot_id,)
        ).fetchone()
        if header is None:
            raise SnapshotNotFoundError(snapshot_id)
        gpu_rows = self._conn.execute(
            "SELECT gpu_index, name, uuid, util_gpu, util_mem, mem_used_mb, mem_total_mb,"
            " temp_c, power_w, power_limit_w FROM gpu_stats WHERE snapshot_id = ?",
            (snapshot_id,),
        ).fetchall()
        proc_rows = self._conn.execute(
            "SELECT gpu_uuid, pid, process_name, used_mem_mb, user"
            " FROM proc_stats WHERE snapshot_id = ?",
            (snapshot_id,),
        ).fetchall()

        devices = tuple(
            DeviceReading(
                index=row["gpu_index"],
                name=row["name"],
                uuid=row["uuid"],
                util_gpu=row["util_gpu"],
                util_mem=row["util_mem"],
                mem_used_mb=row["mem_used_mb"],
                mem_total_mb=row["mem_total_mb"],
                temp_c=row["temp_c"],
                power_draw_w=row["power_w"],
                power_limit_w=row["power_limit_w"],
            )
            for row in gpu_rows
        )
        processes = tuple(
            ProcessReading(
                pid=row["pid"],
                name=row["process_name"],
                used_mem_mb=row["used_mem_mb"],
                gpu_uuid=row["gpu_uuid"],
                user=row["user"],
            )
            for row in proc_rows
        )
        return Snapshot(
            timestamp=_from_unix(header["ts"]),
            devices=devices,
            processes=processes,
            id=header["id"],
        )

    def list_snapshots_by_date(self, day: date) -> list[SnapshotMeta]:
        """List the snapshots taken on a local calendar day, oldest first."""
        start, end = day_bounds(day)
        with self._lock:
            rows = self._conn.execute(
                "SELECT id, ts FROM snapshots WHERE ts >= ? AND ts < ? ORDER BY ts ASC, id ASC",
                (start, end),
            ).fetchall()
        return [SnapshotMeta(id=row["id"], timestamp=_from_unix(row["ts"])) for row in rows]

    def load_latest(self) -> Snapshot:
        """
        Load the most recent snapshot.

        Raises:
            NoSnapshotsError: The store is empty.
        """
        with self._lock:
            row = self._conn.execute(
                "SELECT id FROM snapshots ORDER BY ts DESC, id DESC LIMIT 1"
            ).fetchone()
            if row is None:
                raise NoSnapshotsError()
            return self._load_unlocked(row["id"])

    def delete_snapshot(self, snapshot_id: int) -> None:
        """Delete a snapshot; its device and process rows cascade with it."""
        with self._lock:
            cur = self._conn.execute("DELETE FROM snapshots WHERE id = ?", (snapshot_id,))
        if cur.rowcount == 0:
            raise SnapshotNotFoundError(snapshot_id)

    def prune_older_than(self, days: int, now: datetime | None = None) -> int:
        """Delete snapshots older than days and return how many went."""
        now = now or datetime.now().astimezone()
        cutoff = _to_unix(now - timedelta(days=days))
        with self._lock:
            cur = self._conn.execute("DELETE FROM snapshots WHERE ts < ?", (cutoff,))
        if cur.rowcount:
            logger.info("Pruned %d snapshots older than %d days", cur.rowcount, days)
        return cur.rowcount

    def count_snapshots(self) -> int:
        """Return the number of stored snapshots."""
        with self._lock:
            return self._conn.execute("SELECT COUNT(*) FROM snapshots").fetchone()[0]
