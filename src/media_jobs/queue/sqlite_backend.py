"""SQLite implementations of QueueBackend, LockBackend and the shared config row.

This module provides the local-first, crash-safe queue engine using:
- sqlite-utils for schema management and reads
- WAL mode for better concurrent performance
- BEGIN IMMEDIATE transactions for atomic claims across processes
- Exponential backoff retry for database lock handling

Every process opens its own connection to the same file, so the queue state,
the pause flags and the lock table are shared by the whole fleet.
"""

import json
import os
import socket
import sqlite3
import threading
import time
import uuid
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Sequence, Set, Tuple

from loguru import logger
from sqlite_utils import Database

from .backends import LockBackend, QueueBackend
from .models import JobCounts, JobItem, JobState, JobStatus, QueuedJob, QueueName, QueueStatus

SCHEMA_SQL = """
-- Job rows, one per enqueue
CREATE TABLE IF NOT EXISTS jobs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    queue_name TEXT NOT NULL,
    name TEXT NOT NULL,
    data TEXT,
    state TEXT NOT NULL,
    created_at TEXT NOT NULL,
    started_at TEXT,
    finished_at TEXT,
    worker_id TEXT,
    heartbeat_at TEXT,
    last_error TEXT
);

CREATE INDEX IF NOT EXISTS idx_jobs_queue_state ON jobs(queue_name, state, id);

-- Per-queue flags
CREATE TABLE IF NOT EXISTS queues (
    name TEXT PRIMARY KEY,
    paused INTEGER NOT NULL DEFAULT 0,
    concurrency INTEGER NOT NULL DEFAULT 1
);

-- Versioned system config shared by every process
CREATE TABLE IF NOT EXISTS system_config (
    id INTEGER PRIMARY KEY CHECK (id = 1),
    version INTEGER NOT NULL,
    data TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

-- Named cluster locks
CREATE TABLE IF NOT EXISTS locks (
    name TEXT PRIMARY KEY,
    holder TEXT NOT NULL,
    acquired_at TEXT NOT NULL,
    heartbeat_at TEXT NOT NULL
);
"""

_ERROR_MAX_CHARS = 500


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _open_database(db_path: str) -> Database:
    """Open a connection usable from worker threads.

    The connection runs in autocommit mode; writes that must be atomic use
    explicit BEGIN IMMEDIATE transactions.
    """
    path = Path(db_path)
    path.parent.mkdir(parents=True, exist_ok=True)

    conn = sqlite3.connect(str(path), check_same_thread=False, isolation_level=None, timeout=10.0)
    db = Database(conn)
    db.execute("PRAGMA journal_mode=WAL")
    db.execute("PRAGMA synchronous=NORMAL")  # Faster writes, still crash-safe
    db.executescript(SCHEMA_SQL)
    # Queue files created before per-job heartbeats
    if "heartbeat_at" not in db["jobs"].columns_dict:
        db["jobs"].add_column("heartbeat_at", str)
    return db


class _SQLiteStore:
    """Connection plus the in-process lock that serializes its use."""

    def __init__(self, db_path: str):
        self.db_path = str(db_path)
        self.db = _open_database(self.db_path)
        self._lock = threading.RLock()

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        """BEGIN IMMEDIATE ... COMMIT, rolled back on any error.

        BEGIN IMMEDIATE takes the write lock up front, so two processes
        cannot both read the same waiting row before updating it.
        """
        with self._lock:
            conn = self.db.conn
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            else:
                conn.execute("COMMIT")

    def close(self) -> None:
        with self._lock:
            self.db.conn.close()


class SQLiteQueue(_SQLiteStore, QueueBackend):
    """SQLite-based queue engine with atomic claims.

    Features:
    - Atomic claim via UPDATE...RETURNING inside BEGIN IMMEDIATE
    - Exponential backoff retry for database lock contention
    - Pause flags and concurrency hints shared across processes

    Concurrency safety:
    - BEGIN IMMEDIATE ensures write lock from transaction start
    - Prevents race where multiple consumers claim the same job
    """

    def enqueue(self, queue_name: QueueName, item: JobItem) -> int:
        return self.enqueue_all([(queue_name, item)])[0]

    def enqueue_all(self, items: Sequence[Tuple[QueueName, JobItem]]) -> List[int]:
        if not items:
            return []

        now = _now()
        ids = []
        with self._transaction() as conn:
            for queue_name, item in items:
                cursor = conn.execute(
                    """
                    INSERT INTO jobs (queue_name, name, data, state, created_at)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (
                        QueueName(queue_name).value,
                        item.name.value,
                        json.dumps(item.data) if item.data is not None else None,
                        JobState.WAITING.value,
                        now,
                    ),
                )
                ids.append(cursor.lastrowid)
        return ids

    def dequeue(self, queue_name: QueueName, worker_id: str) -> Optional[QueuedJob]:
        return self._dequeue_with_retry(QueueName(queue_name), worker_id, max_retries=3)

    def _dequeue_with_retry(
        self, queue_name: QueueName, worker_id: str, max_retries: int = 3
    ) -> Optional[QueuedJob]:
        """Claim with exponential backoff on SQLITE_BUSY (100ms, 200ms, 400ms)."""
        for attempt in range(max_retries):
            try:
                now = _now()
                with self._transaction() as conn:
                    paused = conn.execute(
                        "SELECT paused FROM queues WHERE name = ?", (queue_name.value,)
                    ).fetchone()
                    if paused and paused[0]:
                        return None

                    row = conn.execute(
                        """
                        UPDATE jobs
                        SET state = ?, worker_id = ?, started_at = ?, heartbeat_at = ?
                        WHERE id = (
                            SELECT id FROM jobs
                            WHERE queue_name = ? AND state = ?
                            ORDER BY id ASC
                            LIMIT 1
                        )
                        RETURNING id, name, data, started_at
                        """,
                        (
                            JobState.ACTIVE.value,
                            worker_id,
                            now,
                            now,
                            queue_name.value,
                            JobState.WAITING.value,
                        ),
                    ).fetchone()

                if row is None:
                    return None

                job_id, name, data, started_at = row
                return QueuedJob(
                    id=job_id,
                    queue_name=queue_name,
                    item=JobItem(name=name, data=json.loads(data) if data else None),
                    worker_id=worker_id,
                    started_at=datetime.fromisoformat(started_at),
                )

            except sqlite3.OperationalError as e:
                if "database is locked" in str(e).lower() and attempt < max_retries - 1:
                    time.sleep(0.1 * (2 ** attempt))
                    continue
                raise

        return None

    def ack(
        self,
        job_id: int,
        status: JobStatus,
        error: Optional[str] = None,
        worker_id: Optional[str] = None,
    ) -> bool:
        state = JobState.FAILED if status == JobStatus.FAILED else JobState.COMPLETED
        where = "id = ? AND state = ?"
        args = [job_id, JobState.ACTIVE.value]
        if worker_id is not None:
            where += " AND worker_id = ?"
            args.append(worker_id)

        with self._transaction() as conn:
            cursor = conn.execute(
                f"UPDATE jobs SET state = ?, finished_at = ?, last_error = ? WHERE {where}",
                [state.value, _now(), error[:_ERROR_MAX_CHARS] if error else None, *args],
            )
            acked = cursor.rowcount > 0

        if not acked:
            logger.warning(f"Job {job_id} is no longer claimed by this worker; ack ignored")
        return acked

    def update_heartbeat(self, job_id: int, worker_id: Optional[str] = None) -> None:
        """Mark a claimed job as still running."""
        where = "id = ? AND state = ?"
        args = [job_id, JobState.ACTIVE.value]
        if worker_id is not None:
            where += " AND worker_id = ?"
            args.append(worker_id)

        with self._transaction() as conn:
            conn.execute(f"UPDATE jobs SET heartbeat_at = ? WHERE {where}", [_now(), *args])

    def reset_stale_active(self, stale_after_s: float = 600) -> int:
        """Crash recovery: put active jobs with no recent heartbeat back to waiting.

        A job is stale once its last heartbeat (or its claim time, for rows
        written before heartbeats existed) is older than ``stale_after_s``.
        The job keeps its id, so it runs again in its original order.

        Returns:
            Count of reset jobs
        """
        cutoff = (datetime.now(timezone.utc) - timedelta(seconds=stale_after_s)).isoformat()
        with self._transaction() as conn:
            rows = conn.execute(
                """
                UPDATE jobs
                SET state = ?, worker_id = NULL, started_at = NULL, heartbeat_at = NULL
                WHERE state = ? AND COALESCE(heartbeat_at, started_at) < ?
                RETURNING id, queue_name
                """,
                (JobState.WAITING.value, JobState.ACTIVE.value, cutoff),
            ).fetchall()

        for job_id, queue_name in rows:
            logger.warning(f"Reset stale job {job_id} on {queue_name} (crash recovery)")
        return len(rows)

    def pause(self, queue_name: QueueName) -> None:
        self._set_queue_flag(queue_name, "paused", 1)

    def resume(self, queue_name: QueueName) -> None:
        self._set_queue_flag(queue_name, "paused", 0)

    def is_paused(self, queue_name: QueueName) -> bool:
        rows = list(self.db["queues"].rows_where("name = ?", [QueueName(queue_name).value]))
        return bool(rows and rows[0]["paused"])

    def empty(self, queue_name: QueueName) -> int:
        with self._transaction() as conn:
            cursor = conn.execute(
                "DELETE FROM jobs WHERE queue_name = ? AND state IN (?, ?)",
                (QueueName(queue_name).value, JobState.WAITING.value, JobState.DELAYED.value),
            )
            return cursor.rowcount

    def clear(self, queue_name: QueueName, state: JobState) -> int:
        with self._transaction() as conn:
            cursor = conn.execute(
                "DELETE FROM jobs WHERE queue_name = ? AND state = ?",
                (QueueName(queue_name).value, JobState(state).value),
            )
            return cursor.rowcount

    def get_job_counts(self, queue_name: QueueName) -> JobCounts:
        with self._lock:
            rows = self.db.execute(
                "SELECT state, COUNT(*) FROM jobs WHERE queue_name = ? GROUP BY state",
                [QueueName(queue_name).value],
            ).fetchall()

        counts = {state: count for state, count in rows}
        result = JobCounts(
            active=counts.get(JobState.ACTIVE.value, 0),
            completed=counts.get(JobState.COMPLETED.value, 0),
            failed=counts.get(JobState.FAILED.value, 0),
            delayed=counts.get(JobState.DELAYED.value, 0),
            waiting=counts.get(JobState.WAITING.value, 0),
        )
        if self.is_paused(queue_name):
            result.paused, result.waiting = result.waiting, 0
        return result

    def get_queue_status(self, queue_name: QueueName) -> QueueStatus:
        with self._lock:
            active = self.db["jobs"].count_where(
                "queue_name = ? AND state = ?",
                [QueueName(queue_name).value, JobState.ACTIVE.value],
            )
            paused = self.is_paused(queue_name)
        return QueueStatus(isActive=active > 0, isPaused=paused)

    def set_concurrency(self, queue_name: QueueName, concurrency: int) -> None:
        if concurrency < 1:
            raise ValueError(f"Concurrency must be >= 1, got {concurrency}")
        self._set_queue_flag(queue_name, "concurrency", concurrency)

    def get_concurrency(self, queue_name: QueueName) -> int:
        with self._lock:
            rows = list(self.db["queues"].rows_where("name = ?", [QueueName(queue_name).value]))
        return rows[0]["concurrency"] if rows else 1

    def get_jobs(self, queue_name: QueueName, state: Optional[JobState] = None) -> List[JobItem]:
        where = "queue_name = ?"
        args = [QueueName(queue_name).value]
        if state is not None:
            where += " AND state = ?"
            args.append(JobState(state).value)

        with self._lock:
            rows = list(self.db["jobs"].rows_where(where, args, order_by="id"))
        return [
            JobItem(name=row["name"], data=json.loads(row["data"]) if row["data"] else None)
            for row in rows
        ]

    def _set_queue_flag(self, queue_name: QueueName, column: str, value: int) -> None:
        # column is one of two literals above, never user input
        with self._transaction() as conn:
            conn.execute(
                f"""
                INSERT INTO queues (name, {column}) VALUES (?, ?)
                ON CONFLICT(name) DO UPDATE SET {column} = excluded.{column}
                """,
                (QueueName(queue_name).value, value),
            )


class SQLiteConfigTable(_SQLiteStore):
    """Single-row, versioned copy of the system config on the shared file.

    The api process writes it on every config change; worker processes poll
    ``version()`` and reload when it moves.
    """

    def version(self) -> int:
        with self._lock:
            row = self.db.execute("SELECT version FROM system_config WHERE id = 1").fetchone()
        return row[0] if row else 0

    def load(self) -> Optional[Tuple[int, Dict[str, Any]]]:
        """Return (version, config dict), or None if nothing was saved yet."""
        with self._lock:
            row = self.db.execute(
                "SELECT version, data FROM system_config WHERE id = 1"
            ).fetchone()
        if row is None:
            return None
        return row[0], json.loads(row[1])

    def save(self, data: Dict[str, Any]) -> int:
        """Store a new config and return its version."""
        with self._transaction() as conn:
            row = conn.execute(
                """
                INSERT INTO system_config (id, version, data, updated_at)
                VALUES (1, 1, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    version = system_config.version + 1,
                    data = excluded.data,
                    updated_at = excluded.updated_at
                RETURNING version
                """,
                (json.dumps(data), _now()),
            ).fetchone()
        return row[0]


class SQLiteLock(_SQLiteStore, LockBackend):
    """Cluster lock table on the shared SQLite file.

    A lock is held for the lifetime of the owning process: a heartbeat thread
    refreshes ``heartbeat_at`` while the lock is held, and a row whose
    heartbeat is older than ``ttl_s`` is treated as abandoned by a crashed
    process and may be taken over by the next process that asks.
    """

    def __init__(self, db_path: str, ttl_s: int = 300, heartbeat_interval_s: float = 60.0):
        super().__init__(db_path)
        self.ttl_s = ttl_s
        self.heartbeat_interval_s = heartbeat_interval_s
        self.holder = f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"
        self._held: Set[str] = set()
        self._heartbeat: Optional[Tuple[threading.Thread, threading.Event]] = None

    def try_acquire(self, name: str) -> bool:
        now = datetime.now(timezone.utc)
        stale_before = (now - timedelta(seconds=self.ttl_s)).isoformat()

        with self._transaction() as conn:
            row = conn.execute(
                "SELECT holder, heartbeat_at FROM locks WHERE name = ?", (name,)
            ).fetchone()

            if row is not None and row[0] != self.holder and row[1] >= stale_before:
                return False

            if row is not None and row[0] != self.holder:
                logger.warning(f"Taking over stale lock {name} from {row[0]}")

            conn.execute(
                """
                INSERT INTO locks (name, holder, acquired_at, heartbeat_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(name) DO UPDATE SET
                    holder = excluded.holder,
                    acquired_at = excluded.acquired_at,
                    heartbeat_at = excluded.heartbeat_at
                """,
                (name, self.holder, now.isoformat(), now.isoformat()),
            )

        self._held.add(name)
        self._start_heartbeat()
        return True

    def release(self, name: str) -> None:
        with self._transaction() as conn:
            conn.execute("DELETE FROM locks WHERE name = ? AND holder = ?", (name, self.holder))
        self._held.discard(name)
        if not self._held:
            self._stop_heartbeat()

    def close(self) -> None:
        for name in list(self._held):
            self.release(name)
        self._stop_heartbeat()
        super().close()

    def refresh(self) -> None:
        """Update the heartbeat of every lock this holder owns."""
        if not self._held:
            return
        with self._transaction() as conn:
            for name in list(self._held):
                conn.execute(
                    "UPDATE locks SET heartbeat_at = ? WHERE name = ? AND holder = ?",
                    (_now(), name, self.holder),
                )

    def _start_heartbeat(self) -> None:
        """Start the background refresh thread once.

        Thread is daemon so it won't block process exit.
        """
        if self._heartbeat is not None:
            return

        stop_event = threading.Event()

        def heartbeat_loop():
            while not stop_event.wait(self.heartbeat_interval_s):
                try:
                    self.refresh()
                except sqlite3.Error as e:
                    # Log but don't crash thread; the next beat retries
                    logger.warning(f"Lock heartbeat failed for {self.holder}: {e}")

        thread = threading.Thread(target=heartbeat_loop, daemon=True, name="lock-heartbeat")
        thread.start()
        self._heartbeat = (thread, stop_event)

    def _stop_heartbeat(self) -> None:
        if self._heartbeat is None:
            return
        thread, stop_event = self._heartbeat
        stop_event.set()
        thread.join(timeout=5)
        self._heartbeat = None
