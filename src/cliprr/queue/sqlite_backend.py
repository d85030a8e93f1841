"""SQLite implementation of QueueBackend.

This module provides the local-first, crash-safe job queue using:
- sqlite-utils for schema management and reads
- WAL mode for concurrent readers (API, CLI) alongside the worker process
- An in-process lock plus BEGIN IMMEDIATE transactions for atomic transitions
- Exponential backoff retry for database lock contention across processes
- A partial unique index enforcing one outstanding job per episode and lane
"""

import logging
import sqlite3
import threading
import time
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional, Sequence, Tuple

from sqlite_utils import Database

from ..errors import DuplicateJobError, InvalidTransitionError, JobBusyError, JobNotFoundError
from .backends import QueueBackend, QueueListener
from .models import Job, JobState, QueueSnapshot, ResourceClass, StateTransition

logger = logging.getLogger(__name__)

SCHEMA_SQL = """
-- Jobs table (ids are never reused, even after deletion)
CREATE TABLE IF NOT EXISTS jobs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    episode_id INTEGER NOT NULL,
    show_id INTEGER NOT NULL,
    queue_name TEXT NOT NULL,
    state TEXT NOT NULL,
    resource_class TEXT,
    attempt INTEGER NOT NULL DEFAULT 1,
    error TEXT,
    error_kind TEXT,
    enqueued_at TEXT NOT NULL,
    started_at TEXT,
    finished_at TEXT,
    last_heartbeat TEXT,
    worker_id TEXT
);

CREATE INDEX IF NOT EXISTS idx_jobs_queue_state ON jobs(queue_name, state);
CREATE INDEX IF NOT EXISTS idx_jobs_fifo ON jobs(state, enqueued_at, id);
CREATE INDEX IF NOT EXISTS idx_jobs_show ON jobs(show_id);
CREATE UNIQUE INDEX IF NOT EXISTS idx_jobs_outstanding
    ON jobs(episode_id, queue_name) WHERE state IN ('queued', 'active');

-- State transition log (audit trail)
CREATE TABLE IF NOT EXISTS state_transitions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    job_id INTEGER NOT NULL,
    from_state TEXT,
    to_state TEXT NOT NULL,
    timestamp TEXT NOT NULL,
    worker_id TEXT,
    error_snippet TEXT
);

CREATE INDEX IF NOT EXISTS idx_transitions_job ON state_transitions(job_id, timestamp);
"""

JOB_COLUMNS = (
    "id", "episode_id", "show_id", "queue_name", "state", "resource_class", "attempt",
    "error", "error_kind", "enqueued_at", "started_at", "finished_at", "last_heartbeat",
    "worker_id",
)
_SELECT_JOB = f"SELECT {', '.join(JOB_COLUMNS)} FROM jobs"

ORPHANED_KIND = "orphaned"


def _now() -> str:
    # UTC so string comparison of stored timestamps stays chronological
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _placeholders(values: Sequence[Any]) -> str:
    return ", ".join("?" for _ in values)


class SQLiteJobQueue(QueueBackend):
    """SQLite-based job queue with atomic admission.

    Features:
    - Atomic dequeue via BEGIN IMMEDIATE + UPDATE...RETURNING
    - Per-class admission limit checked inside the same transaction
    - Change notifications to QueueListeners after commit
    - Condition-based waiting for idle workers (no busy-spin)
    - Heartbeats, staleness queries and startup reconciliation

    Concurrency safety:
    - One connection shared by all threads, guarded by an RLock
    - BEGIN IMMEDIATE takes the write lock at transaction start, so other
      processes sharing the file cannot interleave a conflicting admission
    """

    def __init__(self, db_path: str):
        """Open (and create) the queue database.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        conn = sqlite3.connect(str(self.db_path), check_same_thread=False, timeout=30)
        self.db = Database(conn)

        self.db.conn.execute("PRAGMA journal_mode=WAL")
        self.db.conn.execute("PRAGMA synchronous=NORMAL")
        self.db.conn.commit()
        self.db.executescript(SCHEMA_SQL)

        self._lock = threading.RLock()
        self._listeners: List[QueueListener] = []

        # Bumped on every mutation; idle workers wait on it
        self._cond = threading.Condition()
        self._generation = 0

    # ------------------------------------------------------------------
    # Listener and waiting plumbing
    # ------------------------------------------------------------------

    def add_listener(self, listener: QueueListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: QueueListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    @property
    def generation(self) -> int:
        with self._cond:
            return self._generation

    def wake_waiters(self) -> None:
        """Wake idle workers (new work, resumed capacity or shutdown)."""
        with self._cond:
            self._generation += 1
            self._cond.notify_all()

    def wait_for_work(self, since: int, timeout: float) -> int:
        """Block until the queue changes after generation `since` or timeout.

        Returns:
            Current generation
        """
        with self._cond:
            if self._generation == since:
                self._cond.wait(timeout)
            return self._generation

    def _notify_transitions(self, jobs: List[Job]) -> None:
        self.wake_waiters()
        for job in jobs:
            for listener in list(self._listeners):
                try:
                    listener.on_job_state_change(job)
                except Exception:
                    logger.exception("Queue listener failed for job %s", job.id)

    def _notify_deleted(self, deleted: Dict[str, List[int]]) -> None:
        self.wake_waiters()
        for queue_name, job_ids in deleted.items():
            for listener in list(self._listeners):
                try:
                    listener.on_jobs_deleted(queue_name, job_ids)
                except Exception:
                    logger.exception("Queue listener failed for deletion in %s", queue_name)

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    @contextmanager
    def _write_txn(self, max_retries: int = 5) -> Iterator[sqlite3.Connection]:
        """Serialised write transaction with backoff on cross-process locks.

        Implementation note:
        - BEGIN IMMEDIATE ensures write lock from transaction start
        - Exponential backoff: 100ms, 200ms, 400ms... on "database is locked"
        """
        with self._lock:
            conn = self.db.conn
            for attempt in range(max_retries):
                try:
                    conn.execute("BEGIN IMMEDIATE")
                    break
                except sqlite3.OperationalError as e:
                    if "database is locked" in str(e).lower() and attempt < max_retries - 1:
                        time.sleep(0.1 * (2 ** attempt))
                        continue
                    raise
            try:
                yield conn
            except BaseException:
                conn.rollback()
                raise
            else:
                conn.commit()

    def _fetch_jobs(self, conn: sqlite3.Connection, where: str, params: Sequence[Any]) -> List[Job]:
        cursor = conn.execute(f"{_SELECT_JOB} WHERE {where} ORDER BY id ASC", tuple(params))
        return [self._row_to_job(row) for row in cursor.fetchall()]

    def _fetch_job(self, conn: sqlite3.Connection, job_id: int) -> Job:
        jobs = self._fetch_jobs(conn, "id = ?", [job_id])
        if not jobs:
            raise JobNotFoundError(job_id)
        return jobs[0]

    @staticmethod
    def _row_to_job(row: Tuple) -> Job:
        """Convert a row in JOB_COLUMNS order to a Job model."""
        data = dict(zip(JOB_COLUMNS, row))
        return Job(
            id=data["id"],
            episode_id=data["episode_id"],
            show_id=data["show_id"],
            queue_name=data["queue_name"],
            state=JobState(data["state"]),
            resource_class=ResourceClass(data["resource_class"]) if data["resource_class"] else None,
            attempt=data["attempt"],
            error=data["error"],
            error_kind=data["error_kind"],
            enqueued_at=datetime.fromisoformat(data["enqueued_at"]),
            started_at=_parse_ts(data["started_at"]),
            finished_at=_parse_ts(data["finished_at"]),
            last_heartbeat=_parse_ts(data["last_heartbeat"]),
            worker_id=data["worker_id"],
        )

    def _log_transition(
        self,
        conn: sqlite3.Connection,
        job_id: int,
        from_state: Optional[str],
        to_state: str,
        worker_id: Optional[str] = None,
        error: Optional[str] = None,
    ) -> None:
        """Append to the audit trail inside the caller's transaction."""
        conn.execute(
            """
            INSERT INTO state_transitions
                (job_id, from_state, to_state, timestamp, worker_id, error_snippet)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (job_id, from_state, to_state, _now(), worker_id, error[:200] if error else None),
        )

    # ------------------------------------------------------------------
    # QueueBackend
    # ------------------------------------------------------------------

    def enqueue(self, episode_id: int, show_id: int, queue_name: str) -> Job:
        """Create a queued job for an episode.

        Raises:
            DuplicateJobError: If the episode already has a queued or active
                job in this queue
        """
        with self._write_txn() as conn:
            job = self._enqueue_locked(conn, episode_id, show_id, queue_name)

        logger.debug("Enqueued job %s (episode %s, queue %s)", job.id, episode_id, queue_name)
        self._notify_transitions([job])
        return job

    def _enqueue_locked(
        self, conn: sqlite3.Connection, episode_id: int, show_id: int, queue_name: str
    ) -> Job:
        outstanding = conn.execute(
            """
            SELECT id FROM jobs
            WHERE episode_id = ? AND queue_name = ? AND state IN (?, ?)
            """,
            (episode_id, queue_name, JobState.QUEUED.value, JobState.ACTIVE.value),
        ).fetchone()
        if outstanding:
            raise DuplicateJobError(episode_id, queue_name, outstanding[0])

        previous = conn.execute(
            "SELECT COUNT(*) FROM jobs WHERE episode_id = ? AND queue_name = ?",
            (episode_id, queue_name),
        ).fetchone()[0]

        try:
            cursor = conn.execute(
                """
                INSERT INTO jobs (episode_id, show_id, queue_name, state, attempt, enqueued_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (episode_id, show_id, queue_name, JobState.QUEUED.value, previous + 1, _now()),
            )
        except sqlite3.IntegrityError as e:
            # Another process won the race for this episode
            raise DuplicateJobError(episode_id, queue_name) from e

        job_id = cursor.lastrowid
        self._log_transition(conn, job_id, None, JobState.QUEUED.value)
        return self._fetch_job(conn, job_id)

    def dequeue_next(
        self,
        resource_class: ResourceClass,
        max_active: Optional[int] = None,
        queue_names: Optional[Sequence[str]] = None,
        worker_id: Optional[str] = None,
    ) -> Optional[Job]:
        """Atomically admit the oldest queued job to a resource class.

        Atomicity: the capacity check, selection and UPDATE...RETURNING run in
        one BEGIN IMMEDIATE transaction under the queue lock.
        """
        resource_class = ResourceClass(resource_class)
        if max_active is not None and max_active <= 0:
            return None

        with self._write_txn() as conn:
            if max_active is not None:
                active = conn.execute(
                    "SELECT COUNT(*) FROM jobs WHERE state = ? AND resource_class = ?",
                    (JobState.ACTIVE.value, resource_class.value),
                ).fetchone()[0]
                if active >= max_active:
                    return None

            lane_filter = ""
            params: List[Any] = [JobState.QUEUED.value]
            if queue_names:
                lane_filter = f"AND queue_name IN ({_placeholders(queue_names)})"
                params.extend(queue_names)

            now = _now()
            cursor = conn.execute(
                f"""
                UPDATE jobs
                SET state = ?,
                    resource_class = ?,
                    worker_id = ?,
                    started_at = ?,
                    last_heartbeat = ?
                WHERE id = (
                    SELECT id FROM jobs
                    WHERE state = ? {lane_filter}
                    ORDER BY enqueued_at ASC, id ASC
                    LIMIT 1
                )
                RETURNING {', '.join(JOB_COLUMNS)}
                """,
                (JobState.ACTIVE.value, resource_class.value, worker_id, now, now, *params),
            )
            row = cursor.fetchone()
            if row is None:
                return None

            job = self._row_to_job(row)
            self._log_transition(
                conn, job.id, JobState.QUEUED.value, JobState.ACTIVE.value, worker_id=worker_id
            )

        logger.debug("Admitted job %s to %s (%s)", job.id, resource_class.value, worker_id)
        self._notify_transitions([job])
        return job

    def complete(self, job_id: int) -> Job:
        """Mark an active job as completed."""
        with self._write_txn() as conn:
            current = self._fetch_job(conn, job_id)
            if current.state != JobState.ACTIVE:
                raise InvalidTransitionError(job_id, current.state.value, JobState.COMPLETED.value)

            conn.execute(
                "UPDATE jobs SET state = ?, finished_at = ? WHERE id = ? AND state = ?",
                (JobState.COMPLETED.value, _now(), job_id, JobState.ACTIVE.value),
            )
            self._log_transition(
                conn, job_id, JobState.ACTIVE.value, JobState.COMPLETED.value,
                worker_id=current.worker_id,
            )
            job = self._fetch_job(conn, job_id)

        self._notify_transitions([job])
        return job

    def fail(self, job_id: int, error: str, kind: Optional[str] = None) -> Job:
        """Mark an active job as failed.

        Args:
            job_id: Job identifier
            error: Error message (truncated to 500 chars)
            kind: Classification, e.g. "decode" or "cancelled"

        No automatic requeue: retry is an explicit enqueue by the caller.
        """
        error_snippet = error[:500] if error else None

        with self._write_txn() as conn:
            job = self._fail_locked(conn, job_id, error_snippet, kind)

        self._notify_transitions([job])
        return job

    def _fail_locked(
        self, conn: sqlite3.Connection, job_id: int, error: Optional[str], kind: Optional[str]
    ) -> Job:
        current = self._fetch_job(conn, job_id)
        if current.state != JobState.ACTIVE:
            raise InvalidTransitionError(job_id, current.state.value, JobState.FAILED.value)

        conn.execute(
            """
            UPDATE jobs
            SET state = ?, finished_at = ?, error = ?, error_kind = ?
            WHERE id = ? AND state = ?
            """,
            (JobState.FAILED.value, _now(), error, kind, job_id, JobState.ACTIVE.value),
        )
        self._log_transition(
            conn, job_id, JobState.ACTIVE.value, JobState.FAILED.value,
            worker_id=current.worker_id, error=error,
        )
        return self._fetch_job(conn, job_id)

    def snapshot(self, queue_name: str) -> QueueSnapshot:
        """Aggregate counts for one queue, read under the queue lock."""
        with self._lock:
            rows = self.db.conn.execute(
                "SELECT state, COUNT(*) FROM jobs WHERE queue_name = ? GROUP BY state",
                (queue_name,),
            ).fetchall()

        counts = {state: count for state, count in rows}
        return QueueSnapshot(
            queue_name=queue_name,
            queued=counts.get(JobState.QUEUED.value, 0),
            active=counts.get(JobState.ACTIVE.value, 0),
            completed=counts.get(JobState.COMPLETED.value, 0),
            failed=counts.get(JobState.FAILED.value, 0),
        )

    def queue_names(self) -> List[str]:
        with self._lock:
            rows = self.db.conn.execute(
                "SELECT DISTINCT queue_name FROM jobs ORDER BY queue_name"
            ).fetchall()
        return [row[0] for row in rows]

    def bulk_delete(self, job_ids: Iterable[int]) -> int:
        """Delete non-active jobs; all-or-nothing when any job is active."""
        ids = sorted(set(int(j) for j in job_ids))
        if not ids:
            return 0

        with self._write_txn() as conn:
            deleted = self._delete_locked(conn, ids)

        self._notify_deleted(deleted)
        return sum(len(v) for v in deleted.values())

    def delete_by_show(self, show_id: int) -> int:
        """Delete every non-active job of a show (all-or-nothing)."""
        with self._write_txn() as conn:
            ids = [
                row[0]
                for row in conn.execute("SELECT id FROM jobs WHERE show_id = ?", (show_id,))
            ]
            deleted = self._delete_locked(conn, ids)

        self._notify_deleted(deleted)
        return sum(len(v) for v in deleted.values())

    def _delete_locked(self, conn: sqlite3.Connection, ids: List[int]) -> Dict[str, List[int]]:
        if not ids:
            return {}

        rows = conn.execute(
            f"SELECT id, state, queue_name FROM jobs WHERE id IN ({_placeholders(ids)})",
            tuple(ids),
        ).fetchall()

        busy = [job_id for job_id, state, _ in rows if state == JobState.ACTIVE.value]
        if busy:
            raise JobBusyError(busy)

        deleted: Dict[str, List[int]] = {}
        for job_id, state, queue_name in rows:
            deleted.setdefault(queue_name, []).append(job_id)
            self._log_transition(conn, job_id, state, "deleted")

        existing = [row[0] for row in rows]
        if existing:
            conn.execute(
                f"DELETE FROM jobs WHERE id IN ({_placeholders(existing)})", tuple(existing)
            )
        return deleted

    def get_job(self, job_id: int) -> Job:
        with self._lock:
            return self._fetch_job(self.db.conn, job_id)

    def list_jobs(
        self,
        queue_name: Optional[str] = None,
        state: Optional[str] = None,
        show_id: Optional[int] = None,
    ) -> List[Job]:
        """Query jobs by lane, state and show (all optional)."""
        clauses = ["1 = 1"]
        params: List[Any] = []
        if queue_name is not None:
            clauses.append("queue_name = ?")
            params.append(queue_name)
        if state is not None:
            clauses.append("state = ?")
            params.append(JobState(state).value)
        if show_id is not None:
            clauses.append("show_id = ?")
            params.append(show_id)

        with self._lock:
            return self._fetch_jobs(self.db.conn, " AND ".join(clauses), params)

    def get_transitions(self, job_id: int) -> List[StateTransition]:
        """Audit trail for one job, oldest first."""
        with self._lock:
            rows = list(self.db["state_transitions"].rows_where(
                "job_id = ?", [job_id], order_by="id"
            ))
        return [
            StateTransition(
                id=row["id"],
                job_id=row["job_id"],
                from_state=row["from_state"],
                to_state=row["to_state"],
                timestamp=datetime.fromisoformat(row["timestamp"]),
                worker_id=row["worker_id"],
                error_snippet=row["error_snippet"],
            )
            for row in rows
        ]

    def touch(self, job_ids: Iterable[int]) -> None:
        """Update heartbeat timestamp for active jobs.

        Called by the worker pool supervisor on every tick for the jobs its
        live workers hold. Prevents them from being reported as stale.
        """
        ids = list(job_ids)
        if not ids:
            return

        with self._write_txn() as conn:
            conn.execute(
                f"""
                UPDATE jobs SET last_heartbeat = ?
                WHERE state = ? AND id IN ({_placeholders(ids)})
                """,
                (_now(), JobState.ACTIVE.value, *ids),
            )

    def find_stale_active(self, threshold_s: float) -> List[Job]:
        """Active jobs with no heartbeat (or start) within threshold_s."""
        cutoff = (datetime.now(timezone.utc) - timedelta(seconds=threshold_s)).isoformat(
            timespec="microseconds"
        )
        with self._lock:
            return self._fetch_jobs(
                self.db.conn,
                "state = ? AND COALESCE(last_heartbeat, started_at) < ?",
                [JobState.ACTIVE.value, cutoff],
            )

    def reconcile_orphans(self, threshold_s: float) -> List[Job]:
        """Crash recovery: retire stale active jobs and enqueue a fresh attempt.

        Each orphan is failed with kind "orphaned" (keeping job states
        monotonic) and a new queued job is created for the same episode and
        lane. Only call this when no live worker can hold these jobs, i.e. at
        startup before the pool runs.

        Returns:
            The newly enqueued jobs
        """
        stale = self.find_stale_active(threshold_s)
        if not stale:
            return []

        changed: List[Job] = []
        requeued: List[Job] = []
        with self._write_txn() as conn:
            for job in stale:
                failed = self._fail_locked(
                    conn, job.id, "Worker vanished while job was active", ORPHANED_KIND
                )
                fresh = self._enqueue_locked(conn, job.episode_id, job.show_id, job.queue_name)
                changed.extend([failed, fresh])
                requeued.append(fresh)

        logger.warning("Reconciled %d orphaned active job(s)", len(stale))
        self._notify_transitions(changed)
        return requeued

    def close(self) -> None:
        with self._lock:
            self.db.conn.close()
