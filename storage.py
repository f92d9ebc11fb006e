# storage.py
import logging
import sqlite3
import threading
import uuid
from contextlib import contextmanager
from datetime import timedelta

from errors import JobNotFound, LeaseExpired, StoreUnavailable
from models import (
    CANCELLED,
    FAILED,
    PENDING,
    RUNNING,
    STATUSES,
    SUCCEEDED,
    TERMINAL_STATUSES,
    ScheduledJob,
    parse_utc,
    to_iso,
    utc_now,
)
from recurrence import next_run_after

logger = logging.getLogger(__name__)

# A job can be leased when it is pending and due, or when a previous lease ran out
LEASABLE = """(
    (status='pending' AND COALESCE(next_run_at, scheduled_at_utc) <= ?)
    OR (status='running' AND lease_until IS NOT NULL AND lease_until <= ?)
)"""


def log_transition(job_id, old_state, new_state, extra=""):
    logger.info("Job %s: %s → %s %s", job_id, old_state, new_state, extra)


class Storage:
    def __init__(self, db_path="postpup.db", clock=utc_now):
        self.db_path = db_path
        self.clock = clock
        self._lock = threading.RLock()
        try:
            # autocommit mode; transactions are opened explicitly with BEGIN IMMEDIATE
            self.conn = sqlite3.connect(db_path, check_same_thread=False, isolation_level=None, timeout=10.0)
            self.conn.row_factory = sqlite3.Row

            # Better concurrency for multiple workers
            self.conn.execute("PRAGMA journal_mode=WAL;")
            self.conn.execute("PRAGMA synchronous=NORMAL;")

            self._init_schema()
        except sqlite3.Error as e:
            raise StoreUnavailable(f"Cannot open job database {db_path}: {e}") from e

    def _init_schema(self):
        # Jobs table
        self.conn.execute("""
        CREATE TABLE IF NOT EXISTS jobs (
            id TEXT PRIMARY KEY,
            draft_reference TEXT NOT NULL,
            scheduled_at_utc TEXT NOT NULL,
            time_zone TEXT NOT NULL,
            repeat_rule TEXT,
            status TEXT NOT NULL,
            last_error TEXT,
            attempts INTEGER NOT NULL DEFAULT 0,
            max_retries INTEGER NOT NULL DEFAULT 3,
            next_run_at TEXT,
            worker_id TEXT,
            lease_until TEXT,
            run_count INTEGER NOT NULL DEFAULT 0,
            started_at TEXT,
            finished_at TEXT,
            duration_seconds REAL,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """)
        self.conn.execute("CREATE INDEX IF NOT EXISTS idx_jobs_status_due ON jobs (status, scheduled_at_utc)")

        # Config table
        self.conn.execute("""
        CREATE TABLE IF NOT EXISTS config (
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """)

    # ---------------- Plumbing ----------------
    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    def close(self):
        with self._lock:
            self.conn.close()

    def _rollback(self):
        try:
            self.conn.execute("ROLLBACK")
        except sqlite3.Error as e:
            logger.warning("Rollback failed: %s", e)

    @contextmanager
    def _transaction(self):
        """BEGIN IMMEDIATE takes the write lock up front, so claims are atomic across workers and processes"""
        with self._lock:
            try:
                self.conn.execute("BEGIN IMMEDIATE")
            except sqlite3.Error as e:
                raise StoreUnavailable(f"Job database unavailable: {e}") from e
            try:
                yield self.conn
                self.conn.execute("COMMIT")
            except sqlite3.Error as e:
                self._rollback()
                raise StoreUnavailable(f"Job database unavailable: {e}") from e
            except BaseException:
                self._rollback()
                raise

    def _fetchall(self, sql, params=()):
        with self._lock:
            try:
                return self.conn.execute(sql, params).fetchall()
            except sqlite3.Error as e:
                raise StoreUnavailable(f"Job database unavailable: {e}") from e

    def _now(self):
        now = self.clock()
        return now, to_iso(now)

    @staticmethod
    def _load(conn, job_id):
        row = conn.execute("SELECT * FROM jobs WHERE id=?", (job_id,)).fetchone()
        if row is None:
            raise JobNotFound(job_id)
        return ScheduledJob.from_row(row)

    # ---------------- Jobs ----------------
    def enqueue(self, job):
        """Persist `job` as pending and return its new id"""
        _, now_iso = self._now()
        job_id = f"job-{uuid.uuid4().hex[:12]}"
        with self._transaction() as conn:
            conn.execute("""
                INSERT INTO jobs (id, draft_reference, scheduled_at_utc, time_zone, repeat_rule, status,
                                  attempts, max_retries, run_count, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, 'pending', 0, ?, 0, ?, ?)
            """, (job_id, job.draft_reference, job.scheduled_at_utc, job.time_zone, job.repeat_rule,
                  job.max_retries, now_iso, now_iso))
        job.id = job_id
        job.status = PENDING
        job.created_at = job.updated_at = now_iso
        rr = f", repeat={job.repeat_rule}" if job.repeat_rule else ""
        logger.info("Job %s enqueued (draft=%s, scheduled_at=%s%s)", job_id, job.draft_reference, job.scheduled_at_utc, rr)
        return job_id

    def get(self, job_id):
        rows = self._fetchall("SELECT * FROM jobs WHERE id=?", (job_id,))
        if not rows:
            raise JobNotFound(job_id)
        return ScheduledJob.from_row(rows[0])

    def list_jobs(self, status=None, limit=None):
        sql = "SELECT * FROM jobs"
        params = []
        if status:
            sql += " WHERE status=?"
            params.append(status)
        sql += " ORDER BY created_at, id"
        if limit:
            sql += " LIMIT ?"
            params.append(int(limit))
        return [ScheduledJob.from_row(r) for r in self._fetchall(sql, params)]

    def counts_by_status(self):
        counts = {s: 0 for s in STATUSES}
        for row in self._fetchall("SELECT status, COUNT(*) AS c FROM jobs GROUP BY status"):
            counts[row["status"]] = row["c"]
        return counts

    def lease(self, job_id, worker_id, lease_seconds=30):
        """
        Claim a specific job for `worker_id`.
        Returns the running job, or None if it is not due, not pending,
        or leased by someone else. Unknown ids raise JobNotFound.
        """
        now = self.clock()
        with self._transaction() as conn:
            claimed = self._claim(conn, job_id, worker_id, now, lease_seconds)
        return self._claimed(claimed, worker_id)

    def lease_next(self, worker_id, lease_seconds=30):
        """
        Claim the job that has been due the longest.
        No ordering is promised among jobs due at the same instant.
        """
        now, now_iso = self._now()
        with self._transaction() as conn:
            row = conn.execute(f"""
                SELECT id FROM jobs
                WHERE {LEASABLE}
                ORDER BY COALESCE(next_run_at, scheduled_at_utc) ASC, created_at ASC
                LIMIT 1
            """, (now_iso, now_iso)).fetchone()
            if row is None:
                return None
            claimed = self._claim(conn, row["id"], worker_id, now, lease_seconds)
        return self._claimed(claimed, worker_id)

    def _claim(self, conn, job_id, worker_id, now, lease_seconds):
        now_iso = to_iso(now)
        lease_until = to_iso(now + timedelta(seconds=lease_seconds))
        old_state = self._load(conn, job_id).status
        updated = conn.execute(f"""
            UPDATE jobs
            SET status='running', worker_id=?, lease_until=?, started_at=?, updated_at=?
            WHERE id=? AND {LEASABLE}
        """, (worker_id, lease_until, now_iso, now_iso, job_id, now_iso, now_iso)).rowcount
        if updated != 1:
            return None  # lost the race to another worker
        return old_state, self._load(conn, job_id)

    @staticmethod
    def _claimed(claimed, worker_id):
        if claimed is None:
            return None
        old_state, job = claimed
        log_transition(job.id, old_state, RUNNING, f"(leased by {worker_id} until {job.lease_until})")
        return job

    def _held(self, conn, job_id, worker_id, action):
        """Load a job for its lease holder; None if it was cancelled meanwhile"""
        job = self._load(conn, job_id)
        if job.status == CANCELLED:
            logger.info("Job %s was cancelled while leased by %s; ignoring %s", job_id, worker_id, action)
            return None
        if job.status != RUNNING or job.worker_id != worker_id:
            raise LeaseExpired(job_id, worker_id)
        return job

    def complete(self, job_id, worker_id, outcome, error=None):
        """
        Record the outcome of a run.
        One-shot jobs become succeeded/failed for good. Recurring jobs go back
        to pending with their next occurrence armed, whatever the outcome.
        Returns the updated job, or None if the job was cancelled while running.
        """
        if outcome not in (SUCCEEDED, FAILED):
            raise ValueError(f"Unknown outcome {outcome!r}")
        now, now_iso = self._now()
        last_error = error if outcome == FAILED else None
        with self._transaction() as conn:
            job = self._held(conn, job_id, worker_id, outcome)
            if job is None:
                return None
            duration = (now - parse_utc(job.started_at)).total_seconds() if job.started_at else None

            if job.is_recurring:
                nxt = next_run_after(job.repeat_rule, parse_utc(job.scheduled_at_utc), now)
                conn.execute("""
                    UPDATE jobs
                    SET status='pending', scheduled_at_utc=?, next_run_at=NULL, attempts=0,
                        worker_id=NULL, lease_until=NULL, run_count=run_count+1, last_error=?,
                        finished_at=?, updated_at=?, duration_seconds=?
                    WHERE id=?
                """, (to_iso(nxt), last_error, now_iso, now_iso, duration, job_id))
                new_state = PENDING
                extra = f"({outcome}, next run {to_iso(nxt)})"
            else:
                conn.execute("""
                    UPDATE jobs
                    SET status=?, last_error=?, worker_id=NULL, lease_until=NULL,
                        finished_at=?, updated_at=?, duration_seconds=?
                    WHERE id=?
                """, (outcome, last_error, now_iso, now_iso, duration, job_id))
                new_state = outcome
                extra = f"(error={error})" if last_error else ""
            job = self._load(conn, job_id)
        log_transition(job_id, RUNNING, new_state, extra)
        return job

    def retry_later(self, job_id, worker_id, error, retry_at):
        """Release the lease after a transient failure and make the job due again at `retry_at`"""
        now, now_iso = self._now()
        with self._transaction() as conn:
            job = self._held(conn, job_id, worker_id, "retry")
            if job is None:
                return None
            duration = (now - parse_utc(job.started_at)).total_seconds() if job.started_at else None
            conn.execute("""
                UPDATE jobs
                SET status='pending', attempts=attempts+1, last_error=?, next_run_at=?,
                    worker_id=NULL, lease_until=NULL, updated_at=?, duration_seconds=?
                WHERE id=?
            """, (error, to_iso(retry_at), now_iso, duration, job_id))
            job = self._load(conn, job_id)
        log_transition(job_id, RUNNING, PENDING,
                       f"(attempts={job.attempts}/{job.max_retries}, retry_at={job.next_run_at}, error={error})")
        return job

    def cancel(self, job_id):
        """Cancel a job. Cancelling a job that already finished is a no-op."""
        _, now_iso = self._now()
        with self._transaction() as conn:
            job = self._load(conn, job_id)
            if job.status in TERMINAL_STATUSES:
                return job
            conn.execute("""
                UPDATE jobs
                SET status='cancelled', lease_until=NULL, next_run_at=NULL, finished_at=?, updated_at=?
                WHERE id=?
            """, (now_iso, now_iso, job_id))
            old_state = job.status
            job = self._load(conn, job_id)
        log_transition(job_id, old_state, CANCELLED)
        return job

    def release_expired(self):
        """Return running jobs whose lease ran out to pending. Returns their ids."""
        _, now_iso = self._now()
        with self._transaction() as conn:
            rows = conn.execute("""
                SELECT id, worker_id FROM jobs
                WHERE status='running' AND lease_until IS NOT NULL AND lease_until <= ?
            """, (now_iso,)).fetchall()
            ids = [r["id"] for r in rows]
            if ids:
                conn.execute(f"""
                    UPDATE jobs
                    SET status='pending', worker_id=NULL, lease_until=NULL, updated_at=?
                    WHERE id IN ({",".join("?" for _ in ids)})
                """, (now_iso, *ids))
        for r in rows:
            log_transition(r["id"], RUNNING, PENDING, f"(lease held by {r['worker_id']} expired)")
        return ids

    def release_worker_leases(self, worker_ids):
        """Hand back whatever the given workers still hold, e.g. on shutdown"""
        worker_ids = list(worker_ids)
        if not worker_ids:
            return []
        _, now_iso = self._now()
        marks = ",".join("?" for _ in worker_ids)
        with self._transaction() as conn:
            rows = conn.execute(f"""
                SELECT id FROM jobs WHERE status='running' AND worker_id IN ({marks})
            """, worker_ids).fetchall()
            ids = [r["id"] for r in rows]
            if ids:
                conn.execute(f"""
                    UPDATE jobs
                    SET status='pending', worker_id=NULL, lease_until=NULL, updated_at=?
                    WHERE id IN ({",".join("?" for _ in ids)})
                """, (now_iso, *ids))
        for job_id in ids:
            log_transition(job_id, RUNNING, PENDING, "(released on shutdown)")
        return ids

    # ---------------- Config helpers ----------------
    def get_config(self, key, default=None):
        rows = self._fetchall("SELECT value FROM config WHERE key=?", (key,))
        return rows[0]["value"] if rows else default

    def set_config(self, key, value):
        _, now_iso = self._now()
        with self._transaction() as conn:
            conn.execute("""
                INSERT INTO config (key, value, updated_at)
                VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET value=excluded.value, updated_at=excluded.updated_at
            """, (key, str(value), now_iso))

    def list_config(self):
        return [dict(r) for r in self._fetchall("SELECT key, value, updated_at FROM config ORDER BY key")]
