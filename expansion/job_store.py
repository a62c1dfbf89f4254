"""
Job Store - SQLite-backed queue and state for expansion jobs.

Jobs survive restarts: status, monotonic progress, the last completed
stage checkpoint and the money already spent all live in one row.
"""

import json
import sqlite3
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple
import logging

from expansion.errors import JobNotFound
from expansion.models import JobParams

log = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
# JOB STATUS
# ═══════════════════════════════════════════════════════════════════════════
class JobStatus:
    """Job lifecycle states."""
    QUEUED = "queued"          # Waiting to be picked up
    RUNNING = "running"        # Currently being processed
    COMPLETED = "completed"    # Finished with every requested AI rationale
    FAILED = "failed"          # Fatal error; see error_type
    PARTIAL = "partial"        # Usable results, but stopped short (cap, rate, failure, cancel)

    ACTIVE = (QUEUED, RUNNING)
    FINISHED = (COMPLETED, FAILED, PARTIAL)


# ═══════════════════════════════════════════════════════════════════════════
# JOB
# ═══════════════════════════════════════════════════════════════════════════
@dataclass
class Job:
    """
    One expansion run.

    Attributes:
        id: Unique job ID (auto-generated)
        idempotency_key: Caller token that de-duplicates submissions
        params_json: Serialized JobParams
        status: Current job status
        progress: 0-100, never decreases
        stage: Pipeline stage currently running
        checkpoint_stage: Last stage whose output was saved
        cost_spent: USD spent on AI calls across all attempts
        tokens_used: Tokens consumed across all attempts
        demoted_count: AI-tier candidates that fell back to templates
        error_type: Stable error identifier when FAILED
        retryable: Whether retry() may requeue this job
        attempts: How many times a worker has claimed it
    """
    id: int
    params_json: str
    idempotency_key: Optional[str] = None
    status: str = JobStatus.QUEUED
    progress: int = 0
    stage: Optional[str] = None
    progress_message: str = "Waiting to start"
    checkpoint_stage: Optional[str] = None
    checkpoint_json: Optional[str] = None
    result_json: Optional[str] = None
    metadata_json: Optional[str] = None
    cost_spent: float = 0.0
    tokens_used: int = 0
    demoted_count: int = 0
    error_type: Optional[str] = None
    error_message: Optional[str] = None
    retryable: int = 0
    cancel_requested: int = 0
    attempts: int = 0
    worker_id: Optional[str] = None
    created_at: Optional[str] = None
    started_at: Optional[str] = None
    heartbeat_at: Optional[str] = None
    completed_at: Optional[str] = None

    @property
    def params(self) -> JobParams:
        return JobParams.from_dict(json.loads(self.params_json))

    @property
    def checkpoint(self) -> Optional[Dict[str, Any]]:
        return json.loads(self.checkpoint_json) if self.checkpoint_json else None

    @property
    def metadata(self) -> Dict[str, Any]:
        return json.loads(self.metadata_json) if self.metadata_json else {}

    def to_dict(self) -> Dict:
        return {
            "id": self.id,
            "idempotency_key": self.idempotency_key,
            "params": json.loads(self.params_json),
            "status": self.status,
            "progress": self.progress,
            "stage": self.stage,
            "progress_message": self.progress_message,
            "checkpoint_stage": self.checkpoint_stage,
            "cost_spent": self.cost_spent,
            "tokens_used": self.tokens_used,
            "demoted_count": self.demoted_count,
            "error_type": self.error_type,
            "error_message": self.error_message,
            "retryable": bool(self.retryable),
            "attempts": self.attempts,
            "worker_id": self.worker_id,
            "created_at": self.created_at,
            "started_at": self.started_at,
            "heartbeat_at": self.heartbeat_at,
            "completed_at": self.completed_at,
        }


# ═══════════════════════════════════════════════════════════════════════════
# JOB STORE
# ═══════════════════════════════════════════════════════════════════════════
class JobStore:
    """
    SQLite-backed job store for reliable, resumable pipeline runs.

    Features:
    - Survives restarts
    - Thread-safe, and process-safe for claims and idempotent submits
    - Monotonic progress
    - Stage checkpoints

    Usage:
        store = JobStore()
        job_id, reused = store.enqueue(JobParams("small-country", 50), "key-1")
        job = store.claim_next("worker-1")
        store.update_progress(job.id, 25, "score", "Scoring candidates")
        store.finish(job.id, JobStatus.COMPLETED, result, metadata)
    """

    DEFAULT_DB_PATH = "expansion_jobs.db"

    def __init__(self, db_path: str = None):
        """
        Initialize the job store.

        Args:
            db_path: Path to SQLite database. Defaults to 'expansion_jobs.db'
        """
        self.db_path = db_path or self.DEFAULT_DB_PATH
        self._lock = threading.RLock()
        self._init_db()

    def _get_connection(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, timeout=30, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_db(self):
        """Initialize database schema."""
        with self._lock:
            conn = self._get_connection()
            try:
                conn.execute("""
                    CREATE TABLE IF NOT EXISTS jobs (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        idempotency_key TEXT,
                        params_json TEXT NOT NULL,
                        status TEXT NOT NULL DEFAULT 'queued',
                        progress INTEGER DEFAULT 0,
                        stage TEXT,
                        progress_message TEXT DEFAULT 'Waiting to start',
                        checkpoint_stage TEXT,
                        checkpoint_json TEXT,
                        result_json TEXT,
                        metadata_json TEXT,
                        cost_spent REAL DEFAULT 0,
                        tokens_used INTEGER DEFAULT 0,
                        demoted_count INTEGER DEFAULT 0,
                        error_type TEXT,
                        error_message TEXT,
                        retryable INTEGER DEFAULT 0,
                        cancel_requested INTEGER DEFAULT 0,
                        attempts INTEGER DEFAULT 0,
                        worker_id TEXT,
                        created_at TEXT NOT NULL,
                        started_at TEXT,
                        heartbeat_at TEXT,
                        completed_at TEXT
                    )
                """)
                conn.execute("CREATE INDEX IF NOT EXISTS idx_status ON jobs(status)")
                conn.execute("CREATE INDEX IF NOT EXISTS idx_idempotency ON jobs(idempotency_key)")
                conn.commit()
                log.info(f"Job store initialized at {self.db_path}")
            finally:
                conn.close()

    def _execute(self, sql: str, args: Tuple = ()) -> int:
        """Run one write statement. Returns rows affected."""
        with self._lock:
            conn = self._get_connection()
            try:
                cursor = conn.execute(sql, args)
                conn.commit()
                return cursor.rowcount
            finally:
                conn.close()

    # ─── submission ───────────────────────────────────────────────────────

    def enqueue(self, params: JobParams, idempotency_key: Optional[str] = None) -> Tuple[int, bool]:
        """
        Add a job unless an active job already holds the idempotency key.

        Args:
            params: What to run
            idempotency_key: Caller token; None disables de-duplication

        Returns:
            (job_id, reused) where reused is True if an existing job was returned
        """
        with self._lock:
            conn = self._get_connection()
            conn.isolation_level = None
            try:
                conn.execute("BEGIN IMMEDIATE")
                try:
                    if idempotency_key:
                        row = conn.execute(
                            """
                            SELECT id FROM jobs
                            WHERE idempotency_key = ? AND status IN (?, ?)
                            ORDER BY id LIMIT 1
                            """,
                            (idempotency_key,) + JobStatus.ACTIVE
                        ).fetchone()
                        if row:
                            conn.execute("COMMIT")
                            log.info(f"Idempotency key {idempotency_key} matches active job {row['id']}")
                            return row["id"], True

                    cursor = conn.execute(
                        """
                        INSERT INTO jobs (idempotency_key, params_json, status, created_at)
                        VALUES (?, ?, ?, ?)
                        """,
                        (idempotency_key, json.dumps(params.to_dict(), sort_keys=True),
                         JobStatus.QUEUED, datetime.now().isoformat())
                    )
                    conn.execute("COMMIT")
                except sqlite3.Error:
                    conn.execute("ROLLBACK")
                    raise
                job_id = cursor.lastrowid
                log.info(f"Enqueued job {job_id} for region {params.region} (target {params.target_count})")
                return job_id, False
            finally:
                conn.close()

    def claim_next(self, worker_id: str) -> Optional[Job]:
        """
        Claim the oldest queued job.

        This atomically marks the job as RUNNING so no other worker takes it.

        Returns:
            The claimed Job, or None if the queue is empty
        """
        with self._lock:
            conn = self._get_connection()
            conn.isolation_level = None
            try:
                conn.execute("BEGIN IMMEDIATE")
                try:
                    row = conn.execute(
                        "SELECT id FROM jobs WHERE status = ? ORDER BY id ASC LIMIT 1",
                        (JobStatus.QUEUED,)
                    ).fetchone()
                    if not row:
                        conn.execute("COMMIT")
                        return None

                    now = datetime.now().isoformat()
                    conn.execute(
                        """
                        UPDATE jobs
                        SET status = ?, started_at = COALESCE(started_at, ?), heartbeat_at = ?,
                            worker_id = ?, attempts = attempts + 1,
                            progress_message = 'Starting...'
                        WHERE id = ?
                        """,
                        (JobStatus.RUNNING, now, now, worker_id, row["id"])
                    )
                    conn.execute("COMMIT")
                except sqlite3.Error:
                    conn.execute("ROLLBACK")
                    raise
            finally:
                conn.close()

        job = self.get_job(row["id"])
        log.info(f"Worker {worker_id} claimed job {job.id} (attempt {job.attempts})")
        return job

    # ─── progress ─────────────────────────────────────────────────────────

    @staticmethod
    def _owned_by(worker_id: Optional[str]) -> Tuple[str, Tuple]:
        """
        Extra WHERE clause restricting a write to the worker that holds the job.

        None skips the check (operator commands, tests).
        """
        if worker_id is None:
            return "", ()
        return " AND worker_id = ? AND status = ?", (worker_id, JobStatus.RUNNING)

    def update_progress(self, job_id: int, percent: int, stage: str, message: str,
                        worker_id: Optional[str] = None) -> bool:
        """
        Record progress. Lower values than already stored are ignored.

        Also refreshes the heartbeat.

        Returns:
            False if worker_id no longer holds the job
        """
        clause, owner = self._owned_by(worker_id)
        return self._execute(
            f"""
            UPDATE jobs
            SET progress = MAX(progress, ?), stage = ?, progress_message = ?, heartbeat_at = ?
            WHERE id = ?{clause}
            """,
            (int(percent), stage, message, datetime.now().isoformat(), job_id) + owner
        ) > 0

    def heartbeat(self, job_id: int, worker_id: Optional[str] = None) -> bool:
        clause, owner = self._owned_by(worker_id)
        return self._execute(f"UPDATE jobs SET heartbeat_at = ? WHERE id = ?{clause}",
                             (datetime.now().isoformat(), job_id) + owner) > 0

    def save_checkpoint(self, job_id: int, stage: str, data: Dict[str, Any],
                        worker_id: Optional[str] = None) -> bool:
        """Persist the output of a completed stage."""
        clause, owner = self._owned_by(worker_id)
        saved = self._execute(
            f"UPDATE jobs SET checkpoint_stage = ?, checkpoint_json = ?, heartbeat_at = ? WHERE id = ?{clause}",
            (stage, json.dumps(data), datetime.now().isoformat(), job_id) + owner
        ) > 0
        if saved:
            log.debug(f"Job {job_id} checkpointed after {stage}")
        return saved

    def record_cost(self, job_id: int, cost_spent: float, tokens_used: int,
                    worker_id: Optional[str] = None) -> bool:
        """
        Persist cumulative spend. Called after every settled AI call.

        Stored totals only grow; a late write carrying a smaller total is ignored.
        """
        clause, owner = self._owned_by(worker_id)
        return self._execute(
            f"""
            UPDATE jobs
            SET cost_spent = MAX(cost_spent, ?), tokens_used = MAX(tokens_used, ?), heartbeat_at = ?
            WHERE id = ?{clause}
            """,
            (cost_spent, tokens_used, datetime.now().isoformat(), job_id) + owner
        ) > 0

    # ─── terminal states ──────────────────────────────────────────────────

    def finish(self, job_id: int, status: str, result: Dict[str, Any],
               metadata: Dict[str, Any], demoted_count: int = 0,
               worker_id: Optional[str] = None) -> bool:
        """
        Mark a job COMPLETED or PARTIAL and store its result.

        The stage checkpoint is dropped; the result supersedes it.

        Returns:
            False if worker_id no longer holds the job (nothing was written)
        """
        if status not in (JobStatus.COMPLETED, JobStatus.PARTIAL):
            raise ValueError(f"finish() cannot set status {status}")
        clause, owner = self._owned_by(worker_id)
        finished = self._execute(
            f"""
            UPDATE jobs
            SET status = ?, completed_at = ?, progress = 100, stage = 'done',
                progress_message = ?, result_json = ?, metadata_json = ?,
                checkpoint_stage = NULL, checkpoint_json = NULL,
                demoted_count = ?, error_type = NULL, error_message = NULL, retryable = 0
            WHERE id = ?{clause}
            """,
            (status, datetime.now().isoformat(), status.capitalize(),
             json.dumps(result), json.dumps(metadata), demoted_count, job_id) + owner
        ) > 0
        if finished:
            log.info(f"Job {job_id} {status}")
        else:
            log.warning(f"Job {job_id} is no longer held by {worker_id}; result discarded")
        return finished

    def fail(self, job_id: int, error_type: str, error_message: str, retryable: bool = False,
             worker_id: Optional[str] = None) -> bool:
        """Mark a job as failed with a typed error."""
        clause, owner = self._owned_by(worker_id)
        failed = self._execute(
            f"""
            UPDATE jobs
            SET status = ?, completed_at = ?, error_type = ?, error_message = ?,
                retryable = ?, progress_message = 'Failed'
            WHERE id = ?{clause}
            """,
            (JobStatus.FAILED, datetime.now().isoformat(), error_type, error_message,
             1 if retryable else 0, job_id) + owner
        ) > 0
        if failed:
            log.error(f"Job {job_id} failed ({error_type}): {error_message}")
        else:
            log.warning(f"Job {job_id} is no longer held by {worker_id}; {error_type} not recorded")
        return failed

    def request_cancel(self, job_id: int) -> Optional[str]:
        """
        Ask a job to stop.

        Queued jobs fail immediately as cancelled (retryable). Running jobs
        get a flag the orchestrator polls between AI dispatches.

        Returns:
            The job's status after the request, or None if unknown
        """
        job = self.get_job(job_id)
        if job is None:
            return None
        if job.status == JobStatus.QUEUED:
            self.fail(job_id, "cancelled", "Cancelled before start", retryable=True)
            return JobStatus.FAILED
        if job.status == JobStatus.RUNNING:
            self._execute("UPDATE jobs SET cancel_requested = 1 WHERE id = ?", (job_id,))
            log.info(f"Cancellation requested for job {job_id}")
        return job.status

    def is_cancel_requested(self, job_id: int) -> bool:
        conn = self._get_connection()
        try:
            row = conn.execute("SELECT cancel_requested FROM jobs WHERE id = ?", (job_id,)).fetchone()
            return bool(row and row["cancel_requested"])
        finally:
            conn.close()

    def requeue(self, job_id: int, message: str = "Requeued"):
        """Put a job back in the queue, keeping its checkpoint and spend."""
        self._execute(
            """
            UPDATE jobs
            SET status = ?, worker_id = NULL, completed_at = NULL, error_type = NULL,
                error_message = NULL, retryable = 0, cancel_requested = 0,
                progress_message = ?
            WHERE id = ?
            """,
            (JobStatus.QUEUED, message, job_id)
        )
        log.info(f"Job {job_id} requeued: {message}")

    # ─── queries ──────────────────────────────────────────────────────────

    def get_job(self, job_id: int) -> Optional[Job]:
        """Get a specific job by ID."""
        conn = self._get_connection()
        try:
            row = conn.execute("SELECT * FROM jobs WHERE id = ?", (job_id,)).fetchone()
            if row:
                return Job(**dict(row))
            return None
        finally:
            conn.close()

    def require_job(self, job_id: int) -> Job:
        job = self.get_job(job_id)
        if job is None:
            raise JobNotFound(f"Job {job_id} not found")
        return job

    def get_active_jobs(self) -> List[Job]:
        """Get all queued or running jobs."""
        conn = self._get_connection()
        try:
            rows = conn.execute(
                "SELECT * FROM jobs WHERE status IN (?, ?) ORDER BY id ASC",
                JobStatus.ACTIVE
            ).fetchall()
            return [Job(**dict(row)) for row in rows]
        finally:
            conn.close()

    def get_queue_stats(self) -> Dict[str, int]:
        """Get counts of jobs by status."""
        conn = self._get_connection()
        try:
            rows = conn.execute(
                "SELECT status, COUNT(*) as count FROM jobs GROUP BY status"
            ).fetchall()
            return {row["status"]: row["count"] for row in rows}
        finally:
            conn.close()

    def find_stale_jobs(self, max_age_minutes: int, now: Optional[datetime] = None) -> List[Job]:
        """
        Running jobs whose heartbeat is older than max_age_minutes.

        These belong to workers that crashed or were killed.
        """
        now = now or datetime.now()
        cutoff = (now - timedelta(minutes=max_age_minutes)).isoformat()
        conn = self._get_connection()
        try:
            rows = conn.execute(
                """
                SELECT * FROM jobs
                WHERE status = ? AND COALESCE(heartbeat_at, started_at, created_at) < ?
                ORDER BY id ASC
                """,
                (JobStatus.RUNNING, cutoff)
            ).fetchall()
            return [Job(**dict(row)) for row in rows]
        finally:
            conn.close()

    # ─── retention ────────────────────────────────────────────────────────

    def cleanup_old_jobs(self, older_than_hours: float, now: Optional[datetime] = None) -> int:
        """
        Delete finished jobs completed more than older_than_hours ago.

        Queued and running jobs are never touched.

        Returns:
            Number of jobs deleted
        """
        now = now or datetime.now()
        cutoff = (now - timedelta(hours=older_than_hours)).isoformat()
        removed = self._execute(
            "DELETE FROM jobs WHERE status IN (?, ?, ?) AND completed_at < ?",
            JobStatus.FINISHED + (cutoff,)
        )
        if removed:
            log.info(f"Deleted {removed} jobs finished before {cutoff}")
        return removed
