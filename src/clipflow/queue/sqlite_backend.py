"""SQLite implementation of the job queue service.

This module provides the crash-safe, multi-worker queue using:
- sqlite-utils for schema management, inserts and lookups
- WAL mode for concurrent readers alongside a single writer
- BEGIN IMMEDIATE transactions around every state transition
- A conditional UPDATE (worker_id IS NULL) as the only claim primitive
- Exponential backoff retry for database lock handling
"""

import json
import logging
import sqlite3
import threading
import time
import uuid
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

from pydantic import ValidationError as PydanticValidationError
from sqlite_utils import Database
from sqlite_utils.db import NotFoundError

from .backends import QueueBackend
from .errors import (
    ClaimConflict,
    ItemNotFoundError,
    ItemStateError,
    JobNotFoundError,
    LeaseExpired,
    StoreError,
    UnknownStageError,
    ValidationError,
)
from .models import (
    PIPELINE_STAGES,
    ItemStatus,
    Job,
    JobSpec,
    JobStatus,
    LogEntry,
    LogLevel,
    Priority,
    QueueItem,
    QueueStats,
    Stage,
    StageCounts,
    VideoChunk,
    as_payload,
    is_terminal_stage,
    stage_progress,
)

logger = logging.getLogger(__name__)

MAX_ERROR_LENGTH = 500

# SQLite schema SQL
SCHEMA_SQL = """
-- Jobs table
CREATE TABLE IF NOT EXISTS jobs (
    id TEXT PRIMARY KEY,
    title TEXT NOT NULL,
    description TEXT,
    owner_id TEXT,
    status TEXT NOT NULL,
    current_stage TEXT NOT NULL,
    progress_percentage INTEGER DEFAULT 0
        CHECK (progress_percentage >= 0 AND progress_percentage <= 100),
    stage_progress TEXT,
    priority TEXT NOT NULL DEFAULT 'normal',
    processing_options TEXT,
    metadata TEXT,
    result_data TEXT,
    last_error TEXT,
    retry_count INTEGER DEFAULT 0,
    created_at TEXT NOT NULL,
    updated_at TEXT,
    started_at TEXT,
    completed_at TEXT
);

CREATE INDEX IF NOT EXISTS idx_jobs_status ON jobs(status);
CREATE INDEX IF NOT EXISTS idx_jobs_owner_created ON jobs(owner_id, created_at DESC);

-- Per-stage work units with claim/lease metadata
CREATE TABLE IF NOT EXISTS queue_items (
    id TEXT PRIMARY KEY,
    job_id TEXT NOT NULL,
    stage TEXT NOT NULL,
    payload TEXT,
    priority TEXT NOT NULL,
    priority_rank INTEGER NOT NULL,
    status TEXT NOT NULL,
    worker_id TEXT,
    claimed_at TEXT,
    claim_expires_at TEXT,
    attempts INTEGER DEFAULT 0,
    max_attempts INTEGER DEFAULT 3,
    last_error TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT,
    FOREIGN KEY(job_id) REFERENCES jobs(id)
);

-- At most one waiting/claimed item per (job, stage)
CREATE UNIQUE INDEX IF NOT EXISTS idx_queue_active_stage
    ON queue_items(job_id, stage) WHERE status IN ('waiting', 'claimed');
CREATE INDEX IF NOT EXISTS idx_queue_claim
    ON queue_items(stage, status, priority_rank DESC, created_at ASC);
CREATE INDEX IF NOT EXISTS idx_queue_worker ON queue_items(worker_id, claimed_at);

-- Append-only job log
CREATE TABLE IF NOT EXISTS job_logs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    job_id TEXT NOT NULL,
    level TEXT NOT NULL,
    stage TEXT NOT NULL,
    message TEXT NOT NULL,
    metadata TEXT,
    worker_id TEXT,
    timestamp TEXT NOT NULL,
    FOREIGN KEY(job_id) REFERENCES jobs(id)
);

CREATE INDEX IF NOT EXISTS idx_logs_job ON job_logs(job_id, id);

-- Stored video chunks
CREATE TABLE IF NOT EXISTS video_chunks (
    id TEXT PRIMARY KEY,
    job_id TEXT NOT NULL,
    chunk_index INTEGER NOT NULL,
    chunk_name TEXT NOT NULL,
    storage_path TEXT NOT NULL,
    storage_url TEXT,
    start_time REAL NOT NULL,
    end_time REAL NOT NULL,
    duration REAL NOT NULL,
    file_size INTEGER NOT NULL,
    uploaded INTEGER DEFAULT 0,
    processed INTEGER DEFAULT 0,
    analysis_result TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT,
    UNIQUE(job_id, chunk_index),
    FOREIGN KEY(job_id) REFERENCES jobs(id)
);
"""

_ACTIVE = (ItemStatus.WAITING.value, ItemStatus.CLAIMED.value)
_TERMINAL_ITEM = (ItemStatus.DONE.value, ItemStatus.FAILED.value)
_CHUNK_UPDATABLE = {"storage_url", "uploaded", "processed", "analysis_result"}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(dt: Optional[datetime]) -> Optional[str]:
    """Fixed-width UTC timestamp, so SQL string comparison orders correctly."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _loads(value: Optional[str], default: Any) -> Any:
    if value is None or value == "":
        return default
    return json.loads(value)


def _coerce_stage(stage: Union[Stage, str]) -> Stage:
    try:
        return Stage(stage)
    except ValueError:
        raise UnknownStageError([stage]) from None


def _coerce_priority(priority: Union[Priority, str]) -> Priority:
    try:
        return Priority(priority)
    except ValueError:
        raise ValidationError(f"Unknown priority: {priority}") from None


def _coerce_level(level: Union[LogLevel, str]) -> LogLevel:
    try:
        return LogLevel(level)
    except ValueError:
        raise ValidationError(f"Unknown log level: {level}") from None


def _row_to_job(row: Dict[str, Any]) -> Job:
    data = dict(row)
    for key in ("processing_options", "metadata", "result_data", "stage_progress"):
        data[key] = _loads(data.get(key), {})
    return Job(**data)


def _row_to_item(row: Dict[str, Any]) -> QueueItem:
    data = dict(row)
    data["payload"] = _loads(data.get("payload"), {})
    return QueueItem(**data)


def _row_to_log(row: Dict[str, Any]) -> LogEntry:
    data = dict(row)
    data["metadata"] = _loads(data.get("metadata"), {})
    return LogEntry(**data)


def _row_to_chunk(row: Dict[str, Any]) -> VideoChunk:
    data = dict(row)
    data["analysis_result"] = _loads(data.get("analysis_result"), None)
    return VideoChunk(**data)


def _check_holder(item: Dict[str, Any], worker_id: Optional[str]) -> None:
    """Reject a report from a worker that no longer holds the claim."""
    if worker_id is None:
        return
    if item["status"] != ItemStatus.CLAIMED.value or item["worker_id"] != worker_id:
        raise ItemStateError(f"Item {item['id']} is no longer claimed by {worker_id}")


def _batched(values: List[str], size: int = 500) -> Iterable[List[str]]:
    for start in range(0, len(values), size):
        yield values[start:start + size]


class SQLiteJobQueue(QueueBackend):
    """SQLite-based job queue service with atomic claim operations.

    Features:
    - Atomic claim via conditional UPDATE inside BEGIN IMMEDIATE
    - Idempotent enqueue per (job, stage)
    - Bounded retries with optional cool-down
    - Stuck-claim recovery with an audit LogEntry per released item
    - Exponential backoff retry for database lock contention

    Concurrency safety:
    - One connection per instance, serialised by a re-entrant lock, so an
      instance may be shared by worker threads
    - Separate instances (threads or processes) coordinate through SQLite's
      write lock; BEGIN IMMEDIATE takes it at transaction start
    """

    def __init__(
        self,
        db_path: Union[str, Path],
        *,
        max_attempts: int = 3,
        lease_seconds: float = 1800.0,
        retry_delay_seconds: float = 0.0,
        busy_timeout_s: float = 30.0,
        lock_retries: int = 5,
        claim_retries: int = 3,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """Open (and create if needed) the queue database.

        Args:
            db_path: Path to SQLite database file
            max_attempts: Attempts per queue item before the job fails
            lease_seconds: Default claim lease
            retry_delay_seconds: Cool-down before a failed item is claimable again
            busy_timeout_s: How long a connection waits for the write lock
            lock_retries: Transaction retries on "database is locked"
            claim_retries: Claim retries after losing a conditional update
            clock: Returns the current UTC time (injectable for tests)
        """
        if max_attempts < 1:
            raise ValidationError("max_attempts must be >= 1")
        if lease_seconds <= 0:
            raise ValidationError("lease_seconds must be > 0")

        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.max_attempts = max_attempts
        self.lease_seconds = float(lease_seconds)
        self.retry_delay_seconds = float(retry_delay_seconds)
        self.lock_retries = lock_retries
        self.claim_retries = claim_retries
        self._clock = clock or utcnow
        self._lock = threading.RLock()

        try:
            conn = sqlite3.connect(
                str(self.db_path), timeout=busy_timeout_s, check_same_thread=False
            )
            self.db = Database(conn)

            # Enable WAL mode for better concurrent performance
            self.db.conn.execute("PRAGMA journal_mode=WAL")
            self.db.conn.execute("PRAGMA synchronous=NORMAL")  # Faster writes, still crash-safe
            self.db.conn.commit()

            self._create_schema()
        except sqlite3.Error as e:
            raise StoreError(f"Cannot open queue database {self.db_path}: {e}") from e

    @classmethod
    def from_config(cls, config, clock: Optional[Callable[[], datetime]] = None) -> "SQLiteJobQueue":
        """Build a queue from a resolved ClipflowConfig."""
        queue_cfg = config.queue
        return cls(
            queue_cfg.db_path,
            max_attempts=queue_cfg.max_attempts,
            lease_seconds=queue_cfg.lease_seconds,
            retry_delay_seconds=queue_cfg.retry_delay_s,
            busy_timeout_s=queue_cfg.busy_timeout_s,
            clock=clock,
        )

    def _create_schema(self):
        """Create tables and indexes if they don't exist."""
        self.db.executescript(SCHEMA_SQL)
        # Databases created before handlers could report in-stage progress
        if "stage_progress" not in self.db["jobs"].columns_dict:
            self.db["jobs"].add_column("stage_progress", str)

    def close(self) -> None:
        with self._lock:
            self.db.conn.close()

    # ------------------------------------------------------------------
    # Store plumbing
    # ------------------------------------------------------------------

    def _now(self) -> datetime:
        now = self._clock()
        if now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)
        return now

    def _locked(self, fn: Callable[[], Any]) -> Any:
        """Run a non-transactional store call under the connection lock."""
        with self._lock:
            try:
                return fn()
            except sqlite3.OperationalError as e:
                raise StoreError(f"Store unavailable: {e}") from e

    def _transaction(self, fn: Callable[[sqlite3.Connection], Any]) -> Any:
        """Run ``fn`` inside BEGIN IMMEDIATE with lock-contention retry.

        BEGIN IMMEDIATE takes the write lock at transaction start, so the
        select-then-update sequences inside ``fn`` see no interleaved writer.
        Exponential backoff: 100ms, 200ms, 400ms, ...
        """
        with self._lock:
            conn = self.db.conn
            for attempt in range(self.lock_retries):
                try:
                    conn.execute("BEGIN IMMEDIATE")
                    try:
                        result = fn(conn)
                    except BaseException:
                        conn.rollback()
                        raise
                    conn.commit()
                    return result
                except sqlite3.OperationalError as e:
                    if "locked" in str(e).lower() and attempt < self.lock_retries - 1:
                        time.sleep(0.1 * (2 ** attempt))
                        continue
                    raise StoreError(f"Store unavailable: {e}") from e
                except sqlite3.IntegrityError:
                    raise
                except sqlite3.DatabaseError as e:
                    raise StoreError(f"Store error: {e}") from e
            raise StoreError("Store unavailable: lock retries exhausted")

    @staticmethod
    def _fetch(conn: sqlite3.Connection, sql: str, params: Iterable[Any] = ()) -> List[Dict[str, Any]]:
        cursor = conn.execute(sql, tuple(params))
        if cursor.description is None:
            return []
        keys = [d[0] for d in cursor.description]
        return [dict(zip(keys, row)) for row in cursor.fetchall()]

    def _job_row(self, conn: sqlite3.Connection, job_id: str) -> Dict[str, Any]:
        rows = self._fetch(conn, "SELECT * FROM jobs WHERE id = ?", (job_id,))
        if not rows:
            raise JobNotFoundError(job_id)
        return rows[0]

    def _item_row(self, conn: sqlite3.Connection, item_id: str) -> Dict[str, Any]:
        rows = self._fetch(conn, "SELECT * FROM queue_items WHERE id = ?", (item_id,))
        if not rows:
            raise ItemNotFoundError(item_id)
        return rows[0]

    def _insert_log(
        self,
        conn: sqlite3.Connection,
        job_id: str,
        level: LogLevel,
        stage: Union[Stage, str],
        message: str,
        metadata: Optional[Dict[str, Any]],
        worker_id: Optional[str],
        now: datetime,
    ) -> None:
        conn.execute(
            """
            INSERT INTO job_logs (job_id, level, stage, message, metadata, worker_id, timestamp)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                job_id,
                LogLevel(level).value,
                Stage(stage).value,
                message,
                json.dumps(metadata or {}),
                worker_id,
                _iso(now),
            ),
        )

    def _delete_dependents(self, conn: sqlite3.Connection, job_ids: List[str]) -> None:
        for batch in _batched(job_ids):
            placeholders = ", ".join("?" for _ in batch)
            for table in ("queue_items", "job_logs", "video_chunks", "jobs"):
                column = "id" if table == "jobs" else "job_id"
                conn.execute(f"DELETE FROM {table} WHERE {column} IN ({placeholders})", batch)

    # ------------------------------------------------------------------
    # Jobs
    # ------------------------------------------------------------------

    def create_job(self, spec: Union[JobSpec, Dict[str, Any], None]) -> Job:
        """Insert a new job in ``pending`` state.

        Args:
            spec: JobSpec or plain dict with at least a title

        Returns:
            The stored Job (already queued if ``initial_stage`` was given)

        Raises:
            ValidationError: If the title is missing or any field is invalid
        """
        if not isinstance(spec, JobSpec):
            try:
                spec = JobSpec(**(spec or {}))
            except PydanticValidationError as e:
                raise ValidationError(f"Invalid job spec: {e}") from e

        job_id = uuid.uuid4().hex

        def _create(conn):
            now = self._now()
            record = {
                "id": job_id,
                "title": spec.title,
                "description": spec.description,
                "owner_id": spec.owner_id,
                "status": JobStatus.PENDING.value,
                "current_stage": (spec.initial_stage or Stage.UPLOAD).value,
                "progress_percentage": 0,
                "stage_progress": json.dumps({}),
                "priority": spec.priority.value,
                "processing_options": json.dumps(spec.processing_options),
                "metadata": json.dumps(spec.metadata),
                "result_data": json.dumps({}),
                "last_error": None,
                "retry_count": 0,
                "created_at": _iso(now),
                "updated_at": _iso(now),
                "started_at": None,
                "completed_at": None,
            }
            columns = ", ".join(record)
            placeholders = ", ".join("?" for _ in record)
            conn.execute(f"INSERT INTO jobs ({columns}) VALUES ({placeholders})", list(record.values()))

            # Job and first item commit together
            if spec.initial_stage is not None:
                self._enqueue_row(conn, record, spec.initial_stage, {}, None, now)
            return self._job_row(conn, job_id)

        job = _row_to_job(self._transaction(_create))
        logger.info("Created job %s (%s)", job_id, spec.title)
        return job

    def get_job(self, job_id: str) -> Optional[Job]:
        def _get():
            try:
                return self.db["jobs"].get(job_id)
            except NotFoundError:
                return None

        row = self._locked(_get)
        return _row_to_job(row) if row else None

    def _require_job(self, job_id: str) -> Job:
        job = self.get_job(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    def list_jobs(self, status: Optional[Union[JobStatus, str]] = None, limit: int = 50) -> List[Job]:
        """List jobs newest first, optionally filtered by status."""
        where, args = None, []
        if status is not None:
            try:
                args = [JobStatus(status).value]
            except ValueError:
                raise ValidationError(f"Unknown job status: {status}") from None
            where = "status = ?"

        rows = self._locked(
            lambda: list(
                self.db["jobs"].rows_where(where, args, order_by="created_at desc", limit=limit)
            )
        )
        return [_row_to_job(r) for r in rows]

    def get_user_jobs(
        self,
        owner_id: Optional[str] = None,
        limit: int = 50,
        status: Optional[Union[JobStatus, str]] = None,
    ) -> List[Job]:
        """List a user's jobs newest first; ``None`` lists anonymous jobs."""
        if owner_id:
            where, args = "owner_id = ?", [owner_id]
        else:
            where, args = "owner_id IS NULL", []
        if status is not None:
            try:
                args.append(JobStatus(status).value)
            except ValueError:
                raise ValidationError(f"Unknown job status: {status}") from None
            where += " AND status = ?"

        rows = self._locked(
            lambda: list(
                self.db["jobs"].rows_where(where, args, order_by="created_at desc", limit=limit)
            )
        )
        return [_row_to_job(r) for r in rows]

    def cancel_job(self, job_id: str) -> Job:
        """Cancel a job and drop its active queue items.

        A worker still executing a dropped item will get ItemNotFoundError
        when it reports back; its outcome is discarded.
        """

        def _cancel(conn):
            now = self._now()
            job = self._job_row(conn, job_id)
            if job["status"] == JobStatus.COMPLETED.value:
                raise ValidationError(f"Job {job_id} already completed")
            if job["status"] == JobStatus.CANCELLED.value:
                return job

            removed = conn.execute(
                "DELETE FROM queue_items WHERE job_id = ? AND status IN (?, ?)",
                (job_id, *_ACTIVE),
            ).rowcount
            conn.execute(
                "UPDATE jobs SET status = ?, completed_at = ?, updated_at = ? WHERE id = ?",
                (JobStatus.CANCELLED.value, _iso(now), _iso(now), job_id),
            )
            self._insert_log(
                conn, job_id, LogLevel.INFO, job["current_stage"],
                "Job cancelled", {"removed_items": removed}, None, now,
            )
            return self._job_row(conn, job_id)

        job = _row_to_job(self._transaction(_cancel))
        logger.info("Cancelled job %s", job_id)
        return job

    def retry_job(self, job_id: str, stage: Optional[Union[Stage, str]] = None) -> QueueItem:
        """Re-open a failed or cancelled job at ``stage`` (default: its current stage)."""
        target = _coerce_stage(stage) if stage is not None else None

        def _retry(conn):
            now = self._now()
            job = self._job_row(conn, job_id)
            if job["status"] not in (JobStatus.FAILED.value, JobStatus.CANCELLED.value):
                raise ValidationError(
                    f"Job {job_id} is not in a retryable state ({job['status']})"
                )
            conn.execute(
                """
                UPDATE jobs
                SET status = ?, progress_percentage = 0, stage_progress = ?, last_error = NULL,
                    started_at = NULL, completed_at = NULL, updated_at = ?
                WHERE id = ?
                """,
                (JobStatus.PENDING.value, json.dumps({}), _iso(now), job_id),
            )
            job["status"] = JobStatus.PENDING.value
            retry_stage = target or Stage(job["current_stage"])
            payload = self._retry_payload(conn, job, retry_stage)
            item = self._enqueue_row(conn, job, retry_stage, payload, None, now)
            self._insert_log(
                conn, job_id, LogLevel.INFO, retry_stage,
                "Job queued for retry",
                {"queue_id": item["id"], "previous_error": job["last_error"]},
                None, now,
            )
            return item

        return _row_to_item(self._transaction(_retry))

    def _retry_payload(
        self, conn: sqlite3.Connection, job: Dict[str, Any], stage: Stage
    ) -> Dict[str, Any]:
        """Rebuild a stage's input from earlier stage results and its last item."""
        payload: Dict[str, Any] = {}
        result_data = _loads(job["result_data"], {})
        for earlier in PIPELINE_STAGES[:PIPELINE_STAGES.index(stage)]:
            if isinstance(result_data.get(earlier.value), dict):
                payload.update(result_data[earlier.value])

        last = self._fetch(
            conn,
            """
            SELECT payload FROM queue_items
            WHERE job_id = ? AND stage = ?
            ORDER BY created_at DESC, rowid DESC
            LIMIT 1
            """,
            (job["id"], stage.value),
        )
        if last:
            payload.update(_loads(last[0]["payload"], {}))
        return payload

    def delete_job(self, job_id: str) -> bool:
        """Delete a job together with its queue items, logs and chunks."""

        def _delete(conn):
            exists = self._fetch(conn, "SELECT id FROM jobs WHERE id = ?", (job_id,))
            if not exists:
                return False
            self._delete_dependents(conn, [job_id])
            return True

        deleted = self._transaction(_delete)
        if deleted:
            logger.info("Deleted job %s", job_id)
        return deleted

    def cleanup_old_jobs(self, days_old: float = 7) -> int:
        """Delete finished jobs created more than ``days_old`` days ago.

        Returns:
            Number of jobs deleted
        """
        if days_old < 0:
            raise ValidationError("days_old must be >= 0")

        def _cleanup(conn):
            cutoff = self._now() - timedelta(days=days_old)
            rows = self._fetch(
                conn,
                "SELECT id FROM jobs WHERE status IN (?, ?, ?) AND created_at < ?",
                (
                    JobStatus.COMPLETED.value,
                    JobStatus.FAILED.value,
                    JobStatus.CANCELLED.value,
                    _iso(cutoff),
                ),
            )
            job_ids = [r["id"] for r in rows]
            if job_ids:
                self._delete_dependents(conn, job_ids)
            return len(job_ids)

        count = self._transaction(_cleanup)
        if count:
            logger.info("Cleaned up %d job(s) older than %s day(s)", count, days_old)
        return count

    # ------------------------------------------------------------------
    # Queue items
    # ------------------------------------------------------------------

    def get_item(self, item_id: str) -> Optional[QueueItem]:
        def _get():
            try:
                return self.db["queue_items"].get(item_id)
            except NotFoundError:
                return None

        row = self._locked(_get)
        return _row_to_item(row) if row else None

    def get_job_items(self, job_id: str) -> List[QueueItem]:
        rows = self._locked(
            lambda: list(
                self.db["queue_items"].rows_where(
                    "job_id = ?", [job_id], order_by="created_at, rowid"
                )
            )
        )
        return [_row_to_item(r) for r in rows]

    def _enqueue_row(
        self,
        conn: sqlite3.Connection,
        job: Dict[str, Any],
        stage: Stage,
        payload: Dict[str, Any],
        priority: Optional[Priority],
        now: datetime,
    ) -> Dict[str, Any]:
        if job["status"] in (JobStatus.COMPLETED.value, JobStatus.CANCELLED.value):
            raise ValidationError(
                f"Job {job['id']} is {job['status']}; cannot enqueue {stage.value}"
            )

        existing = self._fetch(
            conn,
            "SELECT * FROM queue_items WHERE job_id = ? AND stage = ? AND status IN (?, ?)",
            (job["id"], stage.value, *_ACTIVE),
        )
        if existing:
            logger.info(
                "Job %s already has an active %s item (%s); not enqueueing again",
                job["id"], stage.value, existing[0]["id"],
            )
            return existing[0]

        item_priority = priority or Priority(job["priority"])
        item_id = uuid.uuid4().hex
        conn.execute(
            """
            INSERT INTO queue_items
                (id, job_id, stage, payload, priority, priority_rank, status,
                 attempts, max_attempts, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, 0, ?, ?, ?)
            """,
            (
                item_id,
                job["id"],
                stage.value,
                json.dumps(payload),
                item_priority.value,
                item_priority.rank,
                ItemStatus.WAITING.value,
                self.max_attempts,
                _iso(now),
                _iso(now),
            ),
        )
        conn.execute(
            """
            UPDATE jobs
            SET current_stage = ?,
                status = CASE WHEN status = ? THEN status ELSE ? END,
                updated_at = ?
            WHERE id = ?
            """,
            (
                stage.value,
                JobStatus.PROCESSING.value,
                JobStatus.QUEUED.value,
                _iso(now),
                job["id"],
            ),
        )
        return self._item_row(conn, item_id)

    def enqueue_job(
        self,
        job_id: str,
        stage: Union[Stage, str],
        payload: Optional[Dict[str, Any]] = None,
        priority: Union[Priority, str, None] = None,
    ) -> QueueItem:
        """Add a waiting item for ``stage``.

        Idempotency:
        - If the job already has a waiting/claimed item for this stage, that
          item is returned and nothing is inserted
        - Otherwise a new item is inserted and the job moves to this stage

        Raises:
            ValidationError: Unknown stage/priority, missing job, or a job
                that is completed or cancelled
        """
        stage = _coerce_stage(stage)
        item_priority = _coerce_priority(priority) if priority is not None else None
        body = as_payload(payload)

        def _enqueue(conn):
            now = self._now()
            return self._enqueue_row(conn, self._job_row(conn, job_id), stage, body, item_priority, now)

        try:
            row = self._transaction(_enqueue)
        except sqlite3.IntegrityError:
            # Partial unique index caught a concurrent insert; return the winner
            row = self._transaction(_enqueue)
        return _row_to_item(row)

    def claim_next_item(
        self,
        stage: Union[Stage, str],
        worker_id: str,
        lease_seconds: Optional[float] = None,
    ) -> Optional[QueueItem]:
        """Atomically lease the next waiting item for ``stage``.

        Args:
            stage: Pipeline stage to claim from
            worker_id: Unique identifier for the claiming worker
            lease_seconds: Lease length (default: queue's lease_seconds)

        Returns:
            The claimed QueueItem, or None if nothing is claimable

        Ordering: priority (high > normal > low), then FIFO.
        A lost conditional update (ClaimConflict) is retried, never raised.
        """
        stage = _coerce_stage(stage)
        if not worker_id:
            raise ValidationError("worker_id is required to claim")
        lease = self.lease_seconds if lease_seconds is None else float(lease_seconds)
        if lease <= 0:
            raise ValidationError("lease_seconds must be > 0")

        for attempt in range(self.claim_retries):
            try:
                row = self._transaction(lambda conn: self._claim(conn, stage, worker_id, lease))
            except ClaimConflict as e:
                logger.debug("Claim attempt %d lost: %s", attempt + 1, e)
                continue
            return _row_to_item(row) if row else None
        return None

    def _claim(
        self, conn: sqlite3.Connection, stage: Stage, worker_id: str, lease: float
    ) -> Optional[Dict[str, Any]]:
        now = self._now()
        now_iso = _iso(now)

        candidates = self._fetch(
            conn,
            """
            SELECT id FROM queue_items
            WHERE stage = ?
              AND status = ?
              AND worker_id IS NULL
              AND (claim_expires_at IS NULL OR claim_expires_at <= ?)
            ORDER BY priority_rank DESC, created_at ASC, rowid ASC
            LIMIT 1
            """,
            (stage.value, ItemStatus.WAITING.value, now_iso),
        )
        if not candidates:
            return None

        item_id = candidates[0]["id"]
        rows = self._fetch(
            conn,
            """
            UPDATE queue_items
            SET status = ?,
                worker_id = ?,
                claimed_at = ?,
                claim_expires_at = ?,
                updated_at = ?
            WHERE id = ? AND worker_id IS NULL AND status = ?
            RETURNING *
            """,
            (
                ItemStatus.CLAIMED.value,
                worker_id,
                now_iso,
                _iso(now + timedelta(seconds=lease)),
                now_iso,
                item_id,
                ItemStatus.WAITING.value,
            ),
        )
        if not rows:
            raise ClaimConflict(f"Item {item_id} was claimed by another worker")

        conn.execute(
            """
            UPDATE jobs
            SET status = ?,
                current_stage = ?,
                started_at = COALESCE(started_at, ?),
                updated_at = ?
            WHERE id = ?
            """,
            (JobStatus.PROCESSING.value, stage.value, now_iso, now_iso, rows[0]["job_id"]),
        )
        return rows[0]

    def complete_item(
        self,
        item_id: str,
        result_payload: Optional[Dict[str, Any]] = None,
        worker_id: Optional[str] = None,
    ) -> Job:
        """Mark item done and merge its result into ``Job.result_data[stage]``.

        Progress moves up to the stage's share of the pipeline; completing
        the terminal stage completes the job.

        Raises:
            ItemNotFoundError: Unknown item (or dropped by cancellation)
            ItemStateError: Item already done or failed, or no longer
                claimed by ``worker_id`` when one is given
        """
        result = as_payload(result_payload)

        def _complete(conn):
            now = self._now()
            item = self._item_row(conn, item_id)
            if item["status"] in _TERMINAL_ITEM:
                raise ItemStateError(f"Item {item_id} is already {item['status']}")
            _check_holder(item, worker_id)

            conn.execute(
                "UPDATE queue_items SET status = ?, claim_expires_at = NULL, updated_at = ? WHERE id = ?",
                (ItemStatus.DONE.value, _iso(now), item_id),
            )

            job = self._job_row(conn, item["job_id"])
            stage = Stage(item["stage"])
            result_data = _loads(job["result_data"], {})
            previous = result_data.get(stage.value)
            if isinstance(previous, dict):
                result_data[stage.value] = {**previous, **result}
            else:
                result_data[stage.value] = result
            progress = max(job["progress_percentage"] or 0, stage_progress(stage))

            if is_terminal_stage(stage):
                conn.execute(
                    """
                    UPDATE jobs
                    SET result_data = ?, progress_percentage = 100, status = ?,
                        completed_at = ?, updated_at = ?
                    WHERE id = ?
                    """,
                    (
                        json.dumps(result_data),
                        JobStatus.COMPLETED.value,
                        _iso(now),
                        _iso(now),
                        job["id"],
                    ),
                )
            else:
                conn.execute(
                    "UPDATE jobs SET result_data = ?, progress_percentage = ?, updated_at = ? WHERE id = ?",
                    (json.dumps(result_data), progress, _iso(now), job["id"]),
                )
            return self._job_row(conn, job["id"])

        job = _row_to_job(self._transaction(_complete))
        if job.status == JobStatus.COMPLETED:
            logger.info("Job %s completed", job.id)
        return job

    def update_job_progress(
        self,
        job_id: str,
        percentage: float,
        stage_progress: Optional[Dict[str, Any]] = None,
    ) -> Job:
        """Record progress reported while a stage is running.

        ``progress_percentage`` never moves backwards. ``stage_progress``
        entries are merged into the job's map. Finished jobs are returned
        unchanged.

        Raises:
            ValidationError: Percentage outside 0-100, or unknown job
        """
        if isinstance(percentage, bool) or not isinstance(percentage, (int, float)):
            raise ValidationError(f"Progress must be a number, got {percentage!r}")
        if not 0 <= percentage <= 100:
            raise ValidationError(f"Progress must be between 0 and 100, got {percentage}")

        def _update(conn):
            now = self._now()
            job = self._job_row(conn, job_id)
            if job["status"] in (
                JobStatus.COMPLETED.value, JobStatus.FAILED.value, JobStatus.CANCELLED.value
            ):
                return job

            merged = {**_loads(job["stage_progress"], {}), **(stage_progress or {})}
            conn.execute(
                """
                UPDATE jobs
                SET progress_percentage = MAX(COALESCE(progress_percentage, 0), ?),
                    stage_progress = ?, updated_at = ?
                WHERE id = ?
                """,
                (int(percentage), json.dumps(merged), _iso(now), job_id),
            )
            return self._job_row(conn, job_id)

        return _row_to_job(self._transaction(_update))

    def fail_item(
        self, item_id: str, error: str, retry: bool = True, worker_id: Optional[str] = None
    ) -> QueueItem:
        """Record a failed attempt on an item.

        Args:
            item_id: Queue item identifier
            error: Error message (truncated to 500 chars)
            retry: If False, fail immediately regardless of attempts left
            worker_id: If given, the caller must still hold the claim
                (ItemStateError otherwise)

        Retry logic:
        - If retry=True and attempts < max_attempts: back to 'waiting',
          claim cleared, optional cool-down, job back to 'queued'
        - Otherwise: item 'failed' and job 'failed' with last_error
        """
        snippet = (error or "")[:MAX_ERROR_LENGTH]

        def _fail(conn):
            now = self._now()
            item = self._item_row(conn, item_id)
            if item["status"] in _TERMINAL_ITEM:
                raise ItemStateError(f"Item {item_id} is already {item['status']}")
            _check_holder(item, worker_id)

            attempts = item["attempts"] + 1
            if retry and attempts < item["max_attempts"]:
                cooldown = None
                if self.retry_delay_seconds > 0:
                    cooldown = _iso(now + timedelta(seconds=self.retry_delay_seconds))
                conn.execute(
                    """
                    UPDATE queue_items
                    SET status = ?, worker_id = NULL, claimed_at = NULL,
                        claim_expires_at = ?, attempts = ?, last_error = ?, updated_at = ?
                    WHERE id = ?
                    """,
                    (ItemStatus.WAITING.value, cooldown, attempts, snippet, _iso(now), item_id),
                )
                conn.execute(
                    """
                    UPDATE jobs
                    SET status = ?, last_error = ?, retry_count = retry_count + 1, updated_at = ?
                    WHERE id = ? AND status NOT IN (?, ?)
                    """,
                    (
                        JobStatus.QUEUED.value,
                        snippet,
                        _iso(now),
                        item["job_id"],
                        JobStatus.COMPLETED.value,
                        JobStatus.CANCELLED.value,
                    ),
                )
            else:
                conn.execute(
                    """
                    UPDATE queue_items
                    SET status = ?, claim_expires_at = NULL, attempts = ?,
                        last_error = ?, updated_at = ?
                    WHERE id = ?
                    """,
                    (ItemStatus.FAILED.value, attempts, snippet, _iso(now), item_id),
                )
                conn.execute(
                    """
                    UPDATE jobs
                    SET status = ?, last_error = ?, retry_count = retry_count + 1,
                        completed_at = ?, updated_at = ?
                    WHERE id = ?
                    """,
                    (JobStatus.FAILED.value, snippet, _iso(now), _iso(now), item["job_id"]),
                )
            return self._item_row(conn, item_id)

        item = _row_to_item(self._transaction(_fail))
        if item.status == ItemStatus.FAILED:
            logger.warning(
                "Job %s failed at stage %s after %d attempt(s): %s",
                item.job_id, item.stage.value, item.attempts, snippet,
            )
        return item

    def _release_row(
        self,
        conn: sqlite3.Connection,
        item_id: str,
        job_id: str,
        now: datetime,
        delay_seconds: float,
        expected_worker: Optional[str] = None,
    ) -> bool:
        sql = """
            UPDATE queue_items
            SET status = ?, worker_id = NULL, claimed_at = NULL,
                claim_expires_at = ?, updated_at = ?
            WHERE id = ?
        """
        params = [
            ItemStatus.WAITING.value,
            _iso(now + timedelta(seconds=delay_seconds)),
            _iso(now),
            item_id,
        ]
        if expected_worker is not None:
            sql += " AND worker_id = ?"
            params.append(expected_worker)

        if conn.execute(sql, params).rowcount != 1:
            return False

        conn.execute(
            "UPDATE jobs SET status = ?, updated_at = ? WHERE id = ? AND status = ?",
            (JobStatus.QUEUED.value, _iso(now), job_id, JobStatus.PROCESSING.value),
        )
        return True

    def release_job_claim(self, item_id: str, delay_seconds: float = 0) -> QueueItem:
        """Drop a claim without counting an attempt.

        The item goes back to 'waiting' with ``claim_expires_at`` set
        ``delay_seconds`` ahead as a cool-down before it can be re-claimed.
        """
        if delay_seconds < 0:
            raise ValidationError("delay_seconds must be >= 0")

        def _release(conn):
            now = self._now()
            item = self._item_row(conn, item_id)
            if item["status"] in _TERMINAL_ITEM:
                raise ItemStateError(f"Item {item_id} is already {item['status']}")
            self._release_row(conn, item_id, item["job_id"], now, delay_seconds)
            return self._item_row(conn, item_id)

        return _row_to_item(self._transaction(_release))

    def recover_stuck_jobs(self, stuck_minutes: float = 10) -> int:
        """Crash recovery: release claims abandoned by dead or hung workers.

        Args:
            stuck_minutes: Also treat claims older than this as stuck, even
                if their lease has not expired yet

        Returns:
            Count of released items

        Logic:
        - An item is stuck if it is claimed (worker_id set) and
          1. its lease expired (claim_expires_at < now), OR
          2. it was claimed more than ``stuck_minutes`` ago
        - Released items return to 'waiting' without incrementing attempts
        - Each release is conditional on the same worker still holding it
        - A 'warn' LogEntry is appended per released item
        """
        if stuck_minutes < 0:
            raise ValidationError("stuck_minutes must be >= 0")

        def _recover(conn):
            now = self._now()
            now_iso = _iso(now)
            cutoff = _iso(now - timedelta(minutes=stuck_minutes))
            stuck = self._fetch(
                conn,
                """
                SELECT id, job_id, stage, worker_id, claimed_at, claim_expires_at
                FROM queue_items
                WHERE status = ?
                  AND worker_id IS NOT NULL
                  AND (claim_expires_at < ? OR claimed_at < ?)
                """,
                (ItemStatus.CLAIMED.value, now_iso, cutoff),
            )

            recovered = 0
            for row in stuck:
                if not self._release_row(
                    conn, row["id"], row["job_id"], now, 0, expected_worker=row["worker_id"]
                ):
                    continue
                expired = row["claim_expires_at"] is not None and row["claim_expires_at"] < now_iso
                self._insert_log(
                    conn,
                    row["job_id"],
                    LogLevel.WARN,
                    row["stage"],
                    f"Recovered stuck item: {LeaseExpired(row['id'], row['worker_id'])}",
                    {
                        "queue_id": row["id"],
                        "worker_id": row["worker_id"],
                        "claimed_at": row["claimed_at"],
                        "claim_expires_at": row["claim_expires_at"],
                        "reason": "lease_expired" if expired else "claim_too_old",
                        "stuck_minutes": stuck_minutes,
                    },
                    None,
                    now,
                )
                recovered += 1
            return recovered

        count = self._transaction(_recover)
        if count:
            logger.warning("Recovered %d stuck queue item(s)", count)
        return count

    def recover_job(self, job_id: str, delay_seconds: float = 5) -> int:
        """Manually release every claimed item of one job.

        Returns:
            Number of released items (0 means the job was not stuck)
        """
        if delay_seconds < 0:
            raise ValidationError("delay_seconds must be >= 0")

        def _recover_job(conn):
            now = self._now()
            job = self._job_row(conn, job_id)
            claimed = self._fetch(
                conn,
                "SELECT id, worker_id FROM queue_items WHERE job_id = ? AND status = ? AND worker_id IS NOT NULL",
                (job_id, ItemStatus.CLAIMED.value),
            )
            released = 0
            for row in claimed:
                if self._release_row(
                    conn, row["id"], job_id, now, delay_seconds, expected_worker=row["worker_id"]
                ):
                    released += 1
            if released:
                self._insert_log(
                    conn, job_id, LogLevel.WARN, job["current_stage"],
                    "Job manually recovered from stuck state",
                    {"recovered_by": "manual_recovery", "items": released, "delay_seconds": delay_seconds},
                    None, now,
                )
            return released

        released = self._transaction(_recover_job)
        if released:
            logger.warning("Manually recovered job %s (%d item(s))", job_id, released)
        return released

    # ------------------------------------------------------------------
    # Logs
    # ------------------------------------------------------------------

    def add_log(
        self,
        job_id: str,
        level: Union[LogLevel, str],
        stage: Union[Stage, str],
        message: str,
        metadata: Optional[Dict[str, Any]] = None,
        worker_id: Optional[str] = None,
    ) -> LogEntry:
        """Append a log entry to a job's trail."""
        record = {
            "job_id": job_id,
            "level": _coerce_level(level).value,
            "stage": _coerce_stage(stage).value,
            "message": message,
            "metadata": json.dumps(metadata or {}),
            "worker_id": worker_id,
            "timestamp": _iso(self._now()),
        }

        def _add():
            table = self.db["job_logs"]
            table.insert(record)
            return table.last_rowid

        log_id = self._locked(_add)
        return _row_to_log({**record, "id": log_id})

    def get_job_logs(
        self, job_id: str, limit: int = 100, level: Union[LogLevel, str, None] = None
    ) -> List[LogEntry]:
        """Return a job's log entries, newest first."""
        where, args = "job_id = ?", [job_id]
        if level is not None:
            where += " AND level = ?"
            args.append(_coerce_level(level).value)

        rows = self._locked(
            lambda: list(self.db["job_logs"].rows_where(where, args, order_by="id desc", limit=limit))
        )
        return [_row_to_log(r) for r in rows]

    # ------------------------------------------------------------------
    # Video chunks
    # ------------------------------------------------------------------

    def add_video_chunks(
        self, job_id: str, chunks: Iterable[Union[VideoChunk, Dict[str, Any]]]
    ) -> List[VideoChunk]:
        """Record stored chunks for a job.

        Raises:
            ValidationError: Invalid chunk data or duplicate chunk_index
        """
        self._require_job(job_id)

        models = []
        for chunk in chunks:
            try:
                models.append(chunk if isinstance(chunk, VideoChunk) else VideoChunk(**chunk))
            except PydanticValidationError as e:
                raise ValidationError(f"Invalid video chunk: {e}") from e

        now = _iso(self._now())
        records = []
        for model in models:
            data = model.model_dump(exclude={"id", "job_id", "created_at", "updated_at"})
            data["analysis_result"] = (
                json.dumps(data["analysis_result"]) if data["analysis_result"] is not None else None
            )
            data["uploaded"] = int(data["uploaded"])
            data["processed"] = int(data["processed"])
            records.append(
                {"id": uuid.uuid4().hex, "job_id": job_id, **data, "created_at": now, "updated_at": now}
            )

        try:
            self._locked(lambda: self.db["video_chunks"].insert_all(records))
        except sqlite3.IntegrityError as e:
            raise ValidationError(f"Duplicate chunk index for job {job_id}: {e}") from e

        return [_row_to_chunk(r) for r in records]

    def get_video_chunks(self, job_id: str) -> List[VideoChunk]:
        rows = self._locked(
            lambda: list(
                self.db["video_chunks"].rows_where("job_id = ?", [job_id], order_by="chunk_index")
            )
        )
        return [_row_to_chunk(r) for r in rows]

    def update_video_chunk(self, chunk_id: str, **updates: Any) -> VideoChunk:
        """Update upload/processing state of a chunk."""
        unknown = set(updates) - _CHUNK_UPDATABLE
        if unknown:
            raise ValidationError(f"Cannot update chunk fields: {', '.join(sorted(unknown))}")

        values = dict(updates)
        if "analysis_result" in values and values["analysis_result"] is not None:
            values["analysis_result"] = json.dumps(values["analysis_result"])
        for flag in ("uploaded", "processed"):
            if flag in values:
                values[flag] = int(bool(values[flag]))
        values["updated_at"] = _iso(self._now())

        def _update():
            table = self.db["video_chunks"]
            try:
                table.update(chunk_id, values)
            except NotFoundError:
                raise ValidationError(f"Video chunk not found: {chunk_id}") from None
            return table.get(chunk_id)

        return _row_to_chunk(self._locked(_update))

    # ------------------------------------------------------------------
    # Stats
    # ------------------------------------------------------------------

    def get_queue_stats(self) -> QueueStats:
        """Aggregate per-stage item counts and the job status distribution."""

        def _stats():
            conn = self.db.conn
            now_iso = _iso(self._now())
            stats = QueueStats(
                by_stage={s.value: StageCounts() for s in PIPELINE_STAGES},
                by_priority={p.value: 0 for p in Priority},
                jobs_by_status={s.value: 0 for s in JobStatus},
            )

            for row in self._fetch(
                conn, "SELECT stage, status, COUNT(*) AS n FROM queue_items GROUP BY stage, status"
            ):
                counts = stats.by_stage.setdefault(row["stage"], StageCounts())
                setattr(counts, row["status"], row["n"])

            for row in self._fetch(
                conn,
                "SELECT priority, COUNT(*) AS n FROM queue_items WHERE status IN (?, ?) GROUP BY priority",
                _ACTIVE,
            ):
                stats.by_priority[row["priority"]] = row["n"]

            for row in self._fetch(conn, "SELECT status, COUNT(*) AS n FROM jobs GROUP BY status"):
                stats.jobs_by_status[row["status"]] = row["n"]

            stats.claimed = sum(c.claimed for c in stats.by_stage.values())
            stats.total_active = stats.claimed + sum(c.waiting for c in stats.by_stage.values())
            stats.pending_retry = self._fetch(
                conn,
                "SELECT COUNT(*) AS n FROM queue_items WHERE status = ? AND claim_expires_at > ?",
                (ItemStatus.WAITING.value, now_iso),
            )[0]["n"]
            stats.expired_claims = self._fetch(
                conn,
                "SELECT COUNT(*) AS n FROM queue_items WHERE status = ? AND claim_expires_at < ?",
                (ItemStatus.CLAIMED.value, now_iso),
            )[0]["n"]
            return stats

        return self._locked(_stats)
