from __future__ import annotations

"""Abstract base class for the job queue backend.

This module defines the interface that workers and the pool depend on. The
SQLite implementation is the only one shipped; the abstraction keeps
workers independent of the store so a server database backend can be
dropped in without touching the worker loop.
"""

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any, Dict, List, Optional

if TYPE_CHECKING:
    from .models import Job, JobSpec, LogEntry, LogLevel, Priority, QueueItem, Stage


class QueueBackend(ABC):
    """Abstract job queue interface.

    Implementations must provide:
    - Atomic claim (concurrent callers never both win the same item)
    - At most one waiting/claimed item per (job, stage)
    - Crash recovery via recover_stuck_jobs()
    - An append-only log trail per job
    """

    @abstractmethod
    def create_job(self, spec: "JobSpec | Dict[str, Any]") -> "Job":
        """Insert a new job in ``pending`` state.

        Raises:
            ValidationError: If required fields are missing or invalid
        """
        pass

    @abstractmethod
    def get_job(self, job_id: str) -> Optional["Job"]:
        pass

    @abstractmethod
    def enqueue_job(
        self,
        job_id: str,
        stage: "Stage | str",
        payload: Optional[Dict[str, Any]] = None,
        priority: "Priority | str | None" = None,
    ) -> "QueueItem":
        """Add a waiting item for ``stage``.

        Implementation notes:
        - Must be idempotent: if an active item already exists for the same
          (job, stage), return it instead of inserting a second one
        - Sets the job's current_stage, and status to queued unless processing
        """
        pass

    @abstractmethod
    def claim_next_item(
        self, stage: "Stage | str", worker_id: str, lease_seconds: Optional[float] = None
    ) -> Optional["QueueItem"]:
        """Atomically lease the next waiting item for ``stage``.

        Implementation notes:
        - MUST be safe under concurrent callers (conditional update)
        - Should respect priority (high first) then FIFO order
        - Returns None when nothing is claimable
        """
        pass

    @abstractmethod
    def complete_item(
        self,
        item_id: str,
        result_payload: Optional[Dict[str, Any]] = None,
        worker_id: Optional[str] = None,
    ) -> "Job":
        """Mark item done and fold its result into the job.

        With ``worker_id``, a worker whose claim was recovered and handed to
        another worker MUST be rejected (ItemStateError).
        """
        pass

    @abstractmethod
    def fail_item(
        self, item_id: str, error: str, retry: bool = True, worker_id: Optional[str] = None
    ) -> "QueueItem":
        """Record a failed attempt.

        Implementation notes:
        - With worker_id, reject callers that no longer hold the claim
        - If retry=True and attempts < max_attempts: back to 'waiting'
        - Otherwise: item and job become 'failed'
        """
        pass

    @abstractmethod
    def update_job_progress(
        self, job_id: str, percentage: float, stage_progress: Optional[Dict[str, Any]] = None
    ) -> "Job":
        """Record in-stage progress; the percentage never decreases."""
        pass

    @abstractmethod
    def release_job_claim(self, item_id: str, delay_seconds: float = 0) -> "QueueItem":
        """Drop a claim without counting an attempt."""
        pass

    @abstractmethod
    def recover_stuck_jobs(self, stuck_minutes: float = 10) -> int:
        """Release claims whose lease expired or that are older than the threshold.

        Returns:
            Count of released items
        """
        pass

    @abstractmethod
    def add_log(
        self,
        job_id: str,
        level: "LogLevel | str",
        stage: "Stage | str",
        message: str,
        metadata: Optional[Dict[str, Any]] = None,
        worker_id: Optional[str] = None,
    ) -> "LogEntry":
        pass

    @abstractmethod
    def get_job_logs(self, job_id: str, limit: int = 100) -> List["LogEntry"]:
        pass
