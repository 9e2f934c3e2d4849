"""Pydantic models for job queue data structures.

This module defines the type-safe models used throughout the queue system.
All models use Pydantic for validation and serialization.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator


class Stage(str, Enum):
    """Pipeline stages, declared in execution order."""

    UPLOAD = "upload"
    SPLIT_CHUNKS = "split_chunks"
    STORE_CHUNKS = "store_chunks"
    QUEUE_ANALYSIS = "queue_analysis"
    AI_ANALYSIS = "ai_analysis"
    ASSEMBLE_TIMELINE = "assemble_timeline"
    RENDER_VIDEO = "render_video"


PIPELINE_STAGES = tuple(Stage)


def next_stage(stage: Stage) -> Optional[Stage]:
    """Return the stage after ``stage``, or None for the terminal stage."""
    index = PIPELINE_STAGES.index(Stage(stage))
    if index + 1 < len(PIPELINE_STAGES):
        return PIPELINE_STAGES[index + 1]
    return None


def is_terminal_stage(stage: Stage) -> bool:
    return Stage(stage) == PIPELINE_STAGES[-1]


def stage_progress(stage: Stage) -> int:
    """Overall job progress (0-100) reached once ``stage`` completes."""
    index = PIPELINE_STAGES.index(Stage(stage))
    return round(100 * (index + 1) / len(PIPELINE_STAGES))


def as_payload(value: Any) -> Dict[str, Any]:
    """Normalise a handler result into a JSON object payload."""
    if value is None:
        return {}
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if isinstance(value, dict):
        return dict(value)
    return {"result": value}


class Priority(str, Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"

    @property
    def rank(self) -> int:
        """Dispatch rank, higher is claimed first."""
        return _PRIORITY_RANK[self]


_PRIORITY_RANK = {Priority.LOW: 0, Priority.NORMAL: 1, Priority.HIGH: 2}


class JobStatus(str, Enum):
    """Job lifecycle states.

    State transitions:
        pending → queued        (first stage enqueued)
        queued → processing     (worker claims an item)
        processing → queued     (retry scheduled, claim released)
        processing → completed  (terminal stage done)
        processing → failed     (max attempts exhausted)
        * → cancelled           (operator cancel)
        failed/cancelled → queued (manual retry)
    """

    PENDING = "pending"
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_JOB_STATUSES = (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED)


class ItemStatus(str, Enum):
    WAITING = "waiting"  # Claimable once any cool-down has passed
    CLAIMED = "claimed"  # Leased to a worker
    DONE = "done"
    FAILED = "failed"


ACTIVE_ITEM_STATUSES = (ItemStatus.WAITING, ItemStatus.CLAIMED)


class LogLevel(str, Enum):
    INFO = "info"
    WARN = "warn"
    ERROR = "error"


class JobSpec(BaseModel):
    """Input for creating a job."""

    title: str = Field(..., min_length=1, description="Human readable job title")
    description: Optional[str] = Field(default=None)
    owner_id: Optional[str] = Field(default=None, description="Owning user, None for anonymous")
    priority: Priority = Field(default=Priority.NORMAL)
    processing_options: Dict[str, Any] = Field(default_factory=dict)
    metadata: Dict[str, Any] = Field(default_factory=dict)
    initial_stage: Optional[Stage] = Field(
        default=None, description="Enqueue this stage immediately after creation"
    )

    @field_validator("title")
    @classmethod
    def title_not_blank(cls, v: str) -> str:
        """Reject titles that are only whitespace."""
        if not v.strip():
            raise ValueError("title must not be blank")
        return v.strip()


class Job(BaseModel):
    """A user-initiated unit of pipeline work tracked end-to-end."""

    id: str = Field(..., description="Job identifier (UUID hex)")
    title: str
    description: Optional[str] = None
    owner_id: Optional[str] = None
    status: JobStatus = Field(default=JobStatus.PENDING)
    current_stage: Stage = Field(default=Stage.UPLOAD)
    progress_percentage: int = Field(default=0, ge=0, le=100)
    stage_progress: Dict[str, Any] = Field(
        default_factory=dict, description="In-stage progress reported by handlers, keyed by stage"
    )
    priority: Priority = Field(default=Priority.NORMAL)
    processing_options: Dict[str, Any] = Field(default_factory=dict)
    metadata: Dict[str, Any] = Field(default_factory=dict)
    result_data: Dict[str, Any] = Field(
        default_factory=dict, description="Per-stage outputs keyed by stage name"
    )
    last_error: Optional[str] = None
    retry_count: int = Field(default=0, ge=0)
    created_at: datetime
    updated_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_JOB_STATUSES


class QueueItem(BaseModel):
    """A unit of work for one job at one stage, with claim/lease metadata."""

    id: str
    job_id: str
    stage: Stage
    payload: Dict[str, Any] = Field(default_factory=dict)
    priority: Priority = Field(default=Priority.NORMAL)
    status: ItemStatus = Field(default=ItemStatus.WAITING)
    worker_id: Optional[str] = Field(default=None, description="Worker holding the claim")
    claimed_at: Optional[datetime] = None
    claim_expires_at: Optional[datetime] = Field(
        default=None, description="Lease deadline (claimed) or cool-down deadline (waiting)"
    )
    attempts: int = Field(default=0, ge=0)
    max_attempts: int = Field(default=3, ge=1)
    last_error: Optional[str] = None
    created_at: datetime
    updated_at: Optional[datetime] = None

    def is_claimed(self, now: datetime) -> bool:
        """True while a worker holds an unexpired lease."""
        return (
            self.worker_id is not None
            and self.claim_expires_at is not None
            and self.claim_expires_at > now
        )


class LogEntry(BaseModel):
    """Append-only diagnostic record for a job."""

    id: Optional[int] = Field(default=None, description="Auto-increment ID")
    job_id: str
    level: LogLevel
    stage: Stage
    message: str
    metadata: Dict[str, Any] = Field(default_factory=dict)
    worker_id: Optional[str] = None
    timestamp: datetime


class VideoChunk(BaseModel):
    """One stored segment of a job's source video."""

    id: Optional[str] = None
    job_id: Optional[str] = None
    chunk_index: int = Field(..., ge=0)
    chunk_name: str = Field(..., min_length=1)
    storage_path: str = Field(..., min_length=1)
    storage_url: Optional[str] = None
    start_time: float = Field(..., ge=0.0)
    end_time: float = Field(..., ge=0.0)
    duration: float = Field(..., ge=0.0)
    file_size: int = Field(..., ge=0)
    uploaded: bool = False
    processed: bool = False
    analysis_result: Optional[Dict[str, Any]] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class StageCounts(BaseModel):
    waiting: int = 0
    claimed: int = 0
    done: int = 0
    failed: int = 0


class QueueStats(BaseModel):
    """Aggregate view of the queue table and job statuses."""

    by_stage: Dict[str, StageCounts] = Field(default_factory=dict)
    by_priority: Dict[str, int] = Field(default_factory=dict)
    jobs_by_status: Dict[str, int] = Field(default_factory=dict)
    total_active: int = 0
    claimed: int = 0
    pending_retry: int = 0
    expired_claims: int = 0
    stages: List[str] = Field(default_factory=lambda: [s.value for s in PIPELINE_STAGES])
