"""Multi-stage job queue, stage workers and worker pool."""

from .backends import QueueBackend
from .errors import (
    ClaimConflict,
    HandlerError,
    ItemNotFoundError,
    ItemStateError,
    JobNotFoundError,
    LeaseExpired,
    PermanentHandlerError,
    PoolStateError,
    QueueError,
    StoreError,
    UnknownStageError,
    ValidationError,
    WorkerNotFoundError,
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
    VideoChunk,
    next_stage,
)
from .pool import SystemHealth, WorkerPoolManager, WorkerStatus
from .sqlite_backend import SQLiteJobQueue
from .stages import (
    StageRegistry,
    default_registry,
    load_handler,
    passthrough_handler,
    progress_reporter,
    report_progress,
)
from .worker import StageWorker, WorkerRecord, WorkerState

__all__ = [
    "QueueBackend",
    "SQLiteJobQueue",
    "StageWorker",
    "WorkerRecord",
    "WorkerState",
    "WorkerPoolManager",
    "WorkerStatus",
    "SystemHealth",
    "StageRegistry",
    "default_registry",
    "load_handler",
    "passthrough_handler",
    "progress_reporter",
    "report_progress",
    "PIPELINE_STAGES",
    "Stage",
    "Priority",
    "JobStatus",
    "ItemStatus",
    "LogLevel",
    "Job",
    "JobSpec",
    "QueueItem",
    "LogEntry",
    "VideoChunk",
    "QueueStats",
    "next_stage",
    "QueueError",
    "ValidationError",
    "JobNotFoundError",
    "UnknownStageError",
    "ItemNotFoundError",
    "ItemStateError",
    "ClaimConflict",
    "LeaseExpired",
    "HandlerError",
    "PermanentHandlerError",
    "StoreError",
    "WorkerNotFoundError",
    "PoolStateError",
]
