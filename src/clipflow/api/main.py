from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Literal, Optional

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from clipflow.models import ClipflowConfig
from clipflow.queue import (
    ItemNotFoundError,
    ItemStateError,
    JobNotFoundError,
    PoolStateError,
    QueueError,
    SQLiteJobQueue,
    StoreError,
    ValidationError,
    WorkerNotFoundError,
    WorkerPoolManager,
)

logger = logging.getLogger(__name__)

# First match wins, so subclasses come before their bases
ERROR_STATUS = [
    (JobNotFoundError, status.HTTP_404_NOT_FOUND),
    (ItemNotFoundError, status.HTTP_404_NOT_FOUND),
    (WorkerNotFoundError, status.HTTP_404_NOT_FOUND),
    (ItemStateError, status.HTTP_409_CONFLICT),
    (PoolStateError, status.HTTP_409_CONFLICT),
    (ValidationError, status.HTTP_400_BAD_REQUEST),
    (StoreError, status.HTTP_503_SERVICE_UNAVAILABLE),
]


def _status_for(exc: QueueError) -> int:
    for cls, code in ERROR_STATUS:
        if isinstance(exc, cls):
            return code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


# --- Pydantic Models for Requests ---
class WorkerAction(BaseModel):
    action: Literal["start", "stop", "restart", "add"]
    stage: Optional[str] = None


class RetryRequest(BaseModel):
    stage: Optional[str] = None


class RecoverRequest(BaseModel):
    job_id: Optional[str] = None
    stuck_minutes: Optional[float] = Field(default=None, ge=0.0)


class CleanupRequest(BaseModel):
    days_old: float = Field(default=7, ge=0.0)


class ChunksCreate(BaseModel):
    chunks: list[dict] = Field(..., min_length=1)


def create_app(
    queue: SQLiteJobQueue,
    pool: WorkerPoolManager,
    config: Optional[ClipflowConfig] = None,
) -> FastAPI:
    """Build the administrative API around an existing queue and pool.

    The pool is started on server startup when ``config.api.start_workers``
    is set, and always stopped on shutdown.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if config is not None and config.api.start_workers and not pool.is_running:
            pool.start()
        yield
        if pool.is_running:
            pool.stop()

    app = FastAPI(title="clipflow", lifespan=lifespan)
    app.state.queue = queue
    app.state.pool = pool
    app.state.config = config

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # For dev
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(QueueError)
    async def queue_error_handler(request: Request, exc: QueueError):
        code = _status_for(exc)
        if code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc)
        return JSONResponse(
            status_code=code,
            content={"detail": {"code": exc.code, "message": str(exc)}},
        )

    def _job_or_404(job_id: str):
        job = queue.get_job(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    def _health() -> dict:
        return pool.get_system_health().model_dump(mode="json", by_alias=True)

    # --- HEALTH ---
    @app.get("/health")
    def health_check():
        return {"status": "ok", "poolRunning": pool.is_running}

    # --- WORKER ENDPOINTS ---
    @app.get("/workers")
    def list_workers():
        return {
            "health": _health(),
            "workers": [
                s.model_dump(mode="json", by_alias=True) for s in pool.get_worker_statuses()
            ],
        }

    @app.post("/workers")
    def control_workers(data: WorkerAction):
        """Start, stop or restart the pool, or add one worker to a stage."""
        if data.action == "start":
            started = pool.start()
            return {"action": "start", "workers": started, "health": _health()}
        if data.action == "stop":
            pool.stop()
            return {"action": "stop", "health": _health()}
        if data.action == "restart":
            pool.stop()
            started = pool.start()
            return {"action": "restart", "workers": started, "health": _health()}

        if not data.stage:
            raise ValidationError("stage is required to add a worker")
        worker_id = pool.add_worker(data.stage)
        return {"action": "add", "workerId": worker_id, "health": _health()}

    @app.get("/workers/{worker_id}")
    def get_worker(worker_id: str):
        return pool.get_worker_details(worker_id).model_dump(mode="json", by_alias=True)

    @app.post("/workers/{worker_id}/restart")
    def restart_worker(worker_id: str):
        pool.restart_worker(worker_id)
        return pool.get_worker_details(worker_id).model_dump(mode="json", by_alias=True)

    @app.delete("/workers/{worker_id}")
    def remove_worker(worker_id: str, wait: bool = True):
        stopped = pool.remove_worker(worker_id, wait=wait)
        return {"status": "removed", "workerId": worker_id, "stopped": stopped}

    # --- JOB ENDPOINTS ---
    @app.get("/jobs")
    def list_jobs(owner_id: Optional[str] = None, status: Optional[str] = None, limit: int = 50):
        """List jobs, most recent first."""
        if owner_id:
            jobs = queue.get_user_jobs(owner_id, limit=limit, status=status)
        else:
            jobs = queue.list_jobs(status=status, limit=limit)
        return [j.model_dump(mode="json") for j in jobs]

    @app.post("/jobs", status_code=201)
    def create_job(data: dict):
        """Create a job. Set ``initial_stage`` to enqueue it immediately."""
        job = queue.create_job(data)
        return job.model_dump(mode="json")

    @app.post("/jobs/recover")
    def recover_jobs(data: RecoverRequest):
        """Recover one job by ID, or sweep every stuck claim."""
        if data.job_id:
            released = queue.recover_job(data.job_id)
            return {
                "jobId": data.job_id,
                "recovered": released,
                "message": "Job recovered" if released else "Job was not stuck",
            }

        minutes = data.stuck_minutes if data.stuck_minutes is not None else pool.stuck_minutes
        recovered = queue.recover_stuck_jobs(minutes)
        return {"recovered": recovered, "stuckMinutes": minutes}

    @app.get("/jobs/{job_id}")
    def get_job(job_id: str):
        job = _job_or_404(job_id)
        return {
            **job.model_dump(mode="json"),
            "items": [i.model_dump(mode="json") for i in queue.get_job_items(job_id)],
        }

    @app.delete("/jobs/{job_id}")
    def delete_job(job_id: str):
        if not queue.delete_job(job_id):
            raise JobNotFoundError(job_id)
        return {"status": "deleted", "id": job_id}

    @app.post("/jobs/{job_id}/cancel")
    def cancel_job(job_id: str):
        return queue.cancel_job(job_id).model_dump(mode="json")

    @app.post("/jobs/{job_id}/retry")
    def retry_job(job_id: str, data: Optional[RetryRequest] = None):
        """Re-open a failed or cancelled job."""
        item = queue.retry_job(job_id, stage=data.stage if data else None)
        return {
            "job": queue.get_job(job_id).model_dump(mode="json"),
            "item": item.model_dump(mode="json"),
        }

    @app.get("/jobs/{job_id}/logs")
    def get_job_logs(job_id: str, limit: int = 100, level: Optional[str] = None):
        _job_or_404(job_id)
        return [e.model_dump(mode="json") for e in queue.get_job_logs(job_id, limit=limit, level=level)]

    @app.get("/jobs/{job_id}/items")
    def get_job_items(job_id: str):
        _job_or_404(job_id)
        return [i.model_dump(mode="json") for i in queue.get_job_items(job_id)]

    @app.get("/jobs/{job_id}/chunks")
    def get_chunks(job_id: str):
        _job_or_404(job_id)
        return [c.model_dump(mode="json") for c in queue.get_video_chunks(job_id)]

    @app.post("/jobs/{job_id}/chunks", status_code=201)
    def add_chunks(job_id: str, data: ChunksCreate):
        chunks = queue.add_video_chunks(job_id, data.chunks)
        return [c.model_dump(mode="json") for c in chunks]

    # --- QUEUE ENDPOINTS ---
    @app.get("/queue/stats")
    def queue_stats():
        return {"queue": queue.get_queue_stats().model_dump(mode="json"), "workers": _health()}

    @app.post("/queue/cleanup")
    def cleanup(data: CleanupRequest):
        deleted = queue.cleanup_old_jobs(data.days_old)
        return {"deleted": deleted, "daysOld": data.days_old}

    return app
