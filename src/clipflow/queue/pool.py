"""Worker pool manager.

Owns the set of live StageWorkers (one thread each), resizes it at runtime,
reports health, and runs the periodic stuck-item sweep that hands
abandoned claims back to the queue.
"""

import logging
import threading
from datetime import datetime, timezone
from typing import Dict, List, Mapping, Optional, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from .backends import QueueBackend
from .errors import PoolStateError, StoreError, ValidationError, WorkerNotFoundError
from .models import PIPELINE_STAGES, Stage
from .stages import StageRegistry
from .worker import StageWorker, WorkerState

logger = logging.getLogger(__name__)

# Workers per stage when nothing is configured
DEFAULT_WORKER_COUNTS: Dict[str, int] = {
    Stage.UPLOAD.value: 2,
    Stage.SPLIT_CHUNKS.value: 1,  # CPU heavy, one at a time
    Stage.STORE_CHUNKS.value: 3,
    Stage.QUEUE_ANALYSIS.value: 1,
    Stage.AI_ANALYSIS.value: 2,
    Stage.ASSEMBLE_TIMELINE.value: 1,
    Stage.RENDER_VIDEO.value: 1,
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class WorkerStatus(BaseModel):
    """Snapshot of one worker for health reporting."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    worker_id: str
    stage: Stage
    running: bool
    healthy: bool
    state: WorkerState
    started_at: Optional[datetime] = None
    uptime_s: float = 0.0
    last_poll_at: Optional[datetime] = None
    consecutive_failures: int = 0
    jobs_processed: int = 0
    jobs_failed: int = 0
    current_item_id: Optional[str] = None
    last_error: Optional[str] = None


class SystemHealth(BaseModel):
    """Pool-wide health summary."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    total_workers: int = 0
    running_workers: int = 0
    healthy_workers: int = 0
    workers_by_stage: Dict[str, int] = Field(default_factory=dict)
    system_uptime: float = Field(default=0.0, description="Seconds since the pool started")
    last_health_check: datetime


class WorkerPoolManager:
    """Supervises per-stage worker threads and the recovery sweep.

    The manager is an ordinary object: build one, hand it to the API or
    CLI, and stop it on shutdown.
    """

    def __init__(
        self,
        queue: QueueBackend,
        registry: StageRegistry,
        *,
        worker_counts: Optional[Mapping[str, int]] = None,
        lease_seconds: Optional[float] = None,
        poll_interval_s: float = 1.0,
        health_window_s: float = 60.0,
        recovery_interval_s: float = 60.0,
        stuck_minutes: float = 10.0,
    ):
        """Create a stopped pool.

        Args:
            queue: Job queue service shared by all workers
            registry: Stage handlers
            worker_counts: Default workers per stage for start()
            lease_seconds: Claim lease passed to workers (default: queue's)
            poll_interval_s: Worker idle poll interval
            health_window_s: A worker that polled within this window is healthy
            recovery_interval_s: Period of the stuck-item sweep (<= 0 disables it)
            stuck_minutes: Staleness threshold passed to recover_stuck_jobs
        """
        self.queue = queue
        self.registry = registry
        self.worker_counts = dict(worker_counts if worker_counts is not None else DEFAULT_WORKER_COUNTS)
        self.lease_seconds = lease_seconds
        self.poll_interval_s = poll_interval_s
        self.health_window_s = health_window_s
        self.recovery_interval_s = recovery_interval_s
        self.stuck_minutes = stuck_minutes

        self._workers: Dict[str, StageWorker] = {}
        self._sequence: Dict[Stage, int] = {}
        self._lock = threading.RLock()
        self._running = False
        self._started_at: Optional[datetime] = None
        self._sweep_stop = threading.Event()
        self._sweep_thread: Optional[threading.Thread] = None

    @classmethod
    def from_config(cls, queue: QueueBackend, registry: StageRegistry, config) -> "WorkerPoolManager":
        workers_cfg = config.workers
        return cls(
            queue,
            registry,
            worker_counts=workers_cfg.counts,
            lease_seconds=config.queue.lease_seconds,
            poll_interval_s=workers_cfg.poll_interval_s,
            health_window_s=workers_cfg.health_window_s,
            recovery_interval_s=workers_cfg.recovery_interval_s,
            stuck_minutes=workers_cfg.stuck_minutes,
        )

    @property
    def is_running(self) -> bool:
        return self._running

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self, workers: Optional[Mapping[Union[Stage, str], int]] = None) -> List[str]:
        """Spawn workers and the recovery sweep.

        Args:
            workers: ``{stage: count}``; defaults to ``worker_counts``

        Returns:
            IDs of the spawned workers

        Raises:
            PoolStateError: If the pool is already running
            UnknownStageError: If a stage is unknown or has no handler
                (raised before any worker is spawned)
        """
        counts = dict(workers if workers is not None else self.worker_counts)
        for stage, count in counts.items():
            if count < 0:
                raise ValidationError(f"Worker count for {stage} must be >= 0")
        self.registry.validate([stage for stage, count in counts.items() if count > 0])

        with self._lock:
            if self._running:
                raise PoolStateError("Worker pool is already running")
            self._running = True
            self._started_at = _utcnow()

            started = []
            for stage in PIPELINE_STAGES:
                count = counts.get(stage.value, counts.get(stage, 0))
                for _ in range(count):
                    started.append(self._spawn(stage))

            self._start_sweep()

        logger.info("Worker pool started with %d worker(s)", len(started))
        return started

    def stop(self, wait: bool = True, timeout: Optional[float] = None) -> None:
        """Stop all workers and the sweep.

        In-flight items are finished first when ``wait`` is set; otherwise
        they are left to the recovery sweep of a later run.
        """
        with self._lock:
            workers = list(self._workers.values())
            self._running = False
            self._sweep_stop.set()
            sweep = self._sweep_thread
            self._sweep_thread = None

        # Signal everyone before joining anyone
        for worker in workers:
            worker.stop(wait=False)
        if wait:
            for worker in workers:
                worker.stop(wait=True, timeout=timeout)
            if sweep is not None and sweep is not threading.current_thread():
                sweep.join(timeout=timeout)

        with self._lock:
            self._workers.clear()
        logger.info("Worker pool stopped (%d worker(s))", len(workers))

    def _spawn(self, stage: Stage) -> str:
        handler = self.registry.get(stage)
        self._sequence[stage] = self._sequence.get(stage, 0) + 1
        worker_id = f"{stage.value}-worker-{self._sequence[stage]}"
        worker = StageWorker(
            worker_id,
            stage,
            self.queue,
            handler,
            lease_seconds=self.lease_seconds,
            poll_interval_s=self.poll_interval_s,
        )
        self._workers[worker_id] = worker
        worker.start()
        return worker_id

    def _get(self, worker_id: str) -> StageWorker:
        worker = self._workers.get(worker_id)
        if worker is None:
            raise WorkerNotFoundError(worker_id)
        return worker

    def add_worker(self, stage: Union[Stage, str]) -> str:
        """Add one worker to ``stage`` on a running pool."""
        self.registry.validate([stage])
        with self._lock:
            if not self._running:
                raise PoolStateError("Worker pool is not running")
            worker_id = self._spawn(Stage(stage))
        logger.info("Added worker %s", worker_id)
        return worker_id

    def remove_worker(self, worker_id: str, wait: bool = True) -> bool:
        """Stop and forget one worker.

        With ``wait=False`` the in-flight item (if any) is abandoned and
        reclaimed by the sweep once its lease runs out.

        Returns:
            True if the worker thread had exited when this returned
        """
        with self._lock:
            worker = self._get(worker_id)
            del self._workers[worker_id]
        stopped = worker.stop(wait=wait)
        logger.info("Removed worker %s", worker_id)
        return stopped

    def restart_worker(self, worker_id: str, timeout: Optional[float] = None) -> str:
        """Stop a worker and start a fresh one with the same ID."""
        with self._lock:
            worker = self._get(worker_id)
            if not self._running:
                raise PoolStateError("Worker pool is not running")

        if not worker.stop(wait=True, timeout=timeout):
            raise PoolStateError(f"Worker {worker_id} did not stop in time")

        replacement = StageWorker(
            worker_id,
            worker.stage,
            self.queue,
            self.registry.get(worker.stage),
            lease_seconds=self.lease_seconds,
            poll_interval_s=self.poll_interval_s,
        )
        with self._lock:
            # stop() may have run while the old worker was draining
            if not self._running:
                raise PoolStateError(f"Worker pool stopped while restarting {worker_id}")
            self._workers[worker_id] = replacement
            replacement.start()
        logger.info("Restarted worker %s", worker_id)
        return worker_id

    # ------------------------------------------------------------------
    # Recovery sweep
    # ------------------------------------------------------------------

    def _start_sweep(self) -> None:
        if self.recovery_interval_s <= 0:
            return
        self._sweep_stop.clear()
        self._sweep_thread = threading.Thread(target=self._sweep_loop, name="recovery-sweep", daemon=True)
        self._sweep_thread.start()

    def _sweep_loop(self) -> None:
        while not self._sweep_stop.wait(self.recovery_interval_s):
            try:
                self.sweep_once()
            except StoreError as e:
                logger.warning("Recovery sweep skipped: %s", e)
            except Exception:
                logger.exception("Recovery sweep failed")

    def sweep_once(self) -> int:
        """Release stuck claims once. Returns the number of items released."""
        recovered = self.queue.recover_stuck_jobs(self.stuck_minutes)
        health = self.get_system_health()
        if health.healthy_workers < health.total_workers:
            logger.warning(
                "Health check: %d/%d workers healthy",
                health.healthy_workers, health.total_workers,
            )
        return recovered

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    def _status(self, worker: StageWorker, now: datetime) -> WorkerStatus:
        record = worker.record
        running = record.running and worker.is_alive
        polled_recently = (
            record.last_poll_at is not None
            and (now - record.last_poll_at).total_seconds() <= self.health_window_s
        )
        return WorkerStatus(
            worker_id=record.worker_id,
            stage=record.stage,
            running=running,
            healthy=running and (polled_recently or record.current_item_id is not None),
            state=record.state,
            started_at=record.started_at,
            uptime_s=(now - record.started_at).total_seconds() if record.started_at else 0.0,
            last_poll_at=record.last_poll_at,
            consecutive_failures=record.consecutive_failures,
            jobs_processed=record.jobs_processed,
            jobs_failed=record.jobs_failed,
            current_item_id=record.current_item_id,
            last_error=record.last_error,
        )

    def get_worker_statuses(self) -> List[WorkerStatus]:
        now = _utcnow()
        with self._lock:
            workers = list(self._workers.values())
        return [self._status(w, now) for w in workers]

    def get_worker_details(self, worker_id: str) -> WorkerStatus:
        with self._lock:
            worker = self._get(worker_id)
        return self._status(worker, _utcnow())

    def get_system_health(self) -> SystemHealth:
        now = _utcnow()
        statuses = self.get_worker_statuses()
        by_stage = {s.value: 0 for s in PIPELINE_STAGES}
        for status in statuses:
            by_stage[status.stage.value] += 1

        return SystemHealth(
            total_workers=len(statuses),
            running_workers=sum(1 for s in statuses if s.running),
            healthy_workers=sum(1 for s in statuses if s.healthy),
            workers_by_stage=by_stage,
            system_uptime=(now - self._started_at).total_seconds() if self._started_at else 0.0,
            last_health_check=now,
        )
