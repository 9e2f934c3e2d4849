"""Stage worker: a long-lived loop bound to one pipeline stage.

Each worker:
- Polls the queue for its stage and claims one item at a time
- Runs the stage handler and reports the outcome back to the queue
- Advances the job by enqueueing the next stage on success
- Classifies failures (PermanentHandlerError disables retries)
- Backs off exponentially while the store is unavailable
- Stops gracefully: an in-flight handler is never interrupted
"""

import logging
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from .backends import QueueBackend
from .errors import (
    ItemNotFoundError,
    ItemStateError,
    PermanentHandlerError,
    StoreError,
    ValidationError,
)
from .models import ItemStatus, LogLevel, QueueItem, Stage, as_payload, next_stage
from .stages import StageHandler, progress_reporter

logger = logging.getLogger(__name__)

MAX_BACKOFF_SECONDS = 30.0


class WorkerState(str, Enum):
    IDLE = "idle"
    POLLING = "polling"
    CLAIMED = "claimed"
    EXECUTING = "executing"
    COMPLETING = "completing"
    FAILING = "failing"
    STOPPED = "stopped"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class WorkerRecord:
    """In-memory bookkeeping for one worker. Never persisted."""

    worker_id: str
    stage: Stage
    running: bool = False
    state: WorkerState = WorkerState.IDLE
    started_at: Optional[datetime] = None
    last_poll_at: Optional[datetime] = None
    consecutive_failures: int = 0
    jobs_processed: int = 0
    jobs_failed: int = 0
    current_item_id: Optional[str] = None
    last_error: Optional[str] = None


def _backoff_seconds(failures: int, base: float) -> float:
    return min(MAX_BACKOFF_SECONDS, max(base, 0.1) * (2 ** max(failures - 1, 0)))


class StageWorker:
    """Claims and executes items for a single stage."""

    def __init__(
        self,
        worker_id: str,
        stage: Stage,
        queue: QueueBackend,
        handler: StageHandler,
        *,
        lease_seconds: Optional[float] = None,
        poll_interval_s: float = 1.0,
    ):
        """Create a worker (not started).

        Args:
            worker_id: Unique worker identifier, written into claims
            stage: Stage this worker serves
            queue: Job queue service
            handler: Callable run for each claimed item
            lease_seconds: Claim lease (default: the queue's)
            poll_interval_s: Sleep between polls when idle
        """
        self.worker_id = worker_id
        self.stage = Stage(stage)
        self.queue = queue
        self.handler = handler
        self.lease_seconds = lease_seconds
        self.poll_interval_s = poll_interval_s
        self.record = WorkerRecord(worker_id=worker_id, stage=self.stage)
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def is_alive(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.is_alive:
            return
        self._stop.clear()
        self.record.running = True
        self.record.state = WorkerState.IDLE
        self.record.started_at = _utcnow()
        self._thread = threading.Thread(target=self.run, name=self.worker_id, daemon=True)
        self._thread.start()
        logger.info("Started worker %s for stage %s", self.worker_id, self.stage.value)

    def stop(self, wait: bool = True, timeout: Optional[float] = None) -> bool:
        """Signal the loop to stop.

        Args:
            wait: Block until the in-flight item (if any) is finished
            timeout: Maximum seconds to wait

        Returns:
            True if the worker thread has exited
        """
        self._stop.set()
        if wait and self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(timeout=timeout)
        stopped = not self.is_alive
        if stopped:
            self.record.running = False
            self.record.state = WorkerState.STOPPED
        return stopped

    def run(self) -> None:
        """Loop run_once() until stopped. Never exits on errors."""
        try:
            while not self._stop.is_set():
                try:
                    processed = self.run_once()
                except StoreError as e:
                    self.record.consecutive_failures += 1
                    self.record.last_error = str(e)
                    self.record.state = WorkerState.IDLE
                    delay = _backoff_seconds(self.record.consecutive_failures, self.poll_interval_s)
                    logger.warning(
                        "Worker %s: store unavailable (%s), retrying in %.1fs",
                        self.worker_id, e, delay,
                    )
                    self._stop.wait(delay)
                    continue
                except Exception as e:
                    # Bookkeeping bug or unexpected store error: keep the loop alive
                    self.record.consecutive_failures += 1
                    self.record.last_error = f"{type(e).__name__}: {e}"
                    self.record.state = WorkerState.IDLE
                    logger.exception("Worker %s: unexpected error", self.worker_id)
                    self._stop.wait(
                        _backoff_seconds(self.record.consecutive_failures, self.poll_interval_s)
                    )
                    continue

                if not processed:
                    self._stop.wait(self.poll_interval_s)
        finally:
            self.record.running = False
            self.record.state = WorkerState.STOPPED
            self.record.current_item_id = None
            logger.info("Worker %s stopped", self.worker_id)

    def run_once(self) -> bool:
        """Poll once and process at most one item.

        Returns:
            True if an item was claimed and processed
        """
        self.record.state = WorkerState.POLLING
        self.record.last_poll_at = _utcnow()
        item = self.queue.claim_next_item(self.stage, self.worker_id, self.lease_seconds)
        self.record.consecutive_failures = 0
        if item is None:
            self.record.state = WorkerState.IDLE
            return False

        self.record.state = WorkerState.CLAIMED
        self.record.current_item_id = item.id
        try:
            self._process(item)
        finally:
            self.record.current_item_id = None
            self.record.state = WorkerState.IDLE
        return True

    def _process(self, item: QueueItem) -> None:
        self.queue.add_log(
            item.job_id, LogLevel.INFO, item.stage,
            f"Started processing {item.stage.value}",
            {"queue_id": item.id, "attempt": item.attempts + 1},
            worker_id=self.worker_id,
        )

        def on_progress(percentage: float, detail=None) -> None:
            self.queue.update_job_progress(
                item.job_id,
                percentage,
                {item.stage.value: detail} if detail is not None else None,
            )

        self.record.state = WorkerState.EXECUTING
        started = time.monotonic()
        try:
            with progress_reporter(on_progress):
                result = as_payload(self.handler(item.stage, item.job_id, dict(item.payload)))
        except Exception as exc:
            self._handle_failure(item, exc)
            return

        self.record.state = WorkerState.COMPLETING
        duration = time.monotonic() - started
        try:
            job = self.queue.complete_item(item.id, result, worker_id=self.worker_id)
        except (ItemNotFoundError, ItemStateError) as e:
            # Dropped or handed to another worker while the handler ran
            logger.info("Worker %s: discarding result for item %s (%s)", self.worker_id, item.id, e)
            return

        self.record.jobs_processed += 1
        self.record.last_error = None

        following = next_stage(item.stage)
        if following is not None and not job.is_terminal:
            try:
                self.queue.enqueue_job(item.job_id, following, {**item.payload, **result}, item.priority)
            except ValidationError as e:
                logger.info("Worker %s: not advancing job %s (%s)", self.worker_id, item.job_id, e)

        self.queue.add_log(
            item.job_id, LogLevel.INFO, item.stage,
            f"Completed {item.stage.value}",
            {
                "queue_id": item.id,
                "duration_s": round(duration, 3),
                "next_stage": following.value if following else None,
            },
            worker_id=self.worker_id,
        )

    def _handle_failure(self, item: QueueItem, exc: Exception) -> None:
        self.record.state = WorkerState.FAILING
        message = f"{type(exc).__name__}: {exc}"
        retry = not isinstance(exc, PermanentHandlerError)
        logger.warning(
            "Worker %s: %s failed for job %s: %s", self.worker_id, item.stage.value, item.job_id, message
        )

        try:
            failed = self.queue.fail_item(item.id, message, retry=retry, worker_id=self.worker_id)
        except (ItemNotFoundError, ItemStateError) as e:
            logger.info("Worker %s: discarding failure for item %s (%s)", self.worker_id, item.id, e)
            return

        self.record.jobs_failed += 1
        self.record.last_error = message
        self.queue.add_log(
            item.job_id, LogLevel.ERROR, item.stage,
            f"Failed {item.stage.value}: {message}",
            {
                "queue_id": item.id,
                "attempts": failed.attempts,
                "max_attempts": failed.max_attempts,
                "will_retry": failed.status == ItemStatus.WAITING,
                "permanent": not retry,
            },
            worker_id=self.worker_id,
        )
