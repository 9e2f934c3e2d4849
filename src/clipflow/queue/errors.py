"""Exception hierarchy for the job queue.

Claim conflicts and lock contention are retried inside the backend.
Handler errors are recorded by workers and never escape the worker loop.
StoreError is the only failure that reaches the administrative layer as a
hard error.
"""

from typing import Iterable, Optional


class QueueError(Exception):
    """Base class for all queue errors."""

    code = "QUEUE_ERROR"


class ValidationError(QueueError, ValueError):
    """Bad input to create/enqueue, rejected synchronously."""

    code = "VALIDATION_ERROR"


class JobNotFoundError(ValidationError):
    code = "JOB_NOT_FOUND"

    def __init__(self, job_id: str):
        super().__init__(f"Job not found: {job_id}")
        self.job_id = job_id


class UnknownStageError(ValidationError):
    code = "UNKNOWN_STAGE"

    def __init__(self, stages: Iterable[str], reason: str = "unknown stage"):
        self.stages = sorted(str(s) for s in stages)
        super().__init__(f"{reason}: {', '.join(self.stages)}")


class ItemNotFoundError(QueueError):
    code = "ITEM_NOT_FOUND"

    def __init__(self, item_id: str):
        super().__init__(f"Queue item not found: {item_id}")
        self.item_id = item_id


class ItemStateError(QueueError):
    """Transition requested on an item that is already terminal."""

    code = "INVALID_ITEM_STATE"


class ClaimConflict(QueueError):
    """Another worker won the conditional claim update."""

    code = "CLAIM_CONFLICT"


class LeaseExpired(QueueError):
    """A claimed item outlived its lease or the staleness threshold."""

    code = "LEASE_EXPIRED"

    def __init__(self, item_id: str, worker_id: Optional[str]):
        super().__init__(f"Lease expired for item {item_id} (worker {worker_id})")
        self.item_id = item_id
        self.worker_id = worker_id


class HandlerError(QueueError):
    """A stage handler failed. Retried while attempts remain."""

    code = "HANDLER_ERROR"


class PermanentHandlerError(HandlerError):
    """A stage handler failed in a way retrying cannot fix."""

    code = "HANDLER_ERROR_PERMANENT"


class StoreError(QueueError):
    """The persistent store is unavailable."""

    code = "STORE_UNAVAILABLE"


class WorkerNotFoundError(QueueError):
    code = "WORKER_NOT_FOUND"

    def __init__(self, worker_id: str):
        super().__init__(f"Worker not found: {worker_id}")
        self.worker_id = worker_id


class PoolStateError(QueueError, RuntimeError):
    """Pool operation not allowed in the pool's current state."""

    code = "POOL_STATE_CONFLICT"
