"""Stage handler registry.

Handlers are plain callables ``handler(stage, job_id, payload)`` that return
the stage result (dict, None or any JSON value) and raise on failure. They
are registered in code with ``StageRegistry.register`` or in config as
``"package.module:function"`` import paths.

A running handler may call ``report_progress(percentage, detail)`` to record
in-stage progress on its job.
"""

import importlib
import logging
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Any, Callable, Dict, Iterable, Mapping, Optional, Union

from .errors import PermanentHandlerError, UnknownStageError
from .models import PIPELINE_STAGES, Stage

logger = logging.getLogger(__name__)

StageHandler = Callable[[Stage, str, Dict[str, Any]], Any]
ProgressCallback = Callable[[float, Any], None]

_progress_callback: ContextVar[Optional[ProgressCallback]] = ContextVar(
    "clipflow_progress_callback", default=None
)


@contextmanager
def progress_reporter(callback: ProgressCallback):
    """Route ``report_progress`` calls made inside the block to ``callback``."""
    token = _progress_callback.set(callback)
    try:
        yield
    finally:
        _progress_callback.reset(token)


def report_progress(percentage: float, detail: Any = None) -> bool:
    """Report progress from inside a running stage handler.

    Args:
        percentage: Overall job progress, 0-100 (never lowers the stored value)
        detail: Optional JSON value stored under the stage in ``Job.stage_progress``

    Returns:
        False when called outside a worker (nothing is recorded)
    """
    callback = _progress_callback.get()
    if callback is None:
        return False
    callback(percentage, detail)
    return True


def passthrough_handler(stage: Stage, job_id: str, payload: Dict[str, Any]) -> Dict[str, Any]:
    """Forward the payload unchanged (for stages that only route data)."""
    return dict(payload)


def load_handler(path: str) -> StageHandler:
    """Import a handler from a ``"package.module:attribute"`` path."""
    module_name, sep, attr = path.partition(":")
    if not sep or not module_name or not attr:
        raise ValueError(f"Handler path must look like 'package.module:function', got {path!r}")

    module = importlib.import_module(module_name)
    try:
        handler = getattr(module, attr)
    except AttributeError:
        raise ValueError(f"Module {module_name!r} has no attribute {attr!r}") from None
    if not callable(handler):
        raise ValueError(f"Handler {path!r} is not callable")
    return handler


class StageRegistry:
    """Maps each pipeline Stage to its handler."""

    def __init__(self, handlers: Optional[Mapping[Union[Stage, str], StageHandler]] = None):
        self._handlers: Dict[Stage, StageHandler] = {}
        for stage, handler in (handlers or {}).items():
            self.register(stage, handler)

    @classmethod
    def from_config(cls, handlers: Mapping[str, str]) -> "StageRegistry":
        """Build a registry from a ``{stage: "module:function"}`` mapping.

        Raises:
            UnknownStageError: If a key is not a pipeline stage
            ValueError: If a handler path cannot be imported
        """
        registry = cls()
        for stage, path in handlers.items():
            registry.register(stage, load_handler(path))
            logger.debug("Registered %s handler %s", stage, path)
        return registry

    def register(self, stage: Union[Stage, str], handler: Optional[StageHandler] = None):
        """Register ``handler`` for ``stage``.

        Usable directly or as a decorator::

            @registry.register("upload")
            def upload(stage, job_id, payload):
                ...
        """
        try:
            key = Stage(stage)
        except ValueError:
            raise UnknownStageError([stage]) from None

        def _register(fn: StageHandler) -> StageHandler:
            if not callable(fn):
                raise TypeError(f"Handler for {key.value} is not callable")
            self._handlers[key] = fn
            return fn

        if handler is None:
            return _register
        return _register(handler)

    def get(self, stage: Union[Stage, str]) -> StageHandler:
        try:
            key = Stage(stage)
        except ValueError:
            raise UnknownStageError([stage]) from None
        if key not in self._handlers:
            raise UnknownStageError([key.value], reason="no handler registered for stage")
        return self._handlers[key]

    def validate(self, stages: Iterable[Union[Stage, str]]) -> None:
        """Fail fast if any stage is unknown or has no handler."""
        unknown, missing = [], []
        for stage in stages:
            try:
                key = Stage(stage)
            except ValueError:
                unknown.append(str(stage))
                continue
            if key not in self._handlers:
                missing.append(key.value)

        if unknown:
            raise UnknownStageError(unknown)
        if missing:
            raise UnknownStageError(missing, reason="no handler registered for stage")

    @property
    def stages(self):
        """Registered stages in pipeline order."""
        return [s for s in PIPELINE_STAGES if s in self._handlers]

    def __contains__(self, stage) -> bool:
        try:
            return Stage(stage) in self._handlers
        except ValueError:
            return False

    def __len__(self) -> int:
        return len(self._handlers)


def _not_configured(stage: Stage, job_id: str, payload: Dict[str, Any]):
    raise PermanentHandlerError(f"No processing integration configured for stage {stage.value}")


def default_registry(handlers: Optional[Mapping[str, str]] = None) -> StageRegistry:
    """Registry for a deployment, with configured handler paths on top.

    Without configuration, data-routing stages pass their payload through
    and stages that need an external integration fail permanently.
    """
    registry = StageRegistry()
    for stage in PIPELINE_STAGES:
        if stage in (Stage.QUEUE_ANALYSIS, Stage.ASSEMBLE_TIMELINE):
            registry.register(stage, passthrough_handler)
        else:
            registry.register(stage, _not_configured)

    for stage, path in (handlers or {}).items():
        registry.register(stage, load_handler(path))
    return registry
