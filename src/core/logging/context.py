"""Log context propagated through contextvars (safe across asyncio tasks)."""

from contextlib import contextmanager
from contextvars import ContextVar
from typing import Dict, Iterator, Optional

_job_id: ContextVar[Optional[str]] = ContextVar("job_id", default=None)
_slice_key: ContextVar[Optional[str]] = ContextVar("slice_key", default=None)
_stage: ContextVar[Optional[str]] = ContextVar("stage", default=None)
_worker_id: ContextVar[Optional[str]] = ContextVar("worker_id", default=None)

_VARS = {
    "job_id": _job_id,
    "slice_key": _slice_key,
    "stage": _stage,
    "worker_id": _worker_id,
}


def set_log_context(**kwargs: Optional[str]) -> None:
    """
    Set one or more context fields for the current task.

    Unknown keys raise KeyError so typos do not silently drop context.
    """
    for key, value in kwargs.items():
        _VARS[key].set(None if value is None else str(value))


def get_log_context() -> Dict[str, Optional[str]]:
    """Return the current context fields (missing ones are None)."""
    return {key: var.get() for key, var in _VARS.items()}


def clear_log_context() -> None:
    """Reset all context fields."""
    for var in _VARS.values():
        var.set(None)


@contextmanager
def log_context(**kwargs: Optional[str]) -> Iterator[None]:
    """
    Temporarily set context fields, restoring previous values on exit.

    Example:
        with log_context(job_id=str(range_.job_id), slice_key=range_.slice_key):
            ...
    """
    tokens = []
    for key, value in kwargs.items():
        var = _VARS[key]
        tokens.append((var, var.set(None if value is None else str(value))))
    try:
        yield
    finally:
        for var, token in reversed(tokens):
            var.reset(token)
