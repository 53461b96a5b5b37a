# src/logging/context.py — v1
"""Contextual logging support: attach job_id and step to log records."""

from __future__ import annotations

import contextvars
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Iterator

_job_id: contextvars.ContextVar[str | None] = contextvars.ContextVar(
    "job_id", default=None
)
_step: contextvars.ContextVar[str | None] = contextvars.ContextVar(
    "step", default=None
)


@dataclass
class LogContext:
    """Immutable snapshot of current logging context."""

    job_id: str | None = None
    step: str | None = None

    def as_dict(self) -> dict[str, Any]:
        """Return non-None fields as dict for JSON log injection."""
        return {k: v for k, v in self.__dict__.items() if v is not None}


def get_context() -> LogContext:
    """Snapshot current context variables."""
    return LogContext(job_id=_job_id.get(), step=_step.get())


def set_job_context(job_id: str | None, step: str | None = None) -> None:
    _job_id.set(job_id)
    _step.set(step)


@contextmanager
def job_context(job_id: str, step: str | None = None) -> Iterator[None]:
    """Bind job_id (and optionally step) for the duration of the block."""
    job_token = _job_id.set(job_id)
    step_token = _step.set(step)
    try:
        yield
    finally:
        _step.reset(step_token)
        _job_id.reset(job_token)


def clear_context() -> None:
    """Reset all context variables."""
    _job_id.set(None)
    _step.set(None)
