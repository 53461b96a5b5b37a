# src/core/models.py — v1
"""Shared Pydantic domain models: jobs, steps, step errors and metrics.

No module redefines these types; all imports come from core.models.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, computed_field

from aether.config.models import IMPORT_STEPS, ProjectConfig

StepName = Literal[
    "torch",
    "local_import",
    "http_import",
    "dimp",
    "validation",
    "csv_conversion",
    "parquet_conversion",
]
StepStatus = Literal["pending", "running", "completed", "failed", "skipped"]
JobStatus = Literal["in_progress", "completed", "failed"]
InputType = Literal["local_directory", "http_url", "torch_result_url", "crtdl_file"]

TERMINAL_STATUSES: frozenset[str] = frozenset({"completed", "skipped"})

# Allowed transitions during normal execution. Resume additionally permits
# failed -> running and a stale running -> running.
_TRANSITIONS: dict[str, frozenset[str]] = {
    "pending": frozenset({"running"}),
    "running": frozenset({"completed", "failed", "skipped"}),
    "completed": frozenset(),
    "failed": frozenset(),
    "skipped": frozenset(),
}
_RESUME_TRANSITIONS: dict[str, frozenset[str]] = {
    "failed": frozenset({"running"}),
    "running": frozenset({"running"}),
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def can_transition(current: str, target: str, *, resume: bool = False) -> bool:
    """Check whether a step may move from ``current`` to ``target``."""
    if target in _TRANSITIONS.get(current, frozenset()):
        return True
    return resume and target in _RESUME_TRANSITIONS.get(current, frozenset())


# === STEP ===


class StepError(BaseModel):
    """Persisted form of the last classified error of a step."""

    category: str
    message: str
    retryable: bool = False
    http_status: int | None = None
    guidance: list[str] = Field(default_factory=list)
    timestamp: datetime = Field(default_factory=utcnow)


class PipelineStep(BaseModel):
    """One step of a job with its execution metrics."""

    name: StepName
    status: StepStatus = "pending"
    started_at: datetime | None = None
    completed_at: datetime | None = None
    entry_count: int = 0
    files_processed: int = 0
    bytes_processed: int = 0
    retry_count: int = 0
    last_error: StepError | None = None

    @property
    def is_import(self) -> bool:
        return self.name in IMPORT_STEPS

    @property
    def is_done(self) -> bool:
        return self.status in TERMINAL_STATUSES


class StepMetrics(BaseModel):
    """What a step body reports back to the orchestrator."""

    entry_count: int = 0
    files_processed: int = 0
    bytes_processed: int = 0
    skipped: bool = False
    job_updates: dict[str, Any] = Field(default_factory=dict)


# === JOB ===


class PipelineJob(BaseModel):
    """Durable record of one pipeline run (persisted as state.json)."""

    model_config = ConfigDict(extra="ignore")

    job_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    input_source: str
    input_type: InputType
    torch_extraction_url: str | None = None
    current_step: str = ""
    steps: list[PipelineStep] = Field(default_factory=list)
    config: ProjectConfig = Field(default_factory=ProjectConfig)
    total_files: int = 0
    total_bytes: int = 0
    error_message: str = ""

    @computed_field  # type: ignore[prop-decorator]
    @property
    def status(self) -> JobStatus:
        """Derived from step statuses; never stored independently."""
        if any(s.status == "failed" for s in self.steps):
            return "failed"
        if self.steps and all(s.is_done for s in self.steps):
            return "completed"
        return "in_progress"

    def get_step(self, name: str) -> PipelineStep | None:
        for step in self.steps:
            if step.name == name:
                return step
        return None

    def import_step(self) -> PipelineStep | None:
        for step in self.steps:
            if step.is_import:
                return step
        return None

    def next_step(self) -> PipelineStep | None:
        """First step that is neither completed nor skipped."""
        for step in self.steps:
            if not step.is_done:
                return step
        return None

    def touch(self) -> None:
        self.updated_at = utcnow()
