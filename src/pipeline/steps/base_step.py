# src/pipeline/steps/base_step.py — v1
"""Standard step interface and the context handed to step bodies.

A step body never mutates the job. It reads a copy of the job through the
context, writes into its own output directory and reports StepMetrics.
Side data the job has to remember across retries or resumes (the TORCH
extraction URL) goes through ``StepContext.record``.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Callable

import httpx

from aether.config.models import ProjectConfig
from aether.core.models import PipelineJob, StepMetrics
from aether.core.retry import RetryPolicy
from aether.storage import layout

RecordUpdate = Callable[[str, Any], Awaitable[None]]


@dataclass
class StepContext:
    """Everything a step body may use."""

    job: PipelineJob
    config: ProjectConfig
    job_path: Path
    http: httpx.AsyncClient
    record_update: RecordUpdate | None = None
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
    _recorded: dict[str, Any] = field(default_factory=dict, init=False, repr=False)

    @property
    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy.from_config(self.config.retry)

    def output_dir(self, step_name: str) -> Path:
        return layout.step_output_dir(self.job_path, step_name)

    def lookup(self, key: str) -> Any:
        """Job field value, including updates recorded during this run."""
        if key in self._recorded:
            return self._recorded[key]
        return getattr(self.job, key)

    async def record(self, key: str, value: Any) -> None:
        """Persist a job field immediately (e.g. torch_extraction_url)."""
        self._recorded[key] = value
        if self.record_update is not None:
            await self.record_update(key, value)


class BaseStep(ABC):
    """Interface implemented by every pipeline step."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Step name as used in pipeline.enabled_steps."""

    @property
    def description(self) -> str:
        return self.name

    @abstractmethod
    async def execute(self, ctx: StepContext) -> StepMetrics:
        """Run the step body once. Raised errors are classified by the caller."""
