# src/pipeline/job.py — v1
"""Job orchestrator: create, run, resume and administer pipeline jobs.

One orchestrator call drives one job on a single asyncio task. Steps run
strictly in configured order; each one goes through
lock -> prerequisites -> running -> retry engine -> completed/skipped/failed,
and the job state is persisted after every transition.
"""

from __future__ import annotations

import asyncio
import logging
import shutil
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator, Awaitable, Callable

import httpx

from aether.config.models import IMPORT_ALIAS, IMPORT_STEPS, KNOWN_STEPS
from aether.config.settings import Settings, is_import_family
from aether.core.errors import (
    ClassifiedError,
    classify,
    corrupted_job_state,
    invalid_config,
    job_locked,
    job_not_found,
    prerequisite_not_met,
)
from aether.core.models import (
    InputType,
    PipelineJob,
    PipelineStep,
    StepError,
    StepMetrics,
    can_transition,
    utcnow,
)
from aether.core.retry import RetryPolicy, with_retry
from aether.logging.context import job_context
from aether.logging.handlers import job_log_handler
from aether.pipeline import prerequisites
from aether.pipeline.input_detection import detect_input_type, import_step_for
from aether.pipeline.registry import RegistryError, StepRegistry, default_registry
from aether.pipeline.steps.base_step import StepContext
from aether.services.http_client import create_http_client
from aether.storage import layout, state_store
from aether.storage.locks import JobLock

logger = logging.getLogger(__name__)

# Job fields a step body may update through StepContext.record().
RECORDABLE_FIELDS: frozenset[str] = frozenset({"torch_extraction_url"})


def resolve_steps(enabled_steps: list[str], input_type: InputType) -> list[str]:
    """Turn configured step names into the job's concrete step list.

    The ``import`` alias becomes the variant handling ``input_type``.

    Raises:
        ClassifiedError: configuration error for an empty list, a list not
            starting with an import step, unknown names, or an import
            variant that cannot handle ``input_type``.
    """
    if not enabled_steps:
        raise invalid_config("pipeline.enabled_steps", "at least one step must be enabled")
    if not is_import_family(enabled_steps[0]):
        raise invalid_config(
            "pipeline.enabled_steps",
            f"first step must be an import step, got {enabled_steps[0]!r}",
        )

    expected_import = import_step_for(input_type)
    resolved: list[str] = []
    for name in enabled_steps:
        if name == IMPORT_ALIAS:
            name = expected_import
        elif name in IMPORT_STEPS and name != expected_import:
            raise invalid_config(
                "pipeline.enabled_steps",
                f"step {name!r} cannot import input of type {input_type} "
                f"(use {expected_import!r} or {IMPORT_ALIAS!r})",
            )
        elif name not in KNOWN_STEPS:
            raise invalid_config("pipeline.enabled_steps", f"unknown step {name!r}")
        resolved.append(name)
    return resolved


def step_error_from(error: ClassifiedError) -> StepError:
    return StepError(
        category=error.category,
        message=str(error),
        retryable=error.retryable,
        http_status=error.http_status,
        guidance=error.guidance,
    )


class JobOrchestrator:
    """Runs pipeline jobs stored under ``settings.jobs_dir``.

    Args:
        settings: Loaded settings; snapshotted into every new job.
        registry: Step implementations (defaults to the built-in steps).
        http_client: Shared client; one is created per call when omitted.
        sleep: Awaitable sleep used for backoff and polling.
    """

    def __init__(
        self,
        settings: Settings,
        registry: StepRegistry | None = None,
        http_client: httpx.AsyncClient | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.settings = settings
        self.registry = registry or default_registry()
        self._http = http_client
        self._sleep = sleep

    @property
    def jobs_path(self) -> Path:
        return self.settings.jobs_path

    def job_path(self, job_id: str) -> Path:
        return layout.job_dir(self.jobs_path, job_id)

    # --- Creation and administration ---

    def create_job(self, input_source: str) -> PipelineJob:
        """Classify the input, build the step list and persist a new job."""
        input_type = detect_input_type(input_source)
        config = self.settings.to_project_config()
        step_names = resolve_steps(config.pipeline.enabled_steps, input_type)

        source = input_source.strip()
        if input_type in ("local_directory", "crtdl_file"):
            source = str(Path(source).expanduser().resolve())

        job = PipelineJob(
            input_source=source,
            input_type=input_type,
            steps=[PipelineStep(name=name) for name in step_names],  # type: ignore[arg-type]
            config=config,
            current_step=step_names[0],
        )
        layout.ensure_job_directories(self.job_path(job.job_id))
        state_store.write_config_snapshot(self.jobs_path, job)
        state_store.save_job(self.jobs_path, job)
        with job_context(job.job_id):
            logger.info(
                "Created job %s (%s, steps: %s)", job.job_id, input_type, ", ".join(step_names)
            )
        return job

    def get_status(self, job_id: str) -> PipelineJob:
        return state_store.load_job(self.jobs_path, job_id)

    def list_jobs(self) -> list[PipelineJob]:
        """Every readable job, newest first. Unreadable jobs are logged and skipped."""
        jobs: list[PipelineJob] = []
        for job_id in state_store.list_job_ids(self.jobs_path):
            try:
                jobs.append(state_store.load_job(self.jobs_path, job_id))
            except ClassifiedError as e:
                logger.warning("Skipping job %s: %s", job_id, e.message)
        return sorted(jobs, key=lambda j: j.created_at, reverse=True)

    def delete_job(self, job_id: str, *, force: bool = False) -> None:
        """Remove a job directory. A locked job is only removed with ``force``.

        A process still running a step of a force-deleted job fails with a
        state error at its next state save instead of recreating the job.
        """
        job_path = self.job_path(job_id)
        lock = JobLock(job_path, job_id, self.settings.stale_lock_timeout_s)
        if lock.path.exists() and not lock.is_stale():
            if not force:
                raise job_locked(job_id)
            logger.warning("Deleting job %s while another process holds its lock", job_id)
        state_store.delete_job_dir(self.jobs_path, job_id)
        logger.info("Deleted job %s", job_id)

    # --- Execution ---

    async def run_step(self, job: PipelineJob, step_name: str, *, resume: bool = False) -> StepMetrics:
        """Run a single step of ``job``; raises the classified error on failure.

        ``job`` is refreshed from state.json once the lock is held, so a copy
        loaded before another process finished the step cannot run it again.
        """
        self._require_job_dir(job.job_id)
        with job_log_handler(job.job_id, layout.log_path(self.job_path(job.job_id))):
            async with self._client() as client:
                metrics = await self._run_step(job, step_name, client, resume=resume)
        assert metrics is not None
        return metrics

    async def run_pipeline(self, job: PipelineJob, *, resume: bool = False) -> PipelineJob:
        """Run every remaining step in order, stopping at the first failure.

        Steps another process completed since ``job`` was loaded are skipped.
        """
        self._require_job_dir(job.job_id)
        with job_log_handler(job.job_id, layout.log_path(self.job_path(job.job_id))):
            async with self._client() as client:
                for name in [step.name for step in job.steps]:
                    step = job.get_step(name)
                    if step is not None and step.is_done:
                        continue
                    await self._run_step(job, name, client, resume=resume, skip_done=True)
        with job_context(job.job_id):
            logger.info("Job %s finished with status %s", job.job_id, job.status)
        return job

    async def continue_job(self, job_id: str) -> PipelineJob:
        """Resume a job from its first step that is not completed or skipped.

        A failed step, or one left running by an interrupted process, is
        re-run from scratch.
        """
        job = state_store.load_job(self.jobs_path, job_id)
        next_step = job.next_step()
        if next_step is None:
            logger.info("Job %s is already complete", job_id)
            return job
        with job_context(job.job_id):
            logger.info("Resuming job %s at step %s", job_id, next_step.name)
        return await self.run_pipeline(job, resume=True)

    @asynccontextmanager
    async def _client(self) -> AsyncIterator[httpx.AsyncClient]:
        if self._http is not None:
            yield self._http
            return
        client = create_http_client(self.settings.services.http_timeout_seconds)
        try:
            yield client
        finally:
            await client.aclose()

    def _require_job_dir(self, job_id: str) -> None:
        if not self.job_path(job_id).is_dir():
            raise job_not_found(job_id)

    def _save(self, job: PipelineJob) -> None:
        state_store.save_job(self.jobs_path, job)

    def _reload(self, job: PipelineJob) -> None:
        """Overwrite ``job`` in place with its persisted state. Call with the lock held."""
        persisted = state_store.load_job(self.jobs_path, job.job_id)
        for field in PipelineJob.model_fields:
            setattr(job, field, getattr(persisted, field))

    async def _run_step(
        self,
        job: PipelineJob,
        step_name: str,
        client: httpx.AsyncClient,
        *,
        resume: bool,
        skip_done: bool = False,
    ) -> StepMetrics | None:
        if job.get_step(step_name) is None:
            raise invalid_config(
                "pipeline.enabled_steps", f"step {step_name!r} is not part of job {job.job_id}"
            )
        try:
            implementation = self.registry.get_or_raise(step_name)
        except RegistryError as e:
            raise invalid_config("pipeline.enabled_steps", str(e)) from e

        job_path = self.job_path(job.job_id)
        with job_context(job.job_id, step_name), JobLock(
            job_path, job.job_id, job.config.stale_lock_timeout_s
        ):
            self._reload(job)
            step = job.get_step(step_name)
            if step is None:
                raise corrupted_job_state(job.job_id)
            if skip_done and step.is_done:
                logger.info("Step %s is already %s, skipping", step_name, step.status)
                return None

            blocking, can_run = prerequisites.validate(job, step_name)
            if not can_run:
                raise prerequisite_not_met(step_name, blocking or IMPORT_ALIAS)
            if not can_transition(step.status, "running", resume=resume):
                raise ClassifiedError(
                    "state",
                    f"Step {step_name} is {step.status} and cannot be started",
                    guidance=[
                        "Completed and skipped steps are never re-run",
                        "Use 'aether pipeline continue <job-id>' to resume a failed job",
                    ],
                )

            self._mark_running(job, step, job_path)
            logger.info("Starting step %s", step_name)

            async def record_update(key: str, value: Any) -> None:
                if key not in RECORDABLE_FIELDS:
                    raise ValueError(f"step may not update job field {key!r}")
                setattr(job, key, value)
                self._save(job)

            async def on_retry(attempt: int, error: ClassifiedError, delay_s: float) -> None:
                step.retry_count += 1
                step.last_error = step_error_from(error)
                self._save(job)
                logger.warning(
                    "Step %s attempt %d failed (%s); retrying in %.1fs",
                    step_name, attempt, error.message, delay_s,
                )

            ctx = StepContext(
                job=job.model_copy(deep=True),
                config=job.config,
                job_path=job_path,
                http=client,
                record_update=record_update,
                sleep=self._sleep,
            )
            policy = RetryPolicy.from_config(job.config.retry)

            try:
                metrics = await with_retry(
                    lambda: implementation.execute(ctx),
                    policy,
                    on_retry=on_retry,
                    sleep=self._sleep,
                )
            except asyncio.CancelledError:
                logger.warning("Step %s interrupted; it stays running until resumed", step_name)
                self._save(job)
                raise
            except Exception as e:
                error = classify(e)
                self._mark_failed(job, step, error)
                logger.error("Step %s failed: %s", step_name, error)
                if error is e:
                    raise
                raise error from e

            self._mark_finished(job, step, metrics)
            logger.info(
                "Step %s %s: %d entries, %d files, %d bytes",
                step_name, step.status, step.entry_count,
                step.files_processed, step.bytes_processed,
            )
            return metrics

    def _mark_running(self, job: PipelineJob, step: PipelineStep, job_path: Path) -> None:
        if step.status in ("failed", "running"):
            output_dir = layout.step_output_dir(job_path, step.name)
            if output_dir.exists():
                logger.info("Clearing output of previous %s run", step.name)
                shutil.rmtree(output_dir)
        step.status = "running"
        step.started_at = utcnow()
        step.completed_at = None
        step.entry_count = 0
        step.files_processed = 0
        step.bytes_processed = 0
        step.retry_count = 0
        step.last_error = None
        job.current_step = step.name
        job.error_message = ""
        self._save(job)

    def _mark_failed(self, job: PipelineJob, step: PipelineStep, error: ClassifiedError) -> None:
        step.status = "failed"
        step.completed_at = utcnow()
        step.last_error = step_error_from(error)
        job.error_message = error.message
        self._save(job)

    def _mark_finished(self, job: PipelineJob, step: PipelineStep, metrics: StepMetrics) -> None:
        step.status = "skipped" if metrics.skipped else "completed"
        step.completed_at = utcnow()
        step.entry_count = metrics.entry_count
        step.files_processed = metrics.files_processed
        step.bytes_processed = metrics.bytes_processed
        for key, value in metrics.job_updates.items():
            if key in RECORDABLE_FIELDS:
                setattr(job, key, value)
            else:
                logger.warning("Ignoring update of job field %s from %s", key, step.name)
        if step.is_import:
            job.total_files = metrics.files_processed
            job.total_bytes = metrics.bytes_processed
        next_step = job.next_step()
        job.current_step = next_step.name if next_step else step.name
        self._save(job)
