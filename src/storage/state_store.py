# src/storage/state_store.py — v1
"""Durable job state: atomic state.json writes, loading and listing.

A write goes to a temporary file in the job directory, is fsynced, then
renamed over state.json, so a crash leaves either the old or the new state
and never a partial file.
"""

from __future__ import annotations

import logging
import os
import shutil
import tempfile
from pathlib import Path

from pydantic import ValidationError

from aether.core.errors import classify, corrupted_job_state, job_not_found
from aether.core.models import PipelineJob
from aether.storage import layout

logger = logging.getLogger(__name__)


def atomic_write_text(path: Path, content: str) -> None:
    """Replace ``path`` with ``content`` atomically."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            fh.write(content)
            fh.flush()
            os.fsync(fh.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except FileNotFoundError:
            pass
        raise


def save_job(jobs_path: Path, job: PipelineJob) -> None:
    """Persist ``job`` to {jobs_path}/{job_id}/state.json.

    The job directory must already exist, so a job deleted while one of its
    steps is running is not recreated by that step's next save.

    Raises:
        ClassifiedError: job_not_found when the job directory is gone.
    """
    job_path = layout.job_dir(jobs_path, job.job_id)
    if not job_path.is_dir():
        raise job_not_found(job.job_id)
    job.touch()
    try:
        atomic_write_text(layout.state_path(job_path), job.model_dump_json(indent=2))
    except OSError as e:
        raise classify(e) from e
    logger.debug("Saved state for job %s", job.job_id)


def write_config_snapshot(jobs_path: Path, job: PipelineJob) -> None:
    """Write the job's configuration snapshot to config.json."""
    job_path = layout.job_dir(jobs_path, job.job_id)
    try:
        atomic_write_text(layout.config_path(job_path), job.config.model_dump_json(indent=2))
    except OSError as e:
        raise classify(e) from e


def load_job(jobs_path: Path, job_id: str) -> PipelineJob:
    """Load a job from disk.

    Raises:
        ClassifiedError: job_not_found when no state file exists,
            corrupted_job_state when it cannot be parsed.
    """
    path = layout.state_path(layout.job_dir(jobs_path, job_id))
    try:
        raw = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        raise job_not_found(job_id) from None
    except OSError as e:
        raise classify(e) from e
    try:
        return PipelineJob.model_validate_json(raw)
    except (ValidationError, ValueError) as e:
        raise corrupted_job_state(job_id, e) from e


def list_job_ids(jobs_path: Path) -> list[str]:
    """IDs of every directory under ``jobs_path`` that holds a state file."""
    if not jobs_path.is_dir():
        return []
    return sorted(
        p.name for p in jobs_path.iterdir() if p.is_dir() and layout.state_path(p).is_file()
    )


def delete_job_dir(jobs_path: Path, job_id: str) -> None:
    job_path = layout.job_dir(jobs_path, job_id)
    if not job_path.is_dir():
        raise job_not_found(job_id)
    shutil.rmtree(job_path)
