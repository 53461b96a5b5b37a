# src/main.py — v1
"""CLI entry point: pipeline and job commands.

Usage:
    aether pipeline start <input>
    aether pipeline continue <job-id>
    aether pipeline status <job-id>
    aether job list
    aether job logs <job-id> [--follow]
    aether job delete <job-id> [--force]
    aether job run <job-id> --step <name>

Exit codes: 0 success, 1 operational error, 2 configuration error,
3 job state error, 130 interrupted.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path

from aether.config.models import KNOWN_STEPS
from aether.config.settings import Settings, load_settings
from aether.core.errors import ClassifiedError
from aether.core.models import PipelineJob
from aether.logging.logger import setup_logging
from aether.pipeline.job import JobOrchestrator
from aether.storage import layout
from aether.version import __version__

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_CONFIG = 2
EXIT_STATE = 3
EXIT_INTERRUPTED = 130

FOLLOW_POLL_S = 1.0


def exit_code_for(error: ClassifiedError) -> int:
    if error.category == "configuration":
        return EXIT_CONFIG
    if error.category == "state":
        return EXIT_STATE
    return EXIT_ERROR


def main(argv: list[str] | None = None) -> int:
    """Main CLI entry point."""
    parser = _build_parser()
    args = parser.parse_args(argv)

    if not hasattr(args, "func"):
        parser.print_help()
        return EXIT_ERROR

    try:
        settings = load_settings(args.config)
        _setup_logging(settings, args.verbose)
        return asyncio.run(args.func(args, settings))
    except KeyboardInterrupt:
        print("\nInterrupted. Resume with 'aether pipeline continue <job-id>'.", file=sys.stderr)
        return EXIT_INTERRUPTED
    except ClassifiedError as exc:
        print(exc.user_message(), file=sys.stderr)
        return exit_code_for(exc)
    except Exception as exc:
        logger.error("Fatal error: %s", exc, exc_info=args.verbose)
        return EXIT_ERROR


def _build_parser() -> argparse.ArgumentParser:
    """Build CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="aether",
        description=f"aether v{__version__} - FHIR data pipeline orchestrator",
    )
    parser.add_argument(
        "--version", action="version", version=f"%(prog)s {__version__}",
    )
    parser.add_argument(
        "-v", "--verbose", action="store_true",
        help="Enable debug logging",
    )
    parser.add_argument(
        "-c", "--config", type=Path, default=None,
        help="YAML config file (default: ./aether.yaml, ~/.config/aether/aether.yaml)",
    )

    commands = parser.add_subparsers(dest="command")

    # --- pipeline ---
    p_pipeline = commands.add_parser("pipeline", help="Start, resume and inspect pipelines")
    pipeline_cmds = p_pipeline.add_subparsers(dest="pipeline_command")

    p_start = pipeline_cmds.add_parser("start", help="Create a job and run all steps")
    p_start.add_argument(
        "input",
        help="Local directory, HTTP(S) URL, TORCH result URL or CRTDL file",
    )
    p_start.set_defaults(func=_cmd_pipeline_start)

    p_continue = pipeline_cmds.add_parser("continue", help="Resume a job")
    p_continue.add_argument("job_id")
    p_continue.set_defaults(func=_cmd_pipeline_continue)

    p_status = pipeline_cmds.add_parser("status", help="Show job status")
    p_status.add_argument("job_id")
    p_status.set_defaults(func=_cmd_pipeline_status)

    # --- job ---
    p_job = commands.add_parser("job", help="Administer jobs")
    job_cmds = p_job.add_subparsers(dest="job_command")

    p_list = job_cmds.add_parser("list", help="List all jobs")
    p_list.set_defaults(func=_cmd_job_list)

    p_logs = job_cmds.add_parser("logs", help="Show a job's log")
    p_logs.add_argument("job_id")
    p_logs.add_argument("-f", "--follow", action="store_true", help="Keep printing new lines")
    p_logs.set_defaults(func=_cmd_job_logs)

    p_delete = job_cmds.add_parser("delete", help="Delete a job and its data")
    p_delete.add_argument("job_id")
    p_delete.add_argument("--force", action="store_true", help="Delete even if locked")
    p_delete.set_defaults(func=_cmd_job_delete)

    p_run = job_cmds.add_parser("run", help="Run a single step of a job")
    p_run.add_argument("job_id")
    p_run.add_argument("--step", required=True, choices=list(KNOWN_STEPS))
    p_run.set_defaults(func=_cmd_job_run)

    return parser


# --- pipeline commands ---


async def _cmd_pipeline_start(args: argparse.Namespace, settings: Settings) -> int:
    orchestrator = JobOrchestrator(settings)
    job = orchestrator.create_job(args.input)
    print(f"Created job {job.job_id}")
    try:
        await orchestrator.run_pipeline(job)
    finally:
        _print_job(job)
    return EXIT_OK


async def _cmd_pipeline_continue(args: argparse.Namespace, settings: Settings) -> int:
    orchestrator = JobOrchestrator(settings)
    job = await orchestrator.continue_job(args.job_id)
    _print_job(job)
    return EXIT_OK


async def _cmd_pipeline_status(args: argparse.Namespace, settings: Settings) -> int:
    job = JobOrchestrator(settings).get_status(args.job_id)
    _print_job(job)
    return EXIT_OK


# --- job commands ---


async def _cmd_job_list(args: argparse.Namespace, settings: Settings) -> int:
    jobs = JobOrchestrator(settings).list_jobs()
    if not jobs:
        print("No jobs found")
        return EXIT_OK
    print(f"{'JOB ID':<38} {'STATUS':<12} {'STEP':<20} {'CREATED':<20} INPUT")
    for job in jobs:
        print(
            f"{job.job_id:<38} {job.status:<12} {job.current_step:<20} "
            f"{job.created_at.strftime('%Y-%m-%d %H:%M:%S'):<20} {job.input_source}"
        )
    return EXIT_OK


async def _cmd_job_logs(args: argparse.Namespace, settings: Settings) -> int:
    orchestrator = JobOrchestrator(settings)
    orchestrator.get_status(args.job_id)
    log_file = layout.log_path(orchestrator.job_path(args.job_id))
    if not log_file.exists():
        print("No log entries yet")
        if not args.follow:
            return EXIT_OK

    position = 0
    while True:
        if log_file.exists():
            with open(log_file, encoding="utf-8") as fh:
                fh.seek(position)
                chunk = fh.read()
                position = fh.tell()
            if chunk:
                sys.stdout.write(chunk)
                sys.stdout.flush()
        if not args.follow:
            return EXIT_OK
        await asyncio.sleep(FOLLOW_POLL_S)


async def _cmd_job_delete(args: argparse.Namespace, settings: Settings) -> int:
    JobOrchestrator(settings).delete_job(args.job_id, force=args.force)
    print(f"Deleted job {args.job_id}")
    return EXIT_OK


async def _cmd_job_run(args: argparse.Namespace, settings: Settings) -> int:
    orchestrator = JobOrchestrator(settings)
    job = orchestrator.get_status(args.job_id)
    try:
        await orchestrator.run_step(job, args.step, resume=True)
    finally:
        _print_job(job)
    return EXIT_OK


# --- output ---


def _print_job(job: PipelineJob) -> None:
    """Print a human-readable job summary."""
    print(f"\nJob {job.job_id}")
    print(f"  Status:   {job.status}")
    print(f"  Input:    {job.input_source} ({job.input_type})")
    print(f"  Created:  {job.created_at.isoformat()}")
    print("  Steps:")
    for step in job.steps:
        line = f"    {step.name:<20} {step.status:<10}"
        if step.status in ("completed", "skipped"):
            line += f" {step.entry_count} entries, {step.files_processed} files"
        if step.retry_count:
            line += f" (retries: {step.retry_count})"
        print(line)
        if step.last_error is not None and step.status == "failed":
            print(f"      error: {step.last_error.message}")


def _setup_logging(settings: Settings, verbose: bool) -> None:
    """Configure logging for CLI usage."""
    setup_logging(
        level="DEBUG" if verbose else settings.logging.level,
        log_format=settings.logging.format,
        log_file=settings.logging.file or None,
        rotation=settings.logging.rotation,
        retention=settings.logging.retention,
    )
    # Quiet noisy libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


if __name__ == "__main__":
    sys.exit(main())
