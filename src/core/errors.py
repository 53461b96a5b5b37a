# src/core/errors.py — v1
"""Error taxonomy: classified errors with category, retryability and guidance.

Every failure that leaves the core is a ClassifiedError. Raw exceptions are
converted with classify(); well-known situations use the helper constructors
below so every step reports them with the same wording and remediation.
"""

from __future__ import annotations

import errno
from typing import Literal

import httpx

ErrorCategory = Literal[
    "network", "filesystem", "validation", "service", "configuration", "state"
]

# Substrings (lower-case) that identify transient connectivity failures.
NETWORK_ERROR_PATTERNS: tuple[str, ...] = (
    "connection refused",
    "connection reset",
    "no such host",
    "name or service not known",
    "timeout",
    "timed out",
    "temporary failure",
    "network is unreachable",
    "deadline exceeded",
    "eof",
)


class ClassifiedError(Exception):
    """A failure tagged with category, retryability and user guidance."""

    def __init__(
        self,
        category: ErrorCategory,
        message: str,
        *,
        cause: BaseException | None = None,
        http_status: int | None = None,
        guidance: list[str] | None = None,
        retryable: bool = False,
    ) -> None:
        self.category: ErrorCategory = category
        self.message = message
        self.cause = cause
        self.http_status = http_status
        self.guidance = list(guidance or [])
        self.retryable = retryable
        super().__init__(self._render())
        if cause is not None:
            self.__cause__ = cause

    def _render(self) -> str:
        text = f"[{self.category.upper()}] {self.message}"
        if self.cause is not None:
            text += f": {self.cause}"
        if self.http_status:
            text += f" (HTTP {self.http_status})"
        return text

    def user_message(self) -> str:
        """Multi-line message for terminal output."""
        lines = [f"Error ({self.category}): {self.message}", ""]
        if self.guidance:
            lines.append("How to fix:")
            lines.extend(f"  {i}. {g}" for i, g in enumerate(self.guidance, start=1))
        if self.cause is not None:
            lines.extend(["", f"Technical details: {self.cause}"])
        if self.retryable:
            lines.extend(
                [
                    "",
                    "This error is transient; resuming the job with "
                    "'aether pipeline continue <job-id>' retries it automatically.",
                ]
            )
        return "\n".join(lines)


class RetryExhaustedError(ClassifiedError):
    """The last classified error of an operation that ran out of attempts."""

    def __init__(self, last_error: ClassifiedError, attempts: int) -> None:
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(
            last_error.category,
            f"{last_error.message} (gave up after {attempts} attempts)",
            cause=last_error.cause,
            http_status=last_error.http_status,
            guidance=last_error.guidance,
            retryable=last_error.retryable,
        )


# === NETWORK ===


def network_unreachable(url: str, cause: BaseException | None = None) -> ClassifiedError:
    return ClassifiedError(
        "network",
        f"Cannot reach service at {url}",
        cause=cause,
        guidance=[
            "Check that the service is running",
            f"Verify the URL is correct: {url}",
            "Check your network connection",
            "Ensure no firewall is blocking the connection",
        ],
        retryable=True,
    )


def network_timeout(url: str, cause: BaseException | None = None) -> ClassifiedError:
    return ClassifiedError(
        "network",
        f"Request to {url} timed out",
        cause=cause,
        guidance=[
            "The service may be overloaded or slow to respond",
            "Wait a moment and try again",
            "Check service health and performance",
        ],
        retryable=True,
    )


# === FILESYSTEM ===


def file_not_found(path: str) -> ClassifiedError:
    return ClassifiedError(
        "filesystem",
        f"File or directory not found: {path}",
        guidance=[
            "Check that the path is correct",
            "Ensure the file or directory exists",
            "Verify you have permission to access it",
        ],
    )


def permission_denied(path: str, cause: BaseException | None = None) -> ClassifiedError:
    return ClassifiedError(
        "filesystem",
        f"Permission denied accessing: {path}",
        cause=cause,
        guidance=[
            "Check file and directory permissions",
            "Ensure your user has read/write access",
        ],
    )


def disk_full(path: str, cause: BaseException | None = None) -> ClassifiedError:
    return ClassifiedError(
        "filesystem",
        "No space left on device",
        cause=cause,
        guidance=[
            "Free up disk space",
            f"Clean old jobs from {path}",
            "Point jobs_dir at a location with more space",
        ],
    )


# === VALIDATION ===


def invalid_data_file(
    filename: str, line: int = 0, cause: BaseException | None = None
) -> ClassifiedError:
    guidance = [
        f"Check the FHIR file format in {filename}",
        "Ensure the file contains valid NDJSON (one JSON object per line)",
        "Verify each line is a valid FHIR resource",
    ]
    if line > 0:
        guidance.append(f"Error occurred at line {line}")
    return ClassifiedError(
        "validation",
        f"Invalid FHIR data in {filename}" + (f" at line {line}" if line > 0 else ""),
        cause=cause,
        guidance=guidance,
    )


def oversized_resource(
    resource_type: str, resource_id: str, size: int, threshold: int
) -> ClassifiedError:
    """A single resource (or Bundle entry) larger than the DIMP split threshold."""
    return ClassifiedError(
        "validation",
        f"Resource {resource_type}/{resource_id} ({size} bytes) exceeds the "
        f"DIMP payload threshold ({threshold} bytes) and cannot be split",
        guidance=[
            "Review the data quality; the resource may carry unnecessary data",
            "Increase the payload limit of the DIMP server",
            "Increase services.dimp.bundle_split_threshold_mb",
        ],
    )


def empty_input() -> ClassifiedError:
    return ClassifiedError(
        "validation",
        "Input source cannot be empty",
        guidance=[
            "Pass a local directory, an HTTP(S) URL, a TORCH result URL or a CRTDL file",
        ],
    )


def prerequisite_not_met(step_name: str, prerequisite: str) -> ClassifiedError:
    return ClassifiedError(
        "validation",
        f"Cannot run {step_name}: prerequisite step {prerequisite} has not completed",
        guidance=[
            f"Ensure the {prerequisite} step completes successfully first",
            "Use 'aether pipeline status <job-id>' to check step progress",
            f"Run 'aether pipeline continue <job-id>' to resume from {prerequisite}",
        ],
    )


# === SERVICE ===


def service_unavailable(
    service_name: str, status_code: int, cause: BaseException | None = None
) -> ClassifiedError:
    return ClassifiedError(
        "service",
        f"{service_name} service is temporarily unavailable",
        cause=cause,
        http_status=status_code,
        guidance=[
            "The service may be experiencing issues",
            "Wait a moment; automatic retry is in progress",
            f"Check the {service_name} service logs for errors",
        ],
        retryable=True,
    )


def service_bad_request(service_name: str, status_code: int, message: str) -> ClassifiedError:
    return ClassifiedError(
        "service",
        f"{service_name} rejected the request: {message}",
        http_status=status_code,
        guidance=[
            "The data sent to the service was invalid or malformed",
            "Check FHIR resource structure and content",
            "This error requires manual investigation; automatic retry will not help",
        ],
    )


def service_error(service_name: str, status_code: int, message: str = "") -> ClassifiedError:
    """Pick the 4xx or 5xx helper for an HTTP error status."""
    if status_code >= 500:
        return service_unavailable(
            service_name, status_code, RuntimeError(message) if message else None
        )
    return service_bad_request(service_name, status_code, message or f"HTTP {status_code}")


# === CONFIGURATION ===


def missing_service_url(step_name: str) -> ClassifiedError:
    return ClassifiedError(
        "configuration",
        f"{step_name} step is enabled but its service URL is not configured",
        guidance=[
            "Add the service URL to your aether.yaml config file",
            f"Or remove the {step_name} step from pipeline.enabled_steps",
        ],
    )


def invalid_config(field: str, reason: str) -> ClassifiedError:
    return ClassifiedError(
        "configuration",
        f"Invalid configuration: {reason}",
        guidance=[
            f"Check the '{field}' field in your config file",
            "Ensure all required fields are populated",
        ],
    )


# === STATE ===


def job_not_found(job_id: str) -> ClassifiedError:
    return ClassifiedError(
        "state",
        f"Job '{job_id}' not found",
        guidance=[
            "Check the job ID is correct",
            "Use 'aether job list' to see all available jobs",
            "The job may have been deleted",
        ],
    )


def corrupted_job_state(job_id: str, cause: BaseException | None = None) -> ClassifiedError:
    return ClassifiedError(
        "state",
        f"Job state file for '{job_id}' is corrupted",
        cause=cause,
        guidance=[
            "The job state file may have been edited by hand or truncated",
            f"Check jobs/{job_id}/state.json for syntax errors",
            "Delete the job and start again if it cannot be repaired",
        ],
    )


def job_locked(job_id: str) -> ClassifiedError:
    return ClassifiedError(
        "state",
        f"Job '{job_id}' is currently being modified by another process",
        guidance=[
            "Wait for the other operation to complete",
            "Check whether another aether process is running for this job",
            f"If stuck, remove the lock file: jobs/{job_id}/.lock",
        ],
        retryable=True,
    )


# === CLASSIFICATION ===


def is_network_error(exc: BaseException) -> bool:
    """True for connectivity failures that are worth retrying."""
    if isinstance(exc, (httpx.TransportError, ConnectionError, TimeoutError)):
        return True
    msg = str(exc).lower()
    return any(p in msg for p in NETWORK_ERROR_PATTERNS)


def _http_status_of(exc: BaseException) -> int | None:
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code
    status = getattr(exc, "status_code", None)
    return status if isinstance(status, int) else None


def classify(exc: BaseException) -> ClassifiedError:
    """Convert any exception into a ClassifiedError.

    Already-classified errors pass through unchanged.
    """
    if isinstance(exc, ClassifiedError):
        return exc

    status = _http_status_of(exc)
    if status is not None and status >= 500:
        return ClassifiedError(
            "service",
            "Service returned a server error",
            cause=exc,
            http_status=status,
            guidance=["The service may be experiencing issues", "Will retry automatically"],
            retryable=True,
        )
    if status is not None and 400 <= status <= 499:
        return ClassifiedError(
            "service",
            "Service rejected the request",
            cause=exc,
            http_status=status,
            guidance=[
                "Check the data and parameters sent to the service",
                "This error requires manual investigation",
            ],
        )

    if is_network_error(exc):
        return ClassifiedError(
            "network",
            "Network connectivity issue",
            cause=exc,
            guidance=["Check network connection", "Verify service is running", "Will retry automatically"],
            retryable=True,
        )

    msg = str(exc).lower()
    err_no = getattr(exc, "errno", None)
    if err_no == errno.ENOSPC or "no space left" in msg or "disk full" in msg:
        return ClassifiedError(
            "filesystem",
            "Insufficient disk space",
            cause=exc,
            guidance=["Free up disk space", "Clean old jobs", "Point jobs_dir at a different location"],
        )
    if isinstance(exc, PermissionError) or "permission denied" in msg or "access denied" in msg:
        return ClassifiedError(
            "filesystem",
            "Permission denied",
            cause=exc,
            guidance=["Check file and directory permissions", "Ensure proper access rights"],
        )
    if isinstance(exc, FileNotFoundError):
        return file_not_found(str(exc.filename or exc))

    return ClassifiedError(
        "validation",
        "An error occurred",
        cause=exc,
        guidance=["Check the technical details below", "See the job log for more information"],
    )
