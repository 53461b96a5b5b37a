# src/storage/layout.py — v1
"""Job directory structure definition.

Everything a job owns lives under {jobs_dir}/{job_id}/.
"""

from __future__ import annotations

from pathlib import Path

# Files under {job_id}/
STATE_FILE = "state.json"
CONFIG_FILE = "config.json"
LOCK_FILE = ".lock"
LOG_FILE = "job.log"

# Step output directories under {job_id}/
IMPORT_DIR = "import"
PSEUDONYMIZED_DIR = "pseudonymized"
VALIDATION_DIR = "validation"
CSV_DIR = "csv"
PARQUET_DIR = "parquet"

# Output directory owned by each step.
STEP_OUTPUT_DIRS: dict[str, str] = {
    "torch": IMPORT_DIR,
    "local_import": IMPORT_DIR,
    "http_import": IMPORT_DIR,
    "dimp": PSEUDONYMIZED_DIR,
    "validation": VALIDATION_DIR,
    "csv_conversion": CSV_DIR,
    "parquet_conversion": PARQUET_DIR,
}


def job_dir(jobs_path: Path, job_id: str) -> Path:
    """Return root directory for a job."""
    return jobs_path / job_id


# --- Job-level paths ---

def state_path(job_path: Path) -> Path:
    return job_path / STATE_FILE


def config_path(job_path: Path) -> Path:
    return job_path / CONFIG_FILE


def lock_path(job_path: Path) -> Path:
    return job_path / LOCK_FILE


def log_path(job_path: Path) -> Path:
    return job_path / LOG_FILE


def import_dir(job_path: Path) -> Path:
    return job_path / IMPORT_DIR


def pseudonymized_dir(job_path: Path) -> Path:
    return job_path / PSEUDONYMIZED_DIR


def step_output_dir(job_path: Path, step_name: str) -> Path:
    """Return the output directory a step writes into."""
    return job_path / STEP_OUTPUT_DIRS[step_name]


def latest_data_dir(job_path: Path) -> Path:
    """Return pseudonymized/ when it holds NDJSON, otherwise import/."""
    pseudo = pseudonymized_dir(job_path)
    if pseudo.is_dir() and any(pseudo.glob("*.ndjson")):
        return pseudo
    return import_dir(job_path)


def ndjson_files(directory: Path) -> list[Path]:
    """Sorted NDJSON files directly inside ``directory``."""
    if not directory.is_dir():
        return []
    return sorted(p for p in directory.glob("*.ndjson") if p.is_file())


def ensure_job_directories(job_path: Path) -> None:
    """Create the job root (step outputs are created by their steps)."""
    job_path.mkdir(parents=True, exist_ok=True)
