# src/config/models.py — v1
"""Nested configuration models shared by Settings and the per-job snapshot.

These are plain frozen Pydantic models: Settings composes them with
environment and YAML sources, and every PipelineJob carries a ProjectConfig
snapshot built from the same models so a job always runs with the
configuration it was created with.
"""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

# Step names accepted in pipeline.enabled_steps. "import" is an alias that
# resolves to the import variant matching the input type at job creation.
IMPORT_ALIAS = "import"
IMPORT_STEPS: tuple[str, ...] = ("torch", "local_import", "http_import")
PROCESSING_STEPS: tuple[str, ...] = (
    "dimp",
    "validation",
    "csv_conversion",
    "parquet_conversion",
)
KNOWN_STEPS: tuple[str, ...] = IMPORT_STEPS + PROCESSING_STEPS


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")


class TorchConfig(_Frozen):
    """TORCH extraction service."""

    base_url: str = ""
    username: str = ""
    password: str = ""
    file_server_url: str = ""
    extraction_timeout_minutes: int = Field(default=30, gt=0)
    polling_interval_seconds: float = Field(default=5.0, gt=0)
    max_polling_interval_seconds: float = Field(default=30.0, gt=0)


class DimpConfig(_Frozen):
    """De-identification (DIMP) service."""

    url: str = ""
    # Bundles larger than this are sent in chunks; other resources larger
    # than this are rejected.
    bundle_split_threshold_mb: int = 10

    @property
    def bundle_split_threshold_bytes(self) -> int:
        return self.bundle_split_threshold_mb * 1024 * 1024


class ConversionConfig(_Frozen):
    """Local format conversion (CSV / Parquet)."""

    max_workers: int = Field(default=4, ge=1)


class ServicesConfig(_Frozen):
    torch: TorchConfig = TorchConfig()
    dimp: DimpConfig = DimpConfig()
    csv_conversion: ConversionConfig = ConversionConfig()
    parquet_conversion: ConversionConfig = ConversionConfig()
    http_timeout_seconds: float = Field(default=30.0, gt=0)


class PipelineConfig(_Frozen):
    enabled_steps: list[str] = Field(default_factory=lambda: [IMPORT_ALIAS])


class RetryConfig(_Frozen):
    """Retry policy for transient step failures."""

    max_attempts: int = 5
    initial_backoff_ms: int = 1000
    max_backoff_ms: int = 30000


class LoggingConfig(_Frozen):
    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    format: Literal["json", "text"] = "text"
    file: str = ""
    rotation: str = "10MB"
    retention: int = 5


class ProjectConfig(_Frozen):
    """Snapshot of the configuration a job was created with."""

    services: ServicesConfig = ServicesConfig()
    pipeline: PipelineConfig = PipelineConfig()
    retry: RetryConfig = RetryConfig()
    jobs_dir: str = "./jobs"
    stale_lock_timeout_s: float = 3600.0
