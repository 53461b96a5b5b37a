# src/config/settings.py — v1
"""Typed configuration loaded via pydantic-settings.

Sources, highest priority first: keyword overrides, AETHER_* environment
variables (nested with ``__``, e.g. AETHER_SERVICES__DIMP__URL), .env,
YAML (aether.yaml in the working directory, then
~/.config/aether/aether.yaml, or an explicit file), then defaults.
``${VAR}`` references inside string values are expanded from the
environment.
"""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Any

from pydantic import ValidationError, model_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    YamlConfigSettingsSource,
)

from aether.config.models import (
    IMPORT_ALIAS,
    IMPORT_STEPS,
    KNOWN_STEPS,
    LoggingConfig,
    PipelineConfig,
    ProjectConfig,
    RetryConfig,
    ServicesConfig,
)
from aether.core.errors import ClassifiedError, invalid_config

# Later entries win, so the working-directory file overrides the user one.
DEFAULT_CONFIG_FILES: list[str] = ["~/.config/aether/aether.yaml", "aether.yaml"]

_ENV_REF = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")


def expand_env_refs(value: Any) -> Any:
    """Recursively replace ``${VAR}`` in strings with the environment value."""
    if isinstance(value, str):
        return _ENV_REF.sub(lambda m: os.environ.get(m.group(1), ""), value)
    if isinstance(value, dict):
        return {k: expand_env_refs(v) for k, v in value.items()}
    if isinstance(value, list):
        return [expand_env_refs(v) for v in value]
    return value


class Settings(BaseSettings):
    """Application settings."""

    model_config = SettingsConfigDict(
        env_prefix="AETHER_",
        env_nested_delimiter="__",
        env_file=".env",
        env_file_encoding="utf-8",
        yaml_file=DEFAULT_CONFIG_FILES,
        extra="ignore",
    )

    # === Services ===
    services: ServicesConfig = ServicesConfig()

    # === Pipeline ===
    pipeline: PipelineConfig = PipelineConfig()
    retry: RetryConfig = RetryConfig()

    # === Jobs ===
    jobs_dir: str = "./jobs"
    stale_lock_timeout_s: float = 3600.0

    # === Logging ===
    logging: LoggingConfig = LoggingConfig()

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            YamlConfigSettingsSource(settings_cls),
            file_secret_settings,
        )

    # --- Validators ---

    @model_validator(mode="before")
    @classmethod
    def expand_variables(cls, data: Any) -> Any:
        return expand_env_refs(data)

    @model_validator(mode="after")
    def validate_config_consistency(self) -> Settings:
        """Collect every consistency problem and report them together."""
        errors: list[str] = []
        steps = self.pipeline.enabled_steps

        if not steps:
            errors.append("pipeline.enabled_steps must contain at least one step")
        else:
            unknown = [s for s in steps if s not in KNOWN_STEPS and s != IMPORT_ALIAS]
            if unknown:
                errors.append(f"unknown step(s) in pipeline.enabled_steps: {', '.join(unknown)}")
            if not is_import_family(steps[0]):
                errors.append(
                    f"first step must be an import step ({IMPORT_ALIAS}, "
                    f"{', '.join(IMPORT_STEPS)}), got {steps[0]!r}"
                )
            if sum(1 for s in steps if is_import_family(s)) > 1:
                errors.append("pipeline.enabled_steps may contain only one import step")
            if len(set(steps)) != len(steps):
                errors.append("pipeline.enabled_steps contains duplicate steps")
            if "dimp" in steps and not self.services.dimp.url:
                errors.append("dimp step is enabled but services.dimp.url is not set")

        if not 1 <= self.services.dimp.bundle_split_threshold_mb <= 100:
            errors.append("services.dimp.bundle_split_threshold_mb must be between 1 and 100")

        if not 1 <= self.retry.max_attempts <= 10:
            errors.append("retry.max_attempts must be between 1 and 10")
        if self.retry.initial_backoff_ms <= 0 or self.retry.max_backoff_ms <= 0:
            errors.append("retry backoff values must be positive")
        elif self.retry.initial_backoff_ms >= self.retry.max_backoff_ms:
            errors.append("retry.initial_backoff_ms must be < retry.max_backoff_ms")

        if not self.jobs_dir.strip():
            errors.append("jobs_dir must not be empty")
        if self.stale_lock_timeout_s <= 0:
            errors.append("stale_lock_timeout_s must be positive")

        if errors:
            raise ClassifiedError(
                "configuration",
                "Invalid configuration: " + "; ".join(errors),
                guidance=[
                    "Check your aether.yaml and AETHER_* environment variables",
                    "Ensure all required fields are populated",
                ],
            )
        return self

    # --- Helpers ---

    @property
    def jobs_path(self) -> Path:
        return Path(self.jobs_dir).expanduser()

    def to_project_config(self) -> ProjectConfig:
        """Snapshot the job-relevant part of the settings."""
        return ProjectConfig(
            services=self.services,
            pipeline=self.pipeline,
            retry=self.retry,
            jobs_dir=self.jobs_dir,
            stale_lock_timeout_s=self.stale_lock_timeout_s,
        )


def is_import_family(step_name: str) -> bool:
    return step_name == IMPORT_ALIAS or step_name in IMPORT_STEPS


def load_settings(config_file: str | Path | None = None, **overrides: Any) -> Settings:
    """Load settings with optional explicit YAML file and overrides.

    Args:
        config_file: YAML file replacing the default search locations.
        **overrides: Field-level overrides (for testing or CLI flags).

    Returns:
        Validated Settings instance.

    Raises:
        ClassifiedError: configuration category, for a missing file or an
            invalid combination of values.
    """
    settings_cls: type[Settings] = Settings
    if config_file is not None:
        path = Path(config_file).expanduser()
        if not path.is_file():
            raise invalid_config("--config", f"config file not found: {path}")
        settings_cls = type(
            "FileSettings",
            (Settings,),
            {"model_config": SettingsConfigDict(yaml_file=str(path))},
        )
    try:
        return settings_cls(**overrides)
    except ValidationError as e:
        first = e.errors()[0] if e.errors() else {}
        field = ".".join(str(p) for p in first.get("loc", ())) or "config"
        raise invalid_config(field, str(e)) from e
