# src/pipeline/registry.py — v1
"""Step registry: maps step names to step implementations.

The default registry holds every built-in step. Tests and embedders can
register replacements under the same names.
"""

from __future__ import annotations

import logging

from aether.pipeline.steps.base_step import BaseStep
from aether.pipeline.steps.conversion_step import CsvConversionStep, ParquetConversionStep
from aether.pipeline.steps.dimp_step import DimpStep
from aether.pipeline.steps.import_steps import HttpImportStep, LocalImportStep, TorchImportStep
from aether.pipeline.steps.validation_step import ValidationStep

logger = logging.getLogger(__name__)


class RegistryError(Exception):
    """Raised when a step is not registered."""


class StepRegistry:
    """Registry of pipeline step implementations."""

    def __init__(self, steps: list[BaseStep] | None = None) -> None:
        self._steps: dict[str, BaseStep] = {}
        for step in steps or []:
            self.register(step)

    @property
    def step_names(self) -> list[str]:
        return sorted(self._steps)

    def register(self, step: BaseStep) -> None:
        if step.name in self._steps:
            logger.debug("Overwriting registered step: %s", step.name)
        self._steps[step.name] = step

    def get(self, name: str) -> BaseStep | None:
        return self._steps.get(name)

    def get_or_raise(self, name: str) -> BaseStep:
        step = self._steps.get(name)
        if step is None:
            raise RegistryError(f"Step '{name}' is not registered")
        return step


def default_registry() -> StepRegistry:
    """Registry with every built-in step."""
    return StepRegistry(
        [
            LocalImportStep(),
            HttpImportStep(),
            TorchImportStep(),
            DimpStep(),
            ValidationStep(),
            CsvConversionStep(),
            ParquetConversionStep(),
        ]
    )
