# tests/conftest.py — v1
"""Shared test fixtures for all unit and integration tests.

Provides isolated settings, sample NDJSON data, a recording sleep and
scriptable fake steps. No network access: HTTP goes through
httpx.MockTransport.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Callable

import httpx
import pytest

from aether.config.settings import Settings
from aether.core.models import StepMetrics
from aether.pipeline.steps.base_step import BaseStep, StepContext


# === FIXTURES: Environment isolation ===


@pytest.fixture(autouse=True)
def _isolate_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    """Drop AETHER_* variables and run from an empty working directory."""
    import os

    for key in list(os.environ):
        if key.startswith("AETHER_"):
            monkeypatch.delenv(key, raising=False)
    monkeypatch.setenv("HOME", str(tmp_path / "home"))
    monkeypatch.chdir(tmp_path)


@pytest.fixture
def jobs_dir(tmp_path: Path) -> Path:
    return tmp_path / "jobs"


@pytest.fixture
def make_settings(jobs_dir: Path) -> Callable[..., Settings]:
    """Factory for Settings isolated from .env and YAML files on disk."""

    def _make(**overrides: Any) -> Settings:
        overrides.setdefault("jobs_dir", str(jobs_dir))
        return Settings(_env_file=None, **overrides)

    return _make


@pytest.fixture
def settings(make_settings: Callable[..., Settings]) -> Settings:
    return make_settings()


# === FIXTURES: Sample data ===


PATIENTS = [
    {"resourceType": "Patient", "id": "p1", "gender": "female", "name": [{"family": "Doe"}]},
    {"resourceType": "Patient", "id": "p2", "gender": "male"},
    {"resourceType": "Patient", "id": "p3", "birthDate": "1970-01-01"},
]
OBSERVATIONS = [
    {
        "resourceType": "Observation",
        "id": "o1",
        "status": "final",
        "subject": {"reference": "Patient/p1"},
        "valueQuantity": {"value": 7.2, "unit": "mmol/L"},
    },
]


def write_ndjson(path: Path, records: list[dict[str, Any]], blank_lines: int = 0) -> Path:
    """Write records as NDJSON, optionally followed by blank lines."""
    path.parent.mkdir(parents=True, exist_ok=True)
    lines = [json.dumps(r) for r in records] + [""] * blank_lines
    path.write_text("\n".join(lines) + "\n", encoding="utf-8")
    return path


@pytest.fixture
def ndjson_dir(tmp_path: Path) -> Path:
    """Directory with Patient (3 records) and Observation (1 record) files."""
    root = tmp_path / "input"
    write_ndjson(root / "Patient.ndjson", PATIENTS)
    write_ndjson(root / "nested" / "Observation.ndjson", OBSERVATIONS)
    return root


@pytest.fixture
def crtdl_file(tmp_path: Path) -> Path:
    path = tmp_path / "cohort.crtdl"
    path.write_text(
        json.dumps(
            {
                "version": "http://json-schema.org/to-be-done/schema#",
                "cohortDefinition": {
                    "version": "http://to_be_decided.com/draft-1/schema#",
                    "inclusionCriteria": [[{"termCodes": [{"code": "E11"}]}]],
                },
                "dataExtraction": {
                    "attributeGroups": [{"groupReference": "Patient", "attributes": []}]
                },
            }
        ),
        encoding="utf-8",
    )
    return path


# === FIXTURES: Time and HTTP ===


class RecordingSleep:
    """Awaitable sleep replacement that records requested delays."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.fixture
def recording_sleep() -> RecordingSleep:
    return RecordingSleep()


def mock_client(handler: Callable[[httpx.Request], httpx.Response]) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


# === FIXTURES: Fake steps ===


class ScriptedStep(BaseStep):
    """Step whose outcomes are scripted: exceptions are raised, metrics returned."""

    def __init__(self, name: str, outcomes: list[Any] | None = None) -> None:
        self._name = name
        self.outcomes = list(outcomes or [StepMetrics()])
        self.calls = 0
        self.seen_jobs: list[Any] = []

    @property
    def name(self) -> str:
        return self._name

    async def execute(self, ctx: StepContext) -> StepMetrics:
        self.calls += 1
        self.seen_jobs.append(ctx.job)
        outcome = self.outcomes.pop(0) if len(self.outcomes) > 1 else self.outcomes[0]
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


@pytest.fixture
def scripted_step() -> type[ScriptedStep]:
    return ScriptedStep


@pytest.fixture
def ndjson_writer() -> Callable[..., Path]:
    return write_ndjson


@pytest.fixture
def make_mock_client() -> Callable[[Callable[[httpx.Request], httpx.Response]], httpx.AsyncClient]:
    return mock_client
