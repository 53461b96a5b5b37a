# src/pipeline/steps/validation_step.py — v1
"""Structural validation of the latest data (pseudonymized/ or import/).

Every record must carry a string ``resourceType``; ``id`` is optional but
must be a string when present. The report is written to
``validation/report.json``; any invalid record fails the step.
"""

from __future__ import annotations

import logging
from datetime import datetime

from pydantic import BaseModel, Field

from aether.core.errors import ClassifiedError
from aether.core.models import StepMetrics, utcnow
from aether.core.ndjson import FHIRResource, read_ndjson_file
from aether.pipeline.steps.base_step import BaseStep, StepContext
from aether.storage import layout
from aether.storage.state_store import atomic_write_text

logger = logging.getLogger(__name__)

REPORT_FILE = "report.json"
MAX_REPORTED_ISSUES = 100


class ValidationIssue(BaseModel):
    file: str
    record: int
    message: str


class ValidationReport(BaseModel):
    source_dir: str
    checked_at: datetime = Field(default_factory=utcnow)
    files: int = 0
    records: int = 0
    invalid_records: int = 0
    by_resource_type: dict[str, int] = Field(default_factory=dict)
    issues: list[ValidationIssue] = Field(default_factory=list)

    @property
    def valid(self) -> bool:
        return self.invalid_records == 0


def check_record(record: FHIRResource) -> str | None:
    """Problem description for ``record``, or None when it is valid."""
    try:
        resource_type = record.resource_type
    except ValueError as e:
        return f"resourceType: {e}"
    if not resource_type:
        return "resourceType is empty"
    if "id" in record and not isinstance(record["id"], str):
        return "id is not a string"
    return None


class ValidationStep(BaseStep):
    name = "validation"
    description = "Validate FHIR resource structure"

    async def execute(self, ctx: StepContext) -> StepMetrics:
        source_dir = layout.latest_data_dir(ctx.job_path)
        report = ValidationReport(source_dir=source_dir.name)
        files = layout.ndjson_files(source_dir)

        for path in files:
            position = 0

            def on_record(record: FHIRResource, _path=path) -> None:
                nonlocal position
                position += 1
                problem = check_record(record)
                if problem is None:
                    rtype = record.resource_type
                    report.by_resource_type[rtype] = report.by_resource_type.get(rtype, 0) + 1
                    return
                report.invalid_records += 1
                if len(report.issues) < MAX_REPORTED_ISSUES:
                    report.issues.append(
                        ValidationIssue(file=_path.name, record=position, message=problem)
                    )

            report.records += read_ndjson_file(path, on_record)
            report.files += 1

        out_dir = ctx.output_dir(self.name)
        atomic_write_text(out_dir / REPORT_FILE, report.model_dump_json(indent=2))
        logger.info(
            "Validated %d records in %d files (%d invalid)",
            report.records, report.files, report.invalid_records,
        )

        if not report.valid:
            raise ClassifiedError(
                "validation",
                f"{report.invalid_records} of {report.records} records failed validation",
                guidance=[
                    f"See {out_dir / REPORT_FILE} for the offending records",
                    "Fix the source data and start a new job",
                ],
            )
        return StepMetrics(
            entry_count=report.records,
            files_processed=report.files,
            bytes_processed=sum(p.stat().st_size for p in files),
        )
