# src/pipeline/steps/import_steps.py — v1
"""Import step variants: local directory, HTTP download and TORCH extraction.

All three write NDJSON into ``import/`` and report records, files and bytes.
"""

from __future__ import annotations

import logging
from pathlib import Path

from aether.core.models import StepMetrics
from aether.core.ndjson import MAX_BUNDLE_LINE_BYTES, count_records
from aether.pipeline.input_detection import validate_crtdl_syntax
from aether.pipeline.steps.base_step import BaseStep, StepContext
from aether.services.importer import import_from_url, import_local_directory
from aether.services.torch_client import TorchClient

logger = logging.getLogger(__name__)


class LocalImportStep(BaseStep):
    """Copy ``*.ndjson`` (recursively) from a local directory."""

    name = "local_import"
    description = "Import NDJSON files from a local directory"

    async def execute(self, ctx: StepContext) -> StepMetrics:
        files = import_local_directory(
            Path(ctx.job.input_source).expanduser(), ctx.output_dir(self.name)
        )
        return StepMetrics(
            entry_count=sum(f.records for f in files),
            files_processed=len(files),
            bytes_processed=sum(f.size for f in files),
        )


class HttpImportStep(BaseStep):
    """Stream one NDJSON file from an HTTP(S) URL."""

    name = "http_import"
    description = "Download NDJSON from a URL"

    async def execute(self, ctx: StepContext) -> StepMetrics:
        out_dir = ctx.output_dir(self.name)
        out_dir.mkdir(parents=True, exist_ok=True)
        imported = await import_from_url(ctx.http, ctx.job.input_source, out_dir)
        logger.info("Downloaded %s (%d records)", imported.path.name, imported.records)
        return StepMetrics(
            entry_count=imported.records,
            files_processed=1,
            bytes_processed=imported.size,
        )


class TorchImportStep(BaseStep):
    """Extract data through TORCH from a CRTDL or an existing result URL.

    The status URL is recorded on the job as soon as it is known, so a
    retried or resumed step polls the same extraction instead of submitting
    the CRTDL again.
    """

    name = "torch"
    description = "Extract data via TORCH"

    async def execute(self, ctx: StepContext) -> StepMetrics:
        client = TorchClient(
            ctx.config.services.torch, ctx.http, ctx.retry_policy, sleep=ctx.sleep
        )
        status_url = ctx.lookup("torch_extraction_url")
        if not status_url:
            if ctx.job.input_type == "torch_result_url":
                status_url = ctx.job.input_source
            else:
                validate_crtdl_syntax(ctx.job.input_source)
                status_url = await client.submit_extraction(ctx.job.input_source)
            await ctx.record("torch_extraction_url", status_url)
        else:
            logger.info("Resuming TORCH extraction at %s", status_url)

        urls = await client.poll_extraction(status_url)
        out_dir = ctx.output_dir(self.name)
        out_dir.mkdir(parents=True, exist_ok=True)
        if not urls:
            logger.warning("TORCH extraction produced no files")
            return StepMetrics()

        downloads = await client.download_files(urls, out_dir)
        return StepMetrics(
            entry_count=sum(count_records(path, MAX_BUNDLE_LINE_BYTES) for path, _ in downloads),
            files_processed=len(downloads),
            bytes_processed=sum(size for _, size in downloads),
        )
