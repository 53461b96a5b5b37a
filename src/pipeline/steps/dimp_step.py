# src/pipeline/steps/dimp_step.py — v1
"""De-identification step: send every imported resource through DIMP.

Each ``import/<name>.ndjson`` becomes ``pseudonymized/dimped_<name>.ndjson``.
Output is written to a ``.part`` file and renamed once complete. Bundles
above ``services.dimp.bundle_split_threshold_mb`` are sent in chunks and
reassembled; any other resource above it fails the step.
"""

from __future__ import annotations

import logging
import os
from typing import Any

from aether.core.models import StepMetrics
from aether.core.ndjson import MAX_BUNDLE_LINE_BYTES, iter_records, write_record
from aether.pipeline.steps.base_step import BaseStep, StepContext
from aether.services import bundle_splitter
from aether.services.dimp_client import DimpClient
from aether.storage import layout

logger = logging.getLogger(__name__)

OUTPUT_PREFIX = "dimped_"

# Thresholds above this usually exceed what a DIMP server accepts.
LARGE_THRESHOLD_MB = 50


async def pseudonymize_resource(
    client: DimpClient, resource: dict[str, Any], threshold_bytes: int
) -> dict[str, Any]:
    """Pseudonymize one resource, splitting an oversized Bundle into chunks."""
    if resource.get("resourceType") != "Bundle":
        bundle_splitter.check_resource_size(resource, threshold_bytes)
        return await client.pseudonymize(resource)

    chunks = bundle_splitter.split_bundle(resource, threshold_bytes)
    if len(chunks) == 1 and chunks[0] is resource:
        return await client.pseudonymize(resource)
    results = []
    for index, chunk in enumerate(chunks, start=1):
        logger.debug(
            "Sending chunk %d/%d of Bundle %s", index, len(chunks), resource.get("id")
        )
        results.append(await client.pseudonymize(chunk))
    bundle = bundle_splitter.reassemble_bundle(resource, results)
    logger.info(
        "Reassembled Bundle %s from %d chunks (%d entries)",
        resource.get("id"), len(chunks), len(bundle["entry"]),
    )
    return bundle


class DimpStep(BaseStep):
    name = "dimp"
    description = "Pseudonymize resources via DIMP"

    async def execute(self, ctx: StepContext) -> StepMetrics:
        dimp = ctx.config.services.dimp
        client = DimpClient(dimp.url, ctx.http)
        threshold = dimp.bundle_split_threshold_bytes
        if dimp.bundle_split_threshold_mb > LARGE_THRESHOLD_MB:
            logger.warning(
                "Bundle split threshold of %d MB is large; DIMP may reject such payloads",
                dimp.bundle_split_threshold_mb,
            )
        sources = layout.ndjson_files(layout.import_dir(ctx.job_path))
        out_dir = ctx.output_dir(self.name)
        out_dir.mkdir(parents=True, exist_ok=True)

        entries = 0
        written_bytes = 0
        for source in sources:
            dest = out_dir / f"{OUTPUT_PREFIX}{source.name}"
            part = dest.with_name(dest.name + ".part")
            count = 0
            try:
                with open(source, "rb") as src, open(part, "w", encoding="utf-8") as sink:
                    for record in iter_records(src, MAX_BUNDLE_LINE_BYTES):
                        write_record(sink, await pseudonymize_resource(client, record, threshold))
                        count += 1
                os.replace(part, dest)
            finally:
                part.unlink(missing_ok=True)
            entries += count
            written_bytes += dest.stat().st_size
            logger.info("Pseudonymized %d resources from %s", count, source.name)

        if not sources:
            logger.warning("No imported NDJSON files to pseudonymize")
        return StepMetrics(
            entry_count=entries,
            files_processed=len(sources),
            bytes_processed=written_bytes,
        )
