# src/pipeline/steps/conversion_step.py — v1
"""Tabular conversion steps: NDJSON grouped by resourceType to CSV / Parquet.

Nested objects and arrays are flattened to dotted column names
(``name.0.family``). Flattened rows are spooled to one NDJSON file per
resource type while the column order and value kinds are collected; the
writers then read each spool back in batches of BATCH_ROWS, so memory use
does not grow with the dataset. One file per resource type is written by a
bounded pool of worker threads. No records means the step is skipped.
"""

from __future__ import annotations

import asyncio
import csv
import json
import logging
import os
import tempfile
from abc import abstractmethod
from pathlib import Path
from typing import Any, Iterator

import pyarrow as pa
import pyarrow.parquet as pq

from aether.core.errors import classify
from aether.core.models import StepMetrics
from aether.core.ndjson import read_ndjson_file, resource_type_from_filename
from aether.pipeline.steps.base_step import BaseStep, StepContext
from aether.storage import layout

logger = logging.getLogger(__name__)

Row = dict[str, Any]

BATCH_ROWS = 1000


def flatten(value: Any, prefix: str = "", out: Row | None = None) -> Row:
    """Flatten nested dicts/lists into a single-level dict with dotted keys."""
    if out is None:
        out = {}
    if isinstance(value, dict):
        if not value and prefix:
            out[prefix] = None
        for key, item in value.items():
            flatten(item, f"{prefix}.{key}" if prefix else str(key), out)
    elif isinstance(value, list):
        if not value and prefix:
            out[prefix] = None
        for index, item in enumerate(value):
            flatten(item, f"{prefix}.{index}" if prefix else str(index), out)
    else:
        out[prefix] = value
    return out


def value_kind(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, bool):
        return "bool"
    if isinstance(value, int):
        return "int"
    if isinstance(value, float):
        return "float"
    return "str"


def arrow_type(kinds: set[str]) -> pa.DataType:
    """Column type for the value kinds seen; mixed kinds become strings."""
    if not kinds:
        return pa.null()
    if kinds <= {"int", "float"}:
        return pa.float64() if "float" in kinds else pa.int64()
    if kinds == {"bool"}:
        return pa.bool_()
    return pa.string()


class ResourceSpool:
    """Flattened rows of one resource type, spilled to disk.

    Only the column order (first seen) and the kinds of values per column
    are kept in memory.
    """

    def __init__(self, resource_type: str, path: Path) -> None:
        self.resource_type = resource_type
        self.path = path
        self.count = 0
        self.kinds: dict[str, set[str]] = {}
        self._sink = open(path, "w", encoding="utf-8")

    @property
    def columns(self) -> list[str]:
        return list(self.kinds)

    def add(self, row: Row) -> None:
        for key, value in row.items():
            kinds = self.kinds.setdefault(key, set())
            kind = value_kind(value)
            if kind is not None:
                kinds.add(kind)
        self._sink.write(json.dumps(row, ensure_ascii=False))
        self._sink.write("\n")
        self.count += 1

    def close(self) -> None:
        self._sink.close()

    def batches(self, size: int | None = None) -> Iterator[list[Row]]:
        """Read the spooled rows back, at most ``size`` (BATCH_ROWS) at a time."""
        size = size or BATCH_ROWS
        batch: list[Row] = []
        with open(self.path, encoding="utf-8") as fh:
            for line in fh:
                batch.append(json.loads(line))
                if len(batch) >= size:
                    yield batch
                    batch = []
        if batch:
            yield batch


def spool_by_resource_type(files: list[Path], spool_dir: Path) -> dict[str, ResourceSpool]:
    """Flatten every record of ``files`` into per-resource-type spools.

    A record without resourceType is filed under the type its file name
    suggests, or ``Unknown``.
    """
    spools: dict[str, ResourceSpool] = {}
    try:
        for path in files:
            fallback = resource_type_from_filename(path.name) or "Unknown"

            def on_record(record: dict[str, Any]) -> None:
                rtype = record.get("resourceType")
                key = rtype if isinstance(rtype, str) and rtype else fallback
                spool = spools.get(key)
                if spool is None:
                    spool_path = spool_dir / f"{len(spools)}.ndjson"
                    spool = spools[key] = ResourceSpool(key, spool_path)
                spool.add(flatten(record))

            read_ndjson_file(path, on_record)
    finally:
        for spool in spools.values():
            spool.close()
    return spools


def _atomic_target(dest: Path) -> Path:
    return dest.with_name(dest.name + ".part")


def write_csv(spool: ResourceSpool, dest: Path) -> int:
    """Write the spooled rows to ``dest`` and return the file size."""
    part = _atomic_target(dest)
    with open(part, "w", newline="", encoding="utf-8") as f:
        writer = csv.DictWriter(f, fieldnames=spool.columns)
        writer.writeheader()
        for batch in spool.batches():
            writer.writerows(batch)
    os.replace(part, dest)
    return dest.stat().st_size


def _batch_table(batch: list[Row], schema: pa.Schema) -> pa.Table:
    columns = {}
    for field in schema:
        values = [row.get(field.name) for row in batch]
        if pa.types.is_string(field.type):
            values = [None if v is None else str(v) for v in values]
        columns[field.name] = pa.array(values, type=field.type)
    return pa.table(columns, schema=schema)


def write_parquet(spool: ResourceSpool, dest: Path) -> int:
    """Write the spooled rows as Parquet, one row group per batch; returns the file size."""
    schema = pa.schema([(column, arrow_type(kinds)) for column, kinds in spool.kinds.items()])
    part = _atomic_target(dest)
    with pq.ParquetWriter(part, schema) as writer:
        for batch in spool.batches():
            writer.write_table(_batch_table(batch, schema))
    os.replace(part, dest)
    return dest.stat().st_size


class ConversionStep(BaseStep):
    """Shared flow of the CSV and Parquet steps."""

    extension: str

    @abstractmethod
    def write(self, spool: ResourceSpool, dest: Path) -> int:
        """Write one resource-type spool; returns bytes written."""

    def max_workers(self, ctx: StepContext) -> int:
        return getattr(ctx.config.services, self.name).max_workers

    async def execute(self, ctx: StepContext) -> StepMetrics:
        source_dir = layout.latest_data_dir(ctx.job_path)
        files = layout.ndjson_files(source_dir)
        try:
            spool_root = tempfile.TemporaryDirectory(prefix=".spool-", dir=ctx.job_path)
        except OSError as e:
            raise classify(e) from e
        with spool_root as spool_dir:
            spools = await asyncio.to_thread(spool_by_resource_type, files, Path(spool_dir))
            if not spools:
                logger.info("No records in %s, skipping %s", source_dir.name, self.name)
                return StepMetrics(skipped=True)

            out_dir = ctx.output_dir(self.name)
            out_dir.mkdir(parents=True, exist_ok=True)
            semaphore = asyncio.Semaphore(self.max_workers(ctx))

            async def convert(spool: ResourceSpool) -> int:
                async with semaphore:
                    dest = out_dir / f"{spool.resource_type}.{self.extension}"
                    size = await asyncio.to_thread(self.write, spool, dest)
                    logger.debug(
                        "Wrote %d %s rows to %s", spool.count, spool.resource_type, dest.name
                    )
                    return size

            ordered = [spools[key] for key in sorted(spools)]
            sizes = await asyncio.gather(*(convert(spool) for spool in ordered))
        return StepMetrics(
            entry_count=sum(spool.count for spool in ordered),
            files_processed=len(ordered),
            bytes_processed=sum(sizes),
        )


class CsvConversionStep(ConversionStep):
    name = "csv_conversion"
    description = "Convert resources to CSV"
    extension = "csv"

    def write(self, spool: ResourceSpool, dest: Path) -> int:
        return write_csv(spool, dest)


class ParquetConversionStep(ConversionStep):
    name = "parquet_conversion"
    description = "Convert resources to Parquet"
    extension = "parquet"

    def write(self, spool: ResourceSpool, dest: Path) -> int:
        return write_parquet(spool, dest)
