# src/core/ndjson.py — v1
"""Streaming NDJSON reader/writer for FHIR resources.

One JSON object per line, read lazily from a binary stream so arbitrarily
large files never have to fit in memory. A single line is capped at
MAX_LINE_BYTES; blank lines are skipped; errors carry the 1-based line
number.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import IO, Any, Callable, Iterator

from aether.core.errors import ClassifiedError, classify, invalid_data_file

logger = logging.getLogger(__name__)

MAX_LINE_BYTES = 1024 * 1024
# Cap used where whole FHIR Bundles must be read (import counting, DIMP),
# matching the largest allowed DIMP split threshold.
MAX_BUNDLE_LINE_BYTES = 100 * 1024 * 1024


class FHIRResource(dict):
    """A decoded FHIR resource (JSON object) with typed accessors."""

    def get_str(self, field: str) -> str:
        """Return ``field`` as a string, raising ValueError when absent or not a string."""
        value = self.get(field)
        if value is None:
            raise ValueError(f"field {field!r} not found")
        if not isinstance(value, str):
            raise ValueError(f"field {field!r} is not a string")
        return value

    @property
    def resource_type(self) -> str:
        return self.get_str("resourceType")

    @property
    def resource_id(self) -> str:
        return self.get_str("id")


def _source_name(stream: IO[bytes]) -> str:
    name = getattr(stream, "name", None)
    return Path(name).name if isinstance(name, str) else "<stream>"


def _iter_numbered(
    stream: IO[bytes], max_line_bytes: int = MAX_LINE_BYTES
) -> Iterator[tuple[int, FHIRResource]]:
    source = _source_name(stream)
    line_no = 0
    while True:
        raw = stream.readline(max_line_bytes + 1)
        if not raw:
            return
        line_no += 1
        if len(raw) > max_line_bytes and not raw.endswith(b"\n"):
            raise invalid_data_file(
                source,
                line_no,
                ValueError(f"line exceeds maximum size of {max_line_bytes} bytes"),
            )
        line = raw.rstrip(b"\r\n")
        if not line.strip():
            continue
        try:
            obj = json.loads(line)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise invalid_data_file(source, line_no, e) from e
        if not isinstance(obj, dict):
            raise invalid_data_file(
                source, line_no, ValueError("line is not a JSON object")
            )
        yield line_no, FHIRResource(obj)


def iter_records(
    stream: IO[bytes], max_line_bytes: int = MAX_LINE_BYTES
) -> Iterator[FHIRResource]:
    """Yield one FHIRResource per non-blank line of ``stream``.

    The generator is lazy and cannot be restarted.

    Raises:
        ClassifiedError: validation error for an oversized line, invalid
            JSON, or a line that is not a JSON object.
    """
    for _, record in _iter_numbered(stream, max_line_bytes):
        yield record


def read_ndjson(stream: IO[bytes], on_record: Callable[[FHIRResource], Any]) -> int:
    """Feed every record to ``on_record`` and return the record count.

    A callback failure aborts the read; the error is classified and names
    the offending line.
    """
    source = _source_name(stream)
    count = 0
    for line_no, record in _iter_numbered(stream):
        count += 1
        try:
            on_record(record)
        except ClassifiedError:
            raise
        except Exception as e:
            classified = classify(e)
            raise ClassifiedError(
                classified.category,
                f"Failed to process line {line_no} of {source}",
                cause=e,
                http_status=classified.http_status,
                guidance=classified.guidance,
                retryable=classified.retryable,
            ) from e
    return count


def read_ndjson_file(path: str | Path, on_record: Callable[[FHIRResource], Any]) -> int:
    """Open ``path`` and delegate to read_ndjson()."""
    try:
        with open(path, "rb") as fh:
            return read_ndjson(fh, on_record)
    except OSError as e:
        raise classify(e) from e


def write_record(sink: IO[str], record: dict[str, Any]) -> None:
    """Write ``record`` as one compact JSON line."""
    sink.write(json.dumps(record, separators=(",", ":"), ensure_ascii=False))
    sink.write("\n")


def count_records(path: str | Path, max_line_bytes: int = MAX_LINE_BYTES) -> int:
    """Count the records in an NDJSON file without keeping them."""
    total = 0
    with open(path, "rb") as fh:
        for _ in iter_records(fh, max_line_bytes):
            total += 1
    return total


def resource_type_from_filename(name: str) -> str:
    """Best-effort resource type from names like ``Patient.ndjson`` or ``dimped_Patient-1.ndjson``."""
    stem = Path(name).name
    for suffix in (".ndjson", ".jsonl", ".json"):
        if stem.endswith(suffix):
            stem = stem[: -len(suffix)]
            break
    if stem.startswith("dimped_"):
        stem = stem[len("dimped_"):]
    for sep in ("-", "_", "."):
        stem = stem.split(sep, 1)[0]
    return stem
