# src/services/bundle_splitter.py — v1
"""Split oversized FHIR Bundles into chunks for DIMP and reassemble the results.

Entries are partitioned greedily in their original order: a chunk grows
until the next entry would push it over the threshold. A single entry that
cannot fit in any chunk is an oversized-resource error, as is any
non-Bundle resource above the threshold.
"""

from __future__ import annotations

import json
import logging
from typing import Any

from aether.core.errors import ClassifiedError, oversized_resource

logger = logging.getLogger(__name__)

# Approximate size of the Bundle wrapper (resourceType, id, type, ...) per chunk.
BUNDLE_OVERHEAD_BYTES = 200

# Bundle types for which FHIR allows Bundle.total.
_TOTAL_TYPES = ("searchset", "history")


def json_size(obj: Any) -> int:
    """Serialized size of ``obj`` in bytes, as written to NDJSON."""
    return len(json.dumps(obj, separators=(",", ":"), ensure_ascii=False).encode("utf-8"))


def should_split(size_bytes: int, threshold_bytes: int) -> bool:
    return size_bytes > threshold_bytes


def _describe(resource: Any) -> tuple[str, str]:
    if not isinstance(resource, dict):
        return "Unknown", "unknown"
    rtype = resource.get("resourceType")
    rid = resource.get("id")
    return (
        rtype if isinstance(rtype, str) else "Unknown",
        rid if isinstance(rid, str) else "unknown",
    )


def check_resource_size(resource: dict[str, Any], threshold_bytes: int) -> None:
    """Reject a non-Bundle resource larger than ``threshold_bytes``.

    Bundles are left to split_bundle().
    """
    if resource.get("resourceType") == "Bundle":
        return
    size = json_size(resource)
    if size > threshold_bytes:
        raise oversized_resource(*_describe(resource), size, threshold_bytes)


def _bundle_entries(bundle: dict[str, Any]) -> list[dict[str, Any]]:
    entries = bundle.get("entry")
    if not isinstance(entries, list) or not all(isinstance(e, dict) for e in entries):
        raise ClassifiedError(
            "validation",
            f"Bundle {bundle.get('id')!r} has no valid entry array and cannot be split",
            guidance=["Check that Bundle.entry is a list of entry objects"],
        )
    return entries


def partition_entries(
    entries: list[dict[str, Any]], threshold_bytes: int
) -> list[list[dict[str, Any]]]:
    """Greedily group ``entries`` so each group fits ``threshold_bytes`` with its wrapper.

    Raises:
        ClassifiedError: oversized_resource for an entry that fits in no chunk.
    """
    partitions: list[list[dict[str, Any]]] = []
    current: list[dict[str, Any]] = []
    current_size = 0
    for entry in entries:
        size = json_size(entry)
        if size + BUNDLE_OVERHEAD_BYTES > threshold_bytes:
            raise oversized_resource(*_describe(entry.get("resource")), size, threshold_bytes)
        if current and current_size + size + BUNDLE_OVERHEAD_BYTES > threshold_bytes:
            partitions.append(current)
            current, current_size = [], 0
        current.append(entry)
        current_size += size
    if current:
        partitions.append(current)
    return partitions


def _chunk_bundle(
    bundle: dict[str, Any], index: int, entries: list[dict[str, Any]]
) -> dict[str, Any]:
    chunk: dict[str, Any] = {
        "resourceType": "Bundle",
        "id": f"{bundle['id']}-chunk-{index}",
        "type": bundle["type"],
        "entry": entries,
    }
    if isinstance(bundle.get("timestamp"), str):
        chunk["timestamp"] = bundle["timestamp"]
    if bundle["type"] in _TOTAL_TYPES:
        chunk["total"] = len(entries)
    return chunk


def split_bundle(bundle: dict[str, Any], threshold_bytes: int) -> list[dict[str, Any]]:
    """Return the chunk Bundles to send instead of ``bundle``.

    A Bundle within the threshold comes back unchanged as the only chunk.

    Raises:
        ClassifiedError: validation error when the Bundle lacks ``id``,
            ``type`` or a valid ``entry`` array, or holds an oversized entry.
    """
    size = json_size(bundle)
    if not should_split(size, threshold_bytes):
        return [bundle]
    for key in ("id", "type"):
        if not isinstance(bundle.get(key), str):
            raise ClassifiedError(
                "validation",
                f"Bundle of {size} bytes needs splitting but Bundle.{key} is missing",
                guidance=[f"Ensure every Bundle has a string {key}"],
            )
    partitions = partition_entries(_bundle_entries(bundle), threshold_bytes)
    logger.info(
        "Split Bundle %s (%d bytes) into %d chunks", bundle["id"], size, len(partitions)
    )
    return [_chunk_bundle(bundle, i, entries) for i, entries in enumerate(partitions)]


def reassemble_bundle(original: dict[str, Any], chunks: list[dict[str, Any]]) -> dict[str, Any]:
    """Join pseudonymized chunks back into one Bundle.

    Bundle-level fields come from the first chunk, which carries what DIMP
    added (pseudonymized id, meta). Entries keep their original order.
    """
    if not chunks:
        raise ValueError("cannot reassemble a Bundle from no chunks")
    entries: list[dict[str, Any]] = []
    for index, chunk in enumerate(chunks):
        if chunk.get("resourceType") != "Bundle":
            raise ClassifiedError(
                "service",
                f"DIMP returned chunk {index} of Bundle {original.get('id')!r} as a non-Bundle",
                guidance=["Check the DIMP service logs"],
            )
        entries.extend(_bundle_entries(chunk))

    bundle = dict(chunks[0])
    bundle["entry"] = entries
    bundle["type"] = original["type"]
    if isinstance(original.get("timestamp"), str):
        bundle["timestamp"] = original["timestamp"]
    if original["type"] in _TOTAL_TYPES:
        bundle["total"] = len(entries)
    else:
        bundle.pop("total", None)
    return bundle
