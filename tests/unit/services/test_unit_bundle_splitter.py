# tests/unit/services/test_unit_bundle_splitter.py — v1
"""Tests for services/bundle_splitter.py — greedy chunking and reassembly."""

from __future__ import annotations

import pytest

from aether.core.errors import ClassifiedError
from aether.services.bundle_splitter import (
    BUNDLE_OVERHEAD_BYTES,
    check_resource_size,
    json_size,
    partition_entries,
    reassemble_bundle,
    split_bundle,
)


def _entry(i: int) -> dict:
    return {"resource": {"resourceType": "Observation", "id": f"o{i}", "note": "y" * 100}}


def _bundle(n: int = 5, bundle_type: str = "collection", **extra) -> dict:
    return {"resourceType": "Bundle", "id": "b1", "type": bundle_type,
            "entry": [_entry(i) for i in range(n)], **extra}


# Room for exactly two entries per chunk.
TWO_PER_CHUNK = 2 * json_size(_entry(0)) + BUNDLE_OVERHEAD_BYTES


class TestPartition:
    def test_greedy_in_order(self):
        parts = partition_entries([_entry(i) for i in range(5)], TWO_PER_CHUNK)
        assert [len(p) for p in parts] == [2, 2, 1]
        assert [e["resource"]["id"] for p in parts for e in p] == ["o0", "o1", "o2", "o3", "o4"]

    def test_entry_too_large_for_any_chunk(self):
        threshold = json_size(_entry(0)) + BUNDLE_OVERHEAD_BYTES - 1
        with pytest.raises(ClassifiedError, match="Observation/o0") as exc_info:
            partition_entries([_entry(0)], threshold)
        assert exc_info.value.category == "validation"
        assert exc_info.value.retryable is False


class TestSplitBundle:
    def test_small_bundle_unchanged(self):
        bundle = _bundle(2)
        assert split_bundle(bundle, 10 * 1024 * 1024) == [bundle]

    def test_chunks_are_valid_bundles(self):
        chunks = split_bundle(_bundle(5, timestamp="2024-01-01T00:00:00Z"), TWO_PER_CHUNK)
        assert [c["id"] for c in chunks] == ["b1-chunk-0", "b1-chunk-1", "b1-chunk-2"]
        assert all(c["type"] == "collection" for c in chunks)
        assert all(c["timestamp"] == "2024-01-01T00:00:00Z" for c in chunks)
        assert all("total" not in c for c in chunks)

    def test_searchset_chunks_carry_total(self):
        chunks = split_bundle(_bundle(5, "searchset", total=5), TWO_PER_CHUNK)
        assert [c["total"] for c in chunks] == [2, 2, 1]

    @pytest.mark.parametrize("missing", ["id", "type"])
    def test_missing_metadata(self, missing):
        bundle = _bundle(5)
        del bundle[missing]
        with pytest.raises(ClassifiedError, match=f"Bundle.{missing}"):
            split_bundle(bundle, TWO_PER_CHUNK)

    def test_invalid_entry_array(self):
        bundle = _bundle(5)
        bundle["entry"] = "nope" * 200
        with pytest.raises(ClassifiedError, match="no valid entry array"):
            split_bundle(bundle, TWO_PER_CHUNK)


class TestReassemble:
    def test_entries_concatenated_and_first_chunk_fields_kept(self):
        original = _bundle(5, "searchset", timestamp="2024-01-01T00:00:00Z")
        chunks = split_bundle(original, TWO_PER_CHUNK)
        pseudonymized = [dict(c, id="x-" + c["id"], meta={"security": [{"code": "PSEUDED"}]})
                         for c in chunks]

        bundle = reassemble_bundle(original, pseudonymized)
        assert bundle["id"] == "x-b1-chunk-0"
        assert bundle["meta"] == {"security": [{"code": "PSEUDED"}]}
        assert bundle["type"] == "searchset"
        assert bundle["total"] == 5
        assert bundle["timestamp"] == "2024-01-01T00:00:00Z"
        assert [e["resource"]["id"] for e in bundle["entry"]] == ["o0", "o1", "o2", "o3", "o4"]

    def test_total_dropped_for_collection(self):
        original = _bundle(3)
        bundle = reassemble_bundle(original, [dict(original, total=3)])
        assert "total" not in bundle

    def test_non_bundle_chunk(self):
        with pytest.raises(ClassifiedError) as exc_info:
            reassemble_bundle(_bundle(1), [{"resourceType": "Patient"}])
        assert exc_info.value.category == "service"


class TestResourceSize:
    def test_oversized_resource_rejected(self):
        patient = {"resourceType": "Patient", "id": "p1", "text": "z" * 500}
        with pytest.raises(ClassifiedError, match="Patient/p1") as exc_info:
            check_resource_size(patient, 100)
        assert exc_info.value.category == "validation"
        assert any("bundle_split_threshold_mb" in g for g in exc_info.value.guidance)

    def test_small_resource_and_bundles_pass(self):
        check_resource_size({"resourceType": "Patient", "id": "p1"}, 100)
        check_resource_size(_bundle(5), 100)
