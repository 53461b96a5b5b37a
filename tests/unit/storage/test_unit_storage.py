# tests/unit/storage/test_unit_storage.py — v1
"""Tests for the storage package — layout, state store and job locks."""

from __future__ import annotations

import json
import os
import time

import pytest

from aether.core.errors import ClassifiedError
from aether.core.models import PipelineJob, PipelineStep
from aether.storage import layout, locks, state_store
from aether.storage.locks import JobLock


def _job(jobs_path=None) -> PipelineJob:
    job = PipelineJob(
        input_source="/data/in",
        input_type="local_directory",
        current_step="local_import",
        steps=[PipelineStep(name="local_import"), PipelineStep(name="validation")],
    )
    if jobs_path is not None:
        layout.job_dir(jobs_path, job.job_id).mkdir(parents=True)
    return job


class TestLayout:
    def test_paths(self, tmp_path):
        job_path = layout.job_dir(tmp_path, "j1")
        assert job_path == tmp_path / "j1"
        assert layout.state_path(job_path).name == "state.json"
        assert layout.lock_path(job_path).name == ".lock"
        assert layout.log_path(job_path).name == "job.log"

    @pytest.mark.parametrize(
        "step, dirname",
        [("torch", "import"), ("local_import", "import"), ("http_import", "import"),
         ("dimp", "pseudonymized"), ("validation", "validation"),
         ("csv_conversion", "csv"), ("parquet_conversion", "parquet")],
    )
    def test_step_output_dirs(self, tmp_path, step, dirname):
        assert layout.step_output_dir(tmp_path, step) == tmp_path / dirname

    def test_latest_data_dir_prefers_pseudonymized(self, tmp_path):
        (tmp_path / "import").mkdir()
        (tmp_path / "pseudonymized").mkdir()
        assert layout.latest_data_dir(tmp_path) == tmp_path / "import"
        (tmp_path / "pseudonymized" / "dimped_Patient.ndjson").write_text("{}\n")
        assert layout.latest_data_dir(tmp_path) == tmp_path / "pseudonymized"

    def test_ndjson_files_sorted_and_flat(self, tmp_path):
        for name in ("b.ndjson", "a.ndjson", "notes.txt"):
            (tmp_path / name).write_text("")
        (tmp_path / "sub").mkdir()
        (tmp_path / "sub" / "c.ndjson").write_text("")
        assert [p.name for p in layout.ndjson_files(tmp_path)] == ["a.ndjson", "b.ndjson"]
        assert layout.ndjson_files(tmp_path / "missing") == []


class TestStateStore:
    def test_save_and_load(self, tmp_path):
        job = _job(tmp_path)
        before = job.updated_at
        state_store.save_job(tmp_path, job)

        loaded = state_store.load_job(tmp_path, job.job_id)
        assert loaded.job_id == job.job_id
        assert [s.name for s in loaded.steps] == ["local_import", "validation"]
        assert loaded.updated_at >= before

    def test_save_leaves_no_temp_files(self, tmp_path):
        job = _job(tmp_path)
        state_store.save_job(tmp_path, job)
        state_store.save_job(tmp_path, job)
        names = sorted(p.name for p in (tmp_path / job.job_id).iterdir())
        assert names == ["state.json"]

    def test_save_refuses_deleted_job(self, tmp_path):
        job = _job(tmp_path)
        state_store.save_job(tmp_path, job)
        state_store.delete_job_dir(tmp_path, job.job_id)

        with pytest.raises(ClassifiedError, match="not found") as exc_info:
            state_store.save_job(tmp_path, job)
        assert exc_info.value.category == "state"
        assert not (tmp_path / job.job_id).exists()

    def test_load_missing(self, tmp_path):
        with pytest.raises(ClassifiedError, match="not found") as exc_info:
            state_store.load_job(tmp_path, "ghost")
        assert exc_info.value.category == "state"

    def test_load_corrupted(self, tmp_path):
        (tmp_path / "bad").mkdir()
        (tmp_path / "bad" / "state.json").write_text("{truncated", encoding="utf-8")
        with pytest.raises(ClassifiedError, match="corrupted") as exc_info:
            state_store.load_job(tmp_path, "bad")
        assert exc_info.value.category == "state"

    def test_config_snapshot(self, tmp_path):
        job = _job()
        state_store.write_config_snapshot(tmp_path, job)
        data = json.loads((tmp_path / job.job_id / "config.json").read_text(encoding="utf-8"))
        assert data["retry"]["max_attempts"] == 5

    def test_list_and_delete(self, tmp_path):
        first, second = _job(tmp_path), _job(tmp_path)
        state_store.save_job(tmp_path, first)
        state_store.save_job(tmp_path, second)
        (tmp_path / "stray").mkdir()

        assert state_store.list_job_ids(tmp_path) == sorted([first.job_id, second.job_id])

        state_store.delete_job_dir(tmp_path, first.job_id)
        assert state_store.list_job_ids(tmp_path) == [second.job_id]
        with pytest.raises(ClassifiedError):
            state_store.delete_job_dir(tmp_path, first.job_id)

    def test_list_missing_root(self, tmp_path):
        assert state_store.list_job_ids(tmp_path / "none") == []

    def test_atomic_write_failure_keeps_old_content(self, tmp_path, monkeypatch):
        target = tmp_path / "state.json"
        target.write_text("old", encoding="utf-8")

        def failing_replace(src, dst):
            raise OSError("rename failed")

        monkeypatch.setattr(state_store.os, "replace", failing_replace)
        with pytest.raises(OSError):
            state_store.atomic_write_text(target, "new")
        assert target.read_text(encoding="utf-8") == "old"
        assert [p.name for p in tmp_path.iterdir()] == ["state.json"]


class TestJobLock:
    def test_exclusive(self, tmp_path):
        with JobLock(tmp_path, "j1") as lock:
            assert lock.held
            assert (tmp_path / ".lock").exists()
            with pytest.raises(ClassifiedError) as exc_info:
                JobLock(tmp_path, "j1").acquire()
            assert exc_info.value.category == "state"
            assert exc_info.value.retryable is True
        assert not (tmp_path / ".lock").exists()

    def test_lock_content(self, tmp_path):
        with JobLock(tmp_path, "j1"):
            info = json.loads((tmp_path / ".lock").read_text(encoding="utf-8"))
        assert info["pid"] == os.getpid()

    def test_reclaims_dead_owner(self, tmp_path, monkeypatch):
        (tmp_path / ".lock").write_text(
            json.dumps({"pid": 424242, "acquired_at": time.time()}), encoding="utf-8"
        )
        monkeypatch.setattr(locks, "_pid_alive", lambda pid: False)
        lock = JobLock(tmp_path, "j1")
        lock.acquire()
        assert lock.held
        lock.release()

    def test_reclaims_expired_lock(self, tmp_path):
        (tmp_path / ".lock").write_text(
            json.dumps({"pid": os.getpid(), "acquired_at": time.time() - 7200}), encoding="utf-8"
        )
        lock = JobLock(tmp_path, "j1", stale_timeout_s=3600)
        assert lock.is_stale()
        lock.acquire()
        lock.release()

    def test_live_recent_lock_is_not_stale(self, tmp_path):
        (tmp_path / ".lock").write_text(
            json.dumps({"pid": os.getpid(), "acquired_at": time.time()}), encoding="utf-8"
        )
        assert not JobLock(tmp_path, "j1").is_stale()

    def test_unreadable_lock_uses_mtime(self, tmp_path):
        (tmp_path / ".lock").write_text("garbage", encoding="utf-8")
        assert not JobLock(tmp_path, "j1").is_stale()
        old = time.time() - 7200
        os.utime(tmp_path / ".lock", (old, old))
        assert JobLock(tmp_path, "j1").is_stale()

    def test_release_is_idempotent(self, tmp_path):
        lock = JobLock(tmp_path, "j1")
        lock.release()
        lock.acquire()
        lock.release()
        lock.release()
        assert not lock.held
