# src/storage/locks.py — v1
"""Exclusive per-job lock file.

The lock is ``{job_dir}/.lock`` created with O_CREAT|O_EXCL and holding the
owner's pid and acquisition time. A lock whose owner process is gone, or
that is older than the stale timeout, is reclaimed.
"""

from __future__ import annotations

import json
import logging
import os
import time
from pathlib import Path
from types import TracebackType

from aether.core.errors import classify, job_locked
from aether.storage import layout

logger = logging.getLogger(__name__)


def _pid_alive(pid: int) -> bool:
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


class JobLock:
    """Context manager holding the lock of one job."""

    def __init__(self, job_path: Path, job_id: str, stale_timeout_s: float = 3600.0) -> None:
        self.job_id = job_id
        self.path = layout.lock_path(job_path)
        self.stale_timeout_s = stale_timeout_s
        self._held = False

    @property
    def held(self) -> bool:
        return self._held

    def acquire(self) -> None:
        """Take the lock or raise job_locked (state, retryable)."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        if self._try_create():
            return
        if self.is_stale():
            logger.warning("Reclaiming stale lock for job %s", self.job_id)
            try:
                self.path.unlink()
            except FileNotFoundError:
                pass
            if self._try_create():
                return
        raise job_locked(self.job_id)

    def _try_create(self) -> bool:
        try:
            fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            return False
        except OSError as e:
            raise classify(e) from e
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            json.dump({"pid": os.getpid(), "acquired_at": time.time()}, fh)
        self._held = True
        return True

    def is_stale(self) -> bool:
        """True when the owner is dead or the lock outlived the timeout."""
        try:
            info = json.loads(self.path.read_text(encoding="utf-8"))
            pid = int(info["pid"])
            acquired_at = float(info["acquired_at"])
        except FileNotFoundError:
            return True
        except (ValueError, KeyError, TypeError):
            # Unreadable content: fall back to the file age.
            try:
                acquired_at = self.path.stat().st_mtime
            except FileNotFoundError:
                return True
            return time.time() - acquired_at > self.stale_timeout_s
        if not _pid_alive(pid):
            return True
        return time.time() - acquired_at > self.stale_timeout_s

    def release(self) -> None:
        if not self._held:
            return
        self._held = False
        try:
            self.path.unlink()
        except FileNotFoundError:
            logger.warning("Lock file for job %s vanished before release", self.job_id)

    def __enter__(self) -> JobLock:
        self.acquire()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.release()
