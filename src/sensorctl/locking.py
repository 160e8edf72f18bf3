"""File-based locking so two runs of the same action never overlap.

A manual ``sensorctl enroll`` racing the boot-time unit must not enroll twice,
so every action holds an exclusive :func:`fcntl.flock` on
``<runtime_dir>/<action>.lock`` while it runs. Different actions use different
lock files and never contend.
"""
from __future__ import annotations

import fcntl
import json
import os
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path


class LockError(RuntimeError):
    """Raised when a lock file cannot be opened."""


class LockTimeoutError(LockError):
    """Raised when a lock could not be acquired before the timeout."""


@dataclass(slots=True)
class LockHandle:
    """Details about an acquired lock."""

    path: Path
    wait_ms: int


@dataclass(slots=True)
class LockManager:
    """Hand out per-action exclusive locks rooted at *lock_dir*."""

    lock_dir: Path
    default_timeout: float = 30.0
    poll_interval: float = 0.05

    def lock_path(self, name: str) -> Path:
        """Return the lock file path for *name*."""
        safe = name.replace("/", "-").strip() or "sensorctl"
        return self.lock_dir / f"{safe}.lock"

    @contextmanager
    def action_lock(self, name: str, *, timeout: float | None = None) -> Iterator[LockHandle]:
        """Hold the exclusive lock for action *name* for the duration of the block."""
        path = self.lock_path(name)
        effective = self.default_timeout if timeout is None else timeout
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            fd = os.open(path, os.O_RDWR | os.O_CREAT, 0o600)
        except OSError as exc:
            raise LockError(f"Unable to open lock file {path}: {exc}") from exc

        try:
            wait_ms = self._acquire(fd, path, effective)
            self._write_metadata(fd, path)
            yield LockHandle(path=path, wait_ms=wait_ms)
        finally:
            try:
                fcntl.flock(fd, fcntl.LOCK_UN)
            finally:
                os.close(fd)

    def _acquire(self, fd: int, path: Path, timeout: float) -> int:
        start = time.monotonic()
        while True:
            try:
                fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
            except BlockingIOError:
                elapsed = time.monotonic() - start
                if elapsed >= timeout:
                    raise LockTimeoutError(
                        f"Timed out after {timeout:.1f}s waiting for lock {path}."
                    ) from None
                time.sleep(min(self.poll_interval, max(timeout - elapsed, 0.0)))
                continue
            return int((time.monotonic() - start) * 1000)

    @staticmethod
    def _write_metadata(fd: int, path: Path) -> None:
        payload = {
            "pid": os.getpid(),
            "path": str(path),
            "acquired_at": datetime.now(tz=UTC).isoformat(timespec="seconds"),
        }
        data = (json.dumps(payload) + "\n").encode("utf-8")
        os.ftruncate(fd, 0)
        os.lseek(fd, 0, os.SEEK_SET)
        os.write(fd, data)


__all__ = ["LockError", "LockHandle", "LockManager", "LockTimeoutError"]
