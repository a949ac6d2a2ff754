"""Process-wide locks guarding the credential files and the backup pipeline.

A lock is a pair: an in-process :class:`threading.Lock` (one per lock file,
shared by every :class:`LockManager` in the process) serialising request
threads, plus an exclusive ``flock`` on a lock file under the runtime
directory so that a CLI invocation and the API server exclude each other as
well. The lock file is left behind after release and records who held it
last.
"""
from __future__ import annotations

import fcntl
import json
import os
import threading
import time
from collections.abc import Iterator
from contextlib import AbstractContextManager, contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

CREDENTIAL_LOCK_NAME = "credentials.lock"
BACKUP_LOCK_NAME = "backup.lock"
_POLL_INTERVAL = 0.05

_THREAD_LOCKS: dict[str, threading.Lock] = {}
_THREAD_LOCKS_GUARD = threading.Lock()


class LockError(RuntimeError):
    """Raised when a lock file cannot be prepared."""


class LockTimeoutError(LockError):
    """Raised when a lock is not acquired within the timeout."""


@dataclass(slots=True)
class LockHandle:
    """Information about an acquired lock."""

    path: Path
    wait_ms: int


def _thread_lock_for(path: Path) -> threading.Lock:
    key = str(path)
    with _THREAD_LOCKS_GUARD:
        lock = _THREAD_LOCKS.get(key)
        if lock is None:
            lock = threading.Lock()
            _THREAD_LOCKS[key] = lock
        return lock


class LockManager:
    """Hand out the credential and backup locks."""

    def __init__(self, runtime_dir: Path, default_timeout: float = 30.0) -> None:
        """Store the lock directory and the default acquisition timeout."""
        self.runtime_dir = runtime_dir
        self.default_timeout = default_timeout

    def lock_path(self, name: str) -> Path:
        """Return the lock file path for *name*."""
        return self.runtime_dir / name

    def credential_lock(
        self, *, timeout: float | None = None
    ) -> AbstractContextManager[LockHandle]:
        """Return the lock guarding the config/ledger read-modify-write cycle."""
        return self.acquire(CREDENTIAL_LOCK_NAME, timeout=timeout)

    def backup_lock(
        self, *, timeout: float | None = None
    ) -> AbstractContextManager[LockHandle]:
        """Return the lock guarding archive creation, upload and policy changes."""
        return self.acquire(BACKUP_LOCK_NAME, timeout=timeout)

    def acquire(
        self, name: str, *, timeout: float | None = None
    ) -> AbstractContextManager[LockHandle]:
        """Return a context manager acquiring the lock file *name*."""
        limit = self.default_timeout if timeout is None else timeout
        return _hold(self.lock_path(name), limit)


@contextmanager
def _hold(path: Path, timeout: float) -> Iterator[LockHandle]:
    started = time.monotonic()
    deadline = started + timeout
    thread_lock = _thread_lock_for(path)
    if not thread_lock.acquire(timeout=max(timeout, 0.0)):
        raise LockTimeoutError(f"Timed out after {timeout:.1f}s waiting for {path}.")
    try:
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            fd = os.open(path, os.O_RDWR | os.O_CREAT, 0o640)
        except OSError as exc:
            raise LockError(f"Unable to open lock file {path}: {exc}") from exc
        try:
            while True:
                try:
                    fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                    break
                except BlockingIOError:
                    if time.monotonic() >= deadline:
                        raise LockTimeoutError(
                            f"Timed out after {timeout:.1f}s waiting for {path}."
                        ) from None
                    time.sleep(_POLL_INTERVAL)
            wait_ms = int((time.monotonic() - started) * 1000)
            _write_metadata(fd, path)
            try:
                yield LockHandle(path=path, wait_ms=wait_ms)
            finally:
                fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            os.close(fd)
    finally:
        thread_lock.release()


def _write_metadata(fd: int, path: Path) -> None:
    payload = {
        "pid": os.getpid(),
        "thread": threading.current_thread().name,
        "path": str(path),
        "acquired_at": datetime.now(tz=UTC).isoformat(timespec="seconds"),
    }
    data = json.dumps(payload).encode("utf-8")
    os.ftruncate(fd, 0)
    os.pwrite(fd, data, 0)


__all__ = ["LockError", "LockHandle", "LockManager", "LockTimeoutError"]
