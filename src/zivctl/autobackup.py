"""Automatic backup policy and the cron definition that enacts it."""
from __future__ import annotations

import json
import os
import tempfile
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

from .errors import StoreIOError
from .locking import LockManager
from .logging import OperationScope


class AutoBackupError(StoreIOError):
    """Raised when the policy or the cron definition cannot be updated."""


@dataclass(frozen=True, slots=True)
class AutoBackupPolicy:
    """Persisted auto-backup state."""

    enabled: bool
    schedule: str

    def to_dict(self) -> dict[str, object]:
        """Return the JSON document stored on disk."""
        return {"enabled": self.enabled, "schedule": self.schedule}


class AutoBackupScheduler:
    """Toggle the auto-backup policy and keep the cron file in step with it."""

    def __init__(
        self,
        policy_file: Path,
        cron_file: Path,
        locks: LockManager,
        *,
        schedule: str = "0 2 * * *",
        command: str = "zivctl backup create",
        user: str = "root",
    ) -> None:
        """Store the managed paths and the default schedule."""
        self.policy_file = policy_file
        self.cron_file = cron_file
        self._locks = locks
        self._schedule = schedule
        self._command = command
        self._user = user

    def read(self) -> AutoBackupPolicy:
        """Return the current policy; a missing file means disabled."""
        try:
            text = self.policy_file.read_text(encoding="utf-8")
        except FileNotFoundError:
            return AutoBackupPolicy(enabled=False, schedule=self._schedule)
        except OSError as exc:
            raise AutoBackupError(f"Failed reading {self.policy_file}: {exc}") from exc
        try:
            data = json.loads(text or "{}")
        except json.JSONDecodeError as exc:
            raise AutoBackupError(f"Policy file corrupted ({self.policy_file}): {exc}") from exc
        if not isinstance(data, Mapping):
            raise AutoBackupError(f"Policy file must hold a JSON object ({self.policy_file}).")
        schedule = data.get("schedule")
        return AutoBackupPolicy(
            enabled=data.get("enabled") is True,
            schedule=schedule if isinstance(schedule, str) and schedule.strip() else self._schedule,
        )

    def toggle(self, *, op: OperationScope | None = None) -> AutoBackupPolicy:
        """Flip ``enabled`` and install or remove the cron definition."""
        with self._locks.backup_lock() as handle:
            if op is not None:
                op.set_lock_wait_ms(handle.wait_ms)
            current = self.read()
            updated = AutoBackupPolicy(enabled=not current.enabled, schedule=current.schedule)
            _write_atomic(self.policy_file, json.dumps(updated.to_dict(), indent=2) + "\n")
            if op is not None:
                op.add_step("policy.write", detail=updated.to_dict())
            if updated.enabled:
                _write_atomic(self.cron_file, self.cron_line(updated.schedule), mode=0o644)
                if op is not None:
                    op.add_step("cron.install", detail=str(self.cron_file))
            else:
                try:
                    self.cron_file.unlink(missing_ok=True)
                except OSError as exc:
                    raise AutoBackupError(f"Failed removing {self.cron_file}: {exc}") from exc
                if op is not None:
                    op.add_step("cron.remove", detail=str(self.cron_file))
        return updated

    def cron_line(self, schedule: str) -> str:
        """Return the cron definition for *schedule*."""
        return f"{schedule} {self._user} {self._command}\n"


def _write_atomic(path: Path, text: str, *, mode: int = 0o640) -> None:
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_fd, tmp_name = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.")
    except OSError as exc:
        raise AutoBackupError(f"Failed writing {path}: {exc}") from exc
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
            handle.write(text)
        os.chmod(tmp_path, mode)
        os.replace(tmp_path, path)
    except OSError as exc:
        raise AutoBackupError(f"Failed writing {path}: {exc}") from exc
    finally:
        tmp_path.unlink(missing_ok=True)


__all__ = ["AutoBackupError", "AutoBackupPolicy", "AutoBackupScheduler"]
