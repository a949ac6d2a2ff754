"""Tests for the auto-backup policy toggle."""
from __future__ import annotations

import json
from pathlib import Path

import pytest

from zivctl.autobackup import AutoBackupError, AutoBackupScheduler
from zivctl.locking import LockManager


@pytest.fixture
def scheduler(tmp_path: Path) -> AutoBackupScheduler:
    """Return a scheduler writing under ``tmp_path``."""
    return AutoBackupScheduler(
        tmp_path / "zivpn" / "auto-backup.json",
        tmp_path / "cron.d" / "zivctl-backup",
        LockManager(tmp_path / "run", default_timeout=1.0),
        schedule="0 2 * * *",
        command="/usr/local/bin/zivctl backup create",
    )


def test_missing_policy_reads_disabled(scheduler: AutoBackupScheduler) -> None:
    """Without a policy file auto-backup is off with the default schedule."""
    policy = scheduler.read()

    assert policy.enabled is False
    assert policy.schedule == "0 2 * * *"


def test_toggle_enables_then_disables(scheduler: AutoBackupScheduler) -> None:
    """Toggling flips the flag and installs, then removes, the cron file."""
    enabled = scheduler.toggle()

    assert enabled.enabled is True
    assert json.loads(scheduler.policy_file.read_text(encoding="utf-8")) == {
        "enabled": True,
        "schedule": "0 2 * * *",
    }
    assert scheduler.cron_file.read_text(encoding="utf-8") == (
        "0 2 * * * root /usr/local/bin/zivctl backup create\n"
    )
    assert scheduler.cron_file.stat().st_mode & 0o777 == 0o644

    disabled = scheduler.toggle()

    assert disabled.enabled is False
    assert scheduler.read().enabled is False
    assert not scheduler.cron_file.exists()


def test_toggle_keeps_stored_schedule(scheduler: AutoBackupScheduler) -> None:
    """A schedule already in the policy file is preserved."""
    scheduler.policy_file.parent.mkdir(parents=True)
    scheduler.policy_file.write_text(
        json.dumps({"enabled": False, "schedule": "30 4 * * 0"}), encoding="utf-8"
    )

    policy = scheduler.toggle()

    assert policy.schedule == "30 4 * * 0"
    assert scheduler.cron_file.read_text(encoding="utf-8").startswith("30 4 * * 0 root ")


def test_corrupt_policy_is_io_error(scheduler: AutoBackupScheduler) -> None:
    """A corrupt policy file is reported, not overwritten."""
    scheduler.policy_file.parent.mkdir(parents=True)
    scheduler.policy_file.write_text("{oops", encoding="utf-8")

    with pytest.raises(AutoBackupError):
        scheduler.toggle()

    assert scheduler.policy_file.read_text(encoding="utf-8") == "{oops"
