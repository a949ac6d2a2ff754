"""Service facade shared by the HTTP API and the command line.

Each public method runs one administrative operation inside a structured
log scope and reports its outcome as a :class:`~zivctl.results.Success` or
:class:`~zivctl.results.Failure`. Nothing here raises for an expected
failure; callers decide how to present the result.
"""
from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from datetime import date, datetime
from pathlib import Path
from typing import TypeVar

from .autobackup import AutoBackupScheduler
from .backups import BackupManager
from .config import AppConfig
from .credentials import CredentialManager
from .errors import ErrorKind, ExitCode, StoreIOError, ZivctlError
from .locking import LockError, LockManager
from .logging import OperationScope, StructuredLogger
from .providers.base import ServiceController, SyncBackend
from .providers.rclone import RcloneBackend
from .providers.systemd import RestartNotifier, SystemdProvider
from .results import Failure, Success
from .store import CredentialStore

LOGGER = logging.getLogger(__name__)

UNKNOWN_DOMAIN = "Unknown"

T = TypeVar("T")


class AdminService:
    """Run credential and backup operations and report tagged results."""

    def __init__(
        self,
        *,
        credentials: CredentialManager,
        backups: BackupManager,
        auto_backup: AutoBackupScheduler,
        logger: StructuredLogger,
        domain_file: Path,
        api_key_file: Path | None = None,
        notifier: RestartNotifier | None = None,
    ) -> None:
        """Store the wired collaborators."""
        self.credentials = credentials
        self.backups = backups
        self.auto_backup = auto_backup
        self.logger = logger
        self.domain_file = domain_file
        self.api_key_file = api_key_file
        self.notifier = notifier

    @classmethod
    def from_config(
        cls,
        config: AppConfig,
        *,
        logger: StructuredLogger | None = None,
        backend: SyncBackend | None = None,
        controller: ServiceController | None = None,
        today: Callable[[], date] | None = None,
    ) -> AdminService:
        """Build the production wiring described by *config*."""
        locks = LockManager(config.runtime_dir, default_timeout=config.lock_timeout)
        notifier = RestartNotifier(
            controller
            or SystemdProvider(
                units=config.services.units,
                systemctl_bin=config.services.systemctl_bin,
                timeout=config.services.timeout,
            )
        )
        sync = backend or RcloneBackend(
            target=config.remote.target,
            rclone_bin=config.remote.rclone_bin,
            timeout=config.remote.timeout,
            suffix=config.backups.suffix,
        )
        store = CredentialStore(config.paths.service_config, config.paths.ledger)
        return cls(
            credentials=CredentialManager(store, locks, notifier=notifier, today=today),
            backups=BackupManager(
                sync,
                locks,
                sources=config.paths.backup_set(),
                restore_root=config.config_root,
                staging_dir=config.backups.staging_dir,
                restore_dir=config.backups.restore_dir,
                retention_days=config.backups.retention_days,
                notifier=notifier,
            ),
            auto_backup=AutoBackupScheduler(
                config.auto_backup.policy_file,
                config.auto_backup.cron_file,
                locks,
                schedule=config.auto_backup.schedule,
                command=config.auto_backup.command,
            ),
            logger=logger or StructuredLogger(config.logs_dir),
            domain_file=config.paths.domain,
            api_key_file=config.paths.api_key,
            notifier=notifier,
        )

    # Credentials ---------------------------------------------------
    def create_user(self, password: str, days: int) -> Success[dict[str, str]] | Failure:
        """Create a credential valid for *days* days."""

        def action(op: OperationScope) -> dict[str, str]:
            record = self.credentials.create(password, days, op=op)
            return {"password": record.secret, "expired": record.expiry, "domain": self.domain()}

        return self._run(
            "user create",
            action,
            message="User created",
            args={"password": password, "days": days},
            changed=1,
        )

    def create_trial(self, days: int = 1) -> Success[dict[str, str]] | Failure:
        """Create a short-lived ``TRIAL`` credential."""

        def action(op: OperationScope) -> dict[str, str]:
            record = self.credentials.create_trial(days, op=op)
            return {"password": record.secret, "expired": record.expiry, "domain": self.domain()}

        return self._run("user trial", action, message="Trial user created", changed=1)

    def delete_user(self, password: str) -> Success[None] | Failure:
        """Delete a credential."""

        def action(op: OperationScope) -> None:
            self.credentials.delete(password, op=op)

        return self._run(
            "user delete", action, message="User deleted", args={"password": password}, changed=1
        )

    def renew_user(self, password: str, days: int) -> Success[dict[str, str]] | Failure:
        """Extend a credential by *days* days."""

        def action(op: OperationScope) -> dict[str, str]:
            record = self.credentials.renew(password, days, op=op)
            return {"password": record.secret, "expired": record.expiry}

        return self._run(
            "user renew",
            action,
            message="User renewed",
            args={"password": password, "days": days},
            changed=1,
        )

    def list_users(self) -> Success[list[dict[str, str]]] | Failure:
        """List every credential with its status."""
        return self._run(
            "user list",
            lambda op: [record.to_dict() for record in self.credentials.list()],
            message="OK",
        )

    # Server info -----------------------------------------------------
    def domain(self) -> str:
        """Return the configured server domain, or ``Unknown``."""
        try:
            value = self.domain_file.read_text(encoding="utf-8").strip()
        except OSError:
            return UNKNOWN_DOMAIN
        return value or UNKNOWN_DOMAIN

    def info(self) -> Success[dict[str, str]]:
        """Return the server information shown to clients."""
        return Success("OK", {"domain": self.domain()})

    def load_api_key(self) -> str:
        """Return the API key, or an empty string when the key file is missing."""
        if self.api_key_file is None:
            return ""
        try:
            return self.api_key_file.read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            LOGGER.warning(
                "API key file %s not found; requests are not authenticated", self.api_key_file
            )
            return ""
        except OSError as exc:
            raise StoreIOError(f"API key file {self.api_key_file} unreadable: {exc}") from exc

    # Backups -------------------------------------------------------
    def create_backup(self) -> Success[dict[str, object]] | Failure:
        """Archive the managed files and upload them."""

        def action(op: OperationScope) -> dict[str, object]:
            result = self.backups.create(op=op)
            return result.to_dict()

        return self._run("backup create", action, message="Backup success", changed=1)

    def list_backups(self) -> Success[list[dict[str, object]]] | Failure:
        """List remote archives, newest first."""
        return self._run(
            "backup list",
            lambda op: [archive.to_dict() for archive in self.backups.list()],
            message="OK",
        )

    def restore_backup(self, backup_id: str) -> Success[dict[str, object]] | Failure:
        """Restore the archive named *backup_id*."""

        def action(op: OperationScope) -> dict[str, object]:
            return self.backups.restore(backup_id, op=op).to_dict()

        return self._run(
            "backup restore",
            action,
            message="Restore done",
            args={"backup_id": backup_id},
            changed=1,
        )

    def cleanup_backups(
        self, *, now: datetime | None = None
    ) -> Success[dict[str, object]] | Failure:
        """Delete archives older than the retention period."""

        def action(op: OperationScope) -> dict[str, object]:
            return self.backups.cleanup(now=now, op=op).to_dict()

        return self._run("backup cleanup", action, message="Cleanup OK")

    def toggle_auto_backup(self) -> Success[dict[str, object]] | Failure:
        """Flip the automatic backup policy."""

        def action(op: OperationScope) -> dict[str, object]:
            return self.auto_backup.toggle(op=op).to_dict()

        return self._run("backup auto", action, message="Auto backup updated", changed=1)

    def wait_for_restarts(self, timeout: float | None = None) -> None:
        """Join pending background restarts."""
        if self.notifier is not None:
            self.notifier.wait(timeout)

    # ------------------------------------------------------------------
    def _run(
        self,
        command: str,
        action: Callable[[OperationScope], T],
        *,
        message: str,
        args: Mapping[str, object] | None = None,
        changed: int = 0,
    ) -> Success[T] | Failure:
        with self.logger.operation(command, args=args) as op:
            try:
                data = action(op)
            except ZivctlError as exc:
                errors = [exc.output] if exc.output else None
                op.error(exc.message, errors=errors, rc=int(exc.exit_code))
                return Failure.from_error(exc)
            except LockError as exc:
                op.error(str(exc), rc=int(ExitCode.ENVIRONMENT))
                return Failure(kind=ErrorKind.IO_ERROR, message=str(exc))
            op.success(message, changed=changed)
            return Success(message, data)


__all__ = ["UNKNOWN_DOMAIN", "AdminService"]
