"""Backup orchestration: create, list, restore and prune remote archives."""
from __future__ import annotations

import logging
import secrets
import string
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from pathlib import Path

from .archive import build_archive, extract_members
from .errors import InvalidInputError
from .locking import LockManager
from .logging import OperationScope
from .providers.base import RemoteArchive, SyncBackend
from .providers.systemd import RestartNotifier

LOGGER = logging.getLogger(__name__)

IDENTIFIER_ALPHABET = string.ascii_letters + string.digits
IDENTIFIER_LENGTH = 12


def generate_identifier(length: int = IDENTIFIER_LENGTH) -> str:
    """Return a random filename-safe backup identifier."""
    return "".join(secrets.choice(IDENTIFIER_ALPHABET) for _ in range(length))


@dataclass(frozen=True, slots=True)
class BackupResult:
    """Outcome of a successful backup."""

    identifier: str
    filename: str
    members: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation."""
        return {
            "backup_id": self.identifier,
            "filename": self.filename,
            "members": list(self.members),
        }


@dataclass(frozen=True, slots=True)
class CleanupResult:
    """Counts reported by a cleanup sweep."""

    deleted: int = 0
    failed: int = 0
    removed: tuple[str, ...] = field(default=())

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation."""
        return {"deleted": self.deleted, "failed": self.failed, "removed": list(self.removed)}


@dataclass(frozen=True, slots=True)
class RestoreResult:
    """Members written back by a restore."""

    identifier: str
    restored: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation."""
        return {"backup_id": self.identifier, "restored": list(self.restored)}


class BackupManager:
    """Drive the archive builder, the sync backend and the restart notifier."""

    def __init__(
        self,
        backend: SyncBackend,
        locks: LockManager,
        *,
        sources: Sequence[Path],
        restore_root: Path,
        staging_dir: Path,
        restore_dir: Path,
        retention_days: int = 7,
        notifier: RestartNotifier | None = None,
    ) -> None:
        """Wire the collaborators and the local directories used for staging."""
        self._backend = backend
        self._locks = locks
        self._sources = list(sources)
        self._restore_root = restore_root
        self._staging_dir = staging_dir
        self._restore_dir = restore_dir
        self._retention = timedelta(days=retention_days)
        self._notifier = notifier

    @property
    def sources(self) -> list[Path]:
        """Return the fixed list of files captured by a backup."""
        return list(self._sources)

    def create(self, *, op: OperationScope | None = None) -> BackupResult:
        """Archive the backup set and upload it; the local copy never survives."""
        with self._locks.backup_lock() as handle:
            if op is not None:
                op.set_lock_wait_ms(handle.wait_ms)
            identifier = generate_identifier()
            archive = self._staging_dir / f"{identifier}{self._backend.suffix}"
            try:
                members = build_archive(archive, self._sources)
                _step(op, "archive.build", detail={"path": archive, "members": members})
                self._backend.upload(archive)
                _step(op, "remote.upload", detail=archive.name)
            finally:
                try:
                    archive.unlink(missing_ok=True)
                except OSError as exc:
                    LOGGER.warning("Could not remove local archive %s: %s", archive, exc)
        return BackupResult(identifier=identifier, filename=archive.name, members=tuple(members))

    def list(self) -> list[RemoteArchive]:
        """Return the remote archives, newest first."""
        archives = self._backend.list()
        epoch = datetime.min.replace(tzinfo=UTC)
        return sorted(archives, key=lambda item: item.modified or epoch, reverse=True)

    def restore(self, identifier: str, *, op: OperationScope | None = None) -> RestoreResult:
        """Fetch *identifier* and write each member back to its configured path."""
        if not isinstance(identifier, str) or not identifier.strip():
            raise InvalidInputError("Backup ID is required.")
        identifier = identifier.strip()
        local = self._backend.fetch(identifier, self._restore_dir)
        _step(op, "remote.fetch", detail=local)
        try:
            destinations = {path.name: path for path in self._sources}
            restored = extract_members(local, self._restore_root, destinations)
            _step(op, "archive.extract", detail={"root": self._restore_root, "members": restored})
        finally:
            try:
                local.unlink(missing_ok=True)
            except OSError as exc:
                LOGGER.warning("Could not remove staged archive %s: %s", local, exc)
        if self._notifier is not None:
            self._notifier.notify("restore")
            _step(op, "services.restart", status="scheduled", detail="restore")
        return RestoreResult(identifier=identifier, restored=tuple(restored))

    def cleanup(
        self, *, now: datetime | None = None, op: OperationScope | None = None
    ) -> CleanupResult:
        """Delete remote archives older than the retention period.

        Archives without a usable timestamp are kept. Deletion failures are
        counted, never raised.
        """
        cutoff = (now or datetime.now(tz=UTC)) - self._retention
        deleted: list[str] = []
        failed = 0
        with self._locks.backup_lock() as handle:
            if op is not None:
                op.set_lock_wait_ms(handle.wait_ms)
            for archive in self._backend.list():
                if archive.modified is None or archive.modified >= cutoff:
                    continue
                if self._backend.delete(archive.identifier):
                    deleted.append(archive.identifier)
                    _step(op, "remote.delete", detail=archive.filename)
                else:
                    failed += 1
                    _step(op, "remote.delete", status="failed", detail=archive.filename)
        return CleanupResult(deleted=len(deleted), failed=failed, removed=tuple(deleted))


def _step(
    op: OperationScope | None, name: str, *, status: str = "success", detail: object = None
) -> None:
    if op is not None:
        op.add_step(name, status=status, detail=detail)


__all__ = [
    "BackupManager",
    "BackupResult",
    "CleanupResult",
    "RestoreResult",
    "generate_identifier",
]
