"""Collaborator interfaces for the external tools zivctl shells out to."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Protocol


@dataclass(frozen=True, slots=True)
class RemoteArchive:
    """A backup archive as reported by the remote listing.

    ``identifier`` is opaque to callers: pass it back unchanged to
    :meth:`SyncBackend.fetch` and :meth:`SyncBackend.delete`.
    """

    identifier: str
    filename: str
    size: int
    modified: datetime | None = None
    remote_id: str | None = None

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation."""
        payload: dict[str, object] = {
            "id": self.identifier,
            "filename": self.filename,
            "size": self.size,
            "modified": (
                self.modified.isoformat().replace("+00:00", "Z") if self.modified else None
            ),
        }
        if self.remote_id:
            payload["remote_id"] = self.remote_id
        return payload


class SyncBackend(Protocol):
    """Durable remote storage reached through a sync tool."""

    suffix: str

    def upload(self, archive: Path) -> None:
        """Copy *archive* to the remote location."""

    def list(self) -> list[RemoteArchive]:
        """Return the archives present on the remote."""

    def fetch(self, identifier: str, staging_dir: Path) -> Path:
        """Download the archive *identifier* into *staging_dir*; return its path."""

    def delete(self, identifier: str) -> bool:
        """Delete the archive *identifier*; return ``False`` on failure."""


class ServiceController(Protocol):
    """Restarts the services depending on the managed files."""

    def restart_all(self) -> list[str]:
        """Restart every managed unit; return the failure messages."""


__all__ = ["RemoteArchive", "ServiceController", "SyncBackend"]
