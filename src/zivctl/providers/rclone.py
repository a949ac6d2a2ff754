"""Remote backup gateway built on the ``rclone`` command-line tool.

All backups live in one rclone remote path (``drive:ZIVPN-BACKUP`` by
default), one archive object per backup. The gateway never talks to a cloud
API directly; every operation is a bounded ``rclone`` invocation whose raw
output is preserved on failure.
"""
from __future__ import annotations

import json
import logging
import re
import subprocess
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

from ..errors import (
    FetchFailedError,
    InvalidInputError,
    ListFailedError,
    UploadFailedError,
)
from .base import RemoteArchive

LOGGER = logging.getLogger(__name__)

# rclone exit status for "directory not found".
EXIT_DIRECTORY_NOT_FOUND = 3

_FRACTION_RE = re.compile(r"(\.\d{6})\d+")


class RcloneError(RuntimeError):
    """Raised when ``rclone`` cannot be executed at all."""


def parse_modtime(value: object) -> datetime | None:
    """Parse an rclone ``ModTime`` (RFC 3339, nanosecond precision) into UTC."""
    if not isinstance(value, str) or not value.strip():
        return None
    text = value.strip()
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    text = _FRACTION_RE.sub(r"\1", text)
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


def _combined_output(result: subprocess.CompletedProcess[str]) -> str:
    parts = [(result.stdout or "").strip(), (result.stderr or "").strip()]
    return "\n".join(part for part in parts if part) or f"exit status {result.returncode}"


@dataclass(slots=True)
class RcloneBackend:
    """:class:`~zivctl.providers.base.SyncBackend` implemented with ``rclone``."""

    target: str = "drive:ZIVPN-BACKUP"
    rclone_bin: str = "rclone"
    timeout: float = 300.0
    suffix: str = ".zip"

    def remote_path(self, identifier: str) -> str:
        """Return the rclone path of the archive named by *identifier*."""
        return f"{self.target}/{self.filename_for(identifier)}"

    def filename_for(self, identifier: str) -> str:
        """Return the archive file name for *identifier*."""
        normalized = identifier.strip()
        if not normalized or "/" in normalized or "\\" in normalized or normalized in {".", ".."}:
            raise InvalidInputError(f"Invalid backup identifier {identifier!r}.")
        return f"{normalized}{self.suffix}"

    # SyncBackend ---------------------------------------------------
    def upload(self, archive: Path) -> None:
        """Copy *archive* into the remote directory."""
        try:
            result = self._run(["copy", str(archive), self.target])
        except RcloneError as exc:
            raise UploadFailedError(f"Rclone upload failed: {exc}", output=str(exc)) from exc
        if result.returncode != 0:
            output = _combined_output(result)
            raise UploadFailedError(f"Rclone upload failed: {output}", output=output)

    def list(self) -> list[RemoteArchive]:
        """Return the archives in the remote directory."""
        try:
            result = self._run(["lsjson", self.target])
        except RcloneError as exc:
            raise ListFailedError(f"Rclone lsjson failed: {exc}", output=str(exc)) from exc
        if result.returncode == EXIT_DIRECTORY_NOT_FOUND:
            LOGGER.info("Remote %s does not exist yet; treating as empty", self.target)
            return []
        if result.returncode != 0:
            output = _combined_output(result)
            raise ListFailedError(f"Rclone lsjson failed: {output}", output=output)
        return self.parse_listing(result.stdout)

    def fetch(self, identifier: str, staging_dir: Path) -> Path:
        """Download *identifier* into *staging_dir* and return the local path."""
        filename = self.filename_for(identifier)
        try:
            staging_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise FetchFailedError(f"Cannot prepare {staging_dir}: {exc}") from exc
        try:
            result = self._run(["copy", f"{self.target}/{filename}", str(staging_dir)])
        except RcloneError as exc:
            raise FetchFailedError(f"Rclone copy failed: {exc}", output=str(exc)) from exc
        if result.returncode != 0:
            output = _combined_output(result)
            raise FetchFailedError(f"Rclone copy failed: {output}", output=output)
        return staging_dir / filename

    def delete(self, identifier: str) -> bool:
        """Delete the remote archive; report failure instead of raising."""
        try:
            result = self._run(["deletefile", self.remote_path(identifier)])
        except (RcloneError, InvalidInputError) as exc:
            LOGGER.warning("Could not delete remote backup %s: %s", identifier, exc)
            return False
        if result.returncode != 0:
            LOGGER.warning(
                "Could not delete remote backup %s: %s", identifier, _combined_output(result)
            )
            return False
        return True

    # ------------------------------------------------------------------
    def parse_listing(self, payload: str) -> list[RemoteArchive]:
        """Parse ``rclone lsjson`` output into archive descriptors."""
        try:
            data = json.loads(payload or "[]")
        except json.JSONDecodeError as exc:
            raise ListFailedError(f"Invalid rclone output: {exc}", output=payload) from exc
        if data is None:
            return []
        if not isinstance(data, list):
            raise ListFailedError("Invalid rclone output: expected a JSON array.", output=payload)

        archives: list[RemoteArchive] = []
        for item in data:
            if not isinstance(item, Mapping):
                continue
            name = item.get("Name")
            if not isinstance(name, str) or not name.endswith(self.suffix):
                continue
            if item.get("IsDir") is True:
                continue
            identifier = name[: -len(self.suffix)]
            if not identifier:
                continue
            size_raw = item.get("Size")
            size = size_raw if isinstance(size_raw, int) and not isinstance(size_raw, bool) else 0
            remote_id = item.get("ID")
            archives.append(
                RemoteArchive(
                    identifier=identifier,
                    filename=name,
                    size=size,
                    modified=parse_modtime(item.get("ModTime")),
                    remote_id=remote_id if isinstance(remote_id, str) and remote_id else None,
                )
            )
        return archives

    def _run(self, args: Sequence[str]) -> subprocess.CompletedProcess[str]:
        command = [self.rclone_bin, *args]
        try:
            return subprocess.run(  # noqa: S603 - controlled command execution
                command,
                capture_output=True,
                text=True,
                check=False,
                timeout=self.timeout,
            )
        except FileNotFoundError as exc:
            raise RcloneError(f"{self.rclone_bin} not found: {exc}") from exc
        except subprocess.TimeoutExpired as exc:
            raise RcloneError(
                f"{' '.join(command)} timed out after {self.timeout:.0f}s"
            ) from exc


__all__ = ["RcloneBackend", "RcloneError", "parse_modtime"]
