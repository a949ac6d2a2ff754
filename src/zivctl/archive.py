"""Zip helpers used by the backup and restore workflows."""
from __future__ import annotations

import logging
import os
import zipfile
from collections.abc import Iterable, Mapping
from pathlib import Path, PurePosixPath

from .errors import ArchiveError, NotFoundError

LOGGER = logging.getLogger(__name__)


def build_archive(destination: Path, sources: Iterable[Path]) -> list[str]:
    """Zip every existing file in *sources* into *destination*.

    Each file is stored under its base name. Missing sources are skipped;
    a file that cannot be read is logged and skipped as well. Returns the
    member names written.
    """
    members: list[str] = []
    try:
        destination.parent.mkdir(parents=True, exist_ok=True)
        bundle = zipfile.ZipFile(destination, "w", compression=zipfile.ZIP_DEFLATED)
    except OSError as exc:
        raise ArchiveError(f"Cannot create archive {destination}: {exc}") from exc

    with bundle:
        for source in sources:
            if not source.is_file():
                continue
            name = source.name
            if name in members:
                LOGGER.warning("Skipping %s: %s is already in the archive", source, name)
                continue
            try:
                bundle.write(source, arcname=name)
            except OSError as exc:
                LOGGER.warning("Skipping %s in %s: %s", source, destination.name, exc)
                continue
            members.append(name)
    return members


def extract_members(
    archive: Path, target_root: Path, destinations: Mapping[str, Path] | None = None
) -> list[str]:
    """Unpack *archive* under *target_root*, member by member.

    A top-level member named in *destinations* is written to the mapped path
    instead. Symlinks already in place are written through, never replaced.

    Existing files are overwritten and the recorded permission bits are
    applied. Failures on a single member are logged and skipped. Returns the
    names of the members written.
    """
    try:
        bundle = zipfile.ZipFile(archive)
    except (OSError, zipfile.BadZipFile) as exc:
        raise NotFoundError(f"Backup file not found or unreadable: {archive}") from exc

    mapped = dict(destinations or {})
    restored: list[str] = []
    with bundle:
        for info in bundle.infolist():
            destination = _member_destination(target_root, info.filename, mapped)
            if destination is None:
                LOGGER.warning("Skipping unsafe archive member %r", info.filename)
                continue
            try:
                if info.is_dir():
                    destination.mkdir(parents=True, exist_ok=True)
                    continue
                destination.parent.mkdir(parents=True, exist_ok=True)
                with bundle.open(info) as source, destination.open("wb") as handle:
                    handle.write(source.read())
                mode = (info.external_attr >> 16) & 0o7777
                if mode:
                    os.chmod(destination, mode)
            except (OSError, zipfile.BadZipFile) as exc:
                LOGGER.warning("Failed to restore %s: %s", info.filename, exc)
                continue
            restored.append(info.filename)
    return restored


def _member_destination(root: Path, name: str, mapped: Mapping[str, Path]) -> Path | None:
    relative = PurePosixPath(name.replace("\\", "/"))
    if relative.is_absolute() or ".." in relative.parts or not relative.parts:
        return None
    if len(relative.parts) == 1 and relative.name in mapped:
        return mapped[relative.name]
    return root.joinpath(*relative.parts)


__all__ = ["build_archive", "extract_members"]
