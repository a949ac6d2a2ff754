"""Tests for the zip archive helpers."""
from __future__ import annotations

import os
import zipfile
from pathlib import Path

import pytest

from zivctl.archive import build_archive, extract_members
from zivctl.errors import ArchiveError, NotFoundError


def _write(path: Path, content: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")
    return path


def test_build_archive_flattens_and_skips_missing(tmp_path: Path) -> None:
    """Files are stored under their base names; absent sources are ignored."""
    first = _write(tmp_path / "etc" / "config.json", "{}\n")
    second = _write(tmp_path / "other" / "users.db", "alice | 2024-01-31\n")
    archive = tmp_path / "out" / "backup.zip"

    members = build_archive(archive, [first, tmp_path / "missing", second])

    assert members == ["config.json", "users.db"]
    with zipfile.ZipFile(archive) as bundle:
        assert bundle.namelist() == ["config.json", "users.db"]
        assert all(info.compress_type == zipfile.ZIP_DEFLATED for info in bundle.infolist())
        assert bundle.read("users.db") == b"alice | 2024-01-31\n"


def test_build_archive_skips_unreadable_member(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    """A member that cannot be added is skipped, the rest still land."""
    good = _write(tmp_path / "domain", "vpn.example.com\n")
    bad = _write(tmp_path / "zivpn.key", "secret\n")
    original_write = zipfile.ZipFile.write

    def flaky_write(self: zipfile.ZipFile, filename: object, *args: object, **kwargs: object):
        if Path(str(filename)) == bad:
            raise PermissionError("denied")
        return original_write(self, filename, *args, **kwargs)  # type: ignore[arg-type]

    monkeypatch.setattr(zipfile.ZipFile, "write", flaky_write)

    members = build_archive(tmp_path / "b.zip", [good, bad])

    assert members == ["domain"]


def test_build_archive_unwritable_destination(tmp_path: Path) -> None:
    """Failure to create the archive file is an ArchiveError."""
    blocker = _write(tmp_path / "blocker", "file, not a directory")

    with pytest.raises(ArchiveError):
        build_archive(blocker / "backup.zip", [])


def test_extract_members_overwrites_and_applies_mode(tmp_path: Path) -> None:
    """Extraction replaces existing files and restores permission bits."""
    source = _write(tmp_path / "src" / "zivpn.key", "new key\n")
    os.chmod(source, 0o600)
    archive = tmp_path / "b.zip"
    build_archive(archive, [source])
    target = tmp_path / "target"
    _write(target / "zivpn.key", "old key, much longer than the new one\n")

    restored = extract_members(archive, target)

    assert restored == ["zivpn.key"]
    assert (target / "zivpn.key").read_text(encoding="utf-8") == "new key\n"
    assert (target / "zivpn.key").stat().st_mode & 0o777 == 0o600


def test_extract_members_creates_directories(tmp_path: Path) -> None:
    """Directory entries and nested members get their parents created."""
    archive = tmp_path / "nested.zip"
    with zipfile.ZipFile(archive, "w") as bundle:
        bundle.writestr("conf.d/", "")
        bundle.writestr("conf.d/extra.json", "{}")

    restored = extract_members(archive, tmp_path / "target")

    assert restored == ["conf.d/extra.json"]
    assert (tmp_path / "target" / "conf.d").is_dir()
    assert (tmp_path / "target" / "conf.d" / "extra.json").read_text() == "{}"


def test_extract_members_skips_escaping_paths(tmp_path: Path) -> None:
    """Members that would land outside the target root are ignored."""
    archive = tmp_path / "evil.zip"
    with zipfile.ZipFile(archive, "w") as bundle:
        bundle.writestr("../escaped.txt", "nope")
        bundle.writestr("/abs.txt", "nope")
        bundle.writestr("ok.txt", "fine")
    target = tmp_path / "target"

    restored = extract_members(archive, target)

    assert restored == ["ok.txt"]
    assert not (tmp_path / "escaped.txt").exists()


def test_extract_members_writes_through_symlinks(tmp_path: Path) -> None:
    """An existing symlink under the target root receives the member bytes."""
    real = _write(tmp_path / "elsewhere" / "real.crt", "old")
    target = tmp_path / "target"
    target.mkdir()
    (target / "zivpn.crt").symlink_to(real)
    archive = tmp_path / "bundle.zip"
    with zipfile.ZipFile(archive, "w") as bundle:
        bundle.writestr("zivpn.crt", "new")

    restored = extract_members(archive, target)

    assert restored == ["zivpn.crt"]
    assert (target / "zivpn.crt").is_symlink()
    assert real.read_text() == "new"


def test_extract_members_honours_destinations(tmp_path: Path) -> None:
    """Mapped top-level members go to their own paths; the rest stay under the root."""
    archive = tmp_path / "bundle.zip"
    with zipfile.ZipFile(archive, "w") as bundle:
        bundle.writestr("tls.key", "key")
        bundle.writestr("domain", "vpn.example.com")
    target = tmp_path / "target"
    key_path = tmp_path / "keys" / "tls.key"

    restored = extract_members(archive, target, {"tls.key": key_path})

    assert restored == ["tls.key", "domain"]
    assert key_path.read_text() == "key"
    assert not (target / "tls.key").exists()
    assert (target / "domain").read_text() == "vpn.example.com"


def test_extract_members_missing_archive(tmp_path: Path) -> None:
    """An archive that cannot be opened is NotFound."""
    with pytest.raises(NotFoundError):
        extract_members(tmp_path / "absent.zip", tmp_path)

    (tmp_path / "garbage.zip").write_bytes(b"not a zip")
    with pytest.raises(NotFoundError):
        extract_members(tmp_path / "garbage.zip", tmp_path)
