"""Tests for the rclone-backed sync gateway."""
from __future__ import annotations

import json
import subprocess
from collections.abc import Sequence
from datetime import UTC, datetime
from pathlib import Path

import pytest

from zivctl.errors import FetchFailedError, InvalidInputError, ListFailedError, UploadFailedError
from zivctl.providers.rclone import RcloneBackend, parse_modtime


class DummyResult:
    """Simple stand-in for ``subprocess.CompletedProcess``."""

    def __init__(self, returncode: int = 0, stdout: str = "", stderr: str = "") -> None:
        """Initialise the dummy result."""
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr


class Recorder:
    """Capture ``subprocess.run`` invocations and replay canned results."""

    def __init__(self, *results: DummyResult | BaseException) -> None:
        """Queue the results returned by successive calls."""
        self.results = list(results)
        self.calls: list[list[str]] = []
        self.timeouts: list[float | None] = []

    def __call__(self, args: Sequence[str], **kwargs: object) -> DummyResult:
        """Record the command and return (or raise) the next result."""
        self.calls.append(list(args))
        timeout = kwargs.get("timeout")
        self.timeouts.append(timeout if isinstance(timeout, float) else None)
        result = self.results.pop(0) if self.results else DummyResult()
        if isinstance(result, BaseException):
            raise result
        return result


@pytest.fixture
def backend() -> RcloneBackend:
    """Return a backend aimed at the default remote."""
    return RcloneBackend(target="drive:ZIVPN-BACKUP", rclone_bin="rclone", timeout=30.0)


def _install(monkeypatch: pytest.MonkeyPatch, recorder: Recorder) -> Recorder:
    monkeypatch.setattr("zivctl.providers.rclone.subprocess.run", recorder)
    return recorder


def test_upload_invokes_rclone_copy(
    backend: RcloneBackend, monkeypatch: pytest.MonkeyPatch, tmp_path: Path
) -> None:
    """Upload copies the archive into the remote directory with a timeout."""
    recorder = _install(monkeypatch, Recorder(DummyResult()))

    backend.upload(tmp_path / "abc.zip")

    assert recorder.calls == [["rclone", "copy", str(tmp_path / "abc.zip"), "drive:ZIVPN-BACKUP"]]
    assert recorder.timeouts == [30.0]


def test_upload_failure_keeps_tool_output(
    backend: RcloneBackend, monkeypatch: pytest.MonkeyPatch, tmp_path: Path
) -> None:
    """A nonzero exit surfaces rclone's own words."""
    _install(monkeypatch, Recorder(DummyResult(1, stderr="Failed to copy: quota exceeded")))

    with pytest.raises(UploadFailedError) as excinfo:
        backend.upload(tmp_path / "abc.zip")

    assert excinfo.value.output == "Failed to copy: quota exceeded"
    assert "quota exceeded" in excinfo.value.message


@pytest.mark.parametrize(
    "failure",
    [FileNotFoundError("rclone"), subprocess.TimeoutExpired(cmd="rclone", timeout=30)],
)
def test_upload_tool_unavailable(
    backend: RcloneBackend,
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
    failure: BaseException,
) -> None:
    """A missing binary or a timeout is an upload failure."""
    _install(monkeypatch, Recorder(failure))

    with pytest.raises(UploadFailedError):
        backend.upload(tmp_path / "abc.zip")


def test_list_parses_lsjson(backend: RcloneBackend, monkeypatch: pytest.MonkeyPatch) -> None:
    """Only archive files are reported, with size, time and native ID."""
    payload = [
        {
            "Path": "Ab12Cd34Ef56.zip",
            "Name": "Ab12Cd34Ef56.zip",
            "Size": 2048,
            "ModTime": "2024-01-05T10:20:30.123456789Z",
            "IsDir": False,
            "ID": "1xYz",
        },
        {"Name": "notes.txt", "Size": 5, "ModTime": "2024-01-05T10:20:30Z", "IsDir": False},
        {"Name": "old.zip", "Size": -1, "IsDir": True},
        "not-an-object",
    ]
    recorder = _install(monkeypatch, Recorder(DummyResult(stdout=json.dumps(payload))))

    archives = backend.list()

    assert recorder.calls == [["rclone", "lsjson", "drive:ZIVPN-BACKUP"]]
    assert len(archives) == 1
    archive = archives[0]
    assert archive.identifier == "Ab12Cd34Ef56"
    assert archive.filename == "Ab12Cd34Ef56.zip"
    assert archive.size == 2048
    assert archive.modified == datetime(2024, 1, 5, 10, 20, 30, 123456, tzinfo=UTC)
    assert archive.remote_id == "1xYz"
    assert archive.to_dict()["modified"] == "2024-01-05T10:20:30.123456Z"


def test_list_missing_remote_directory_is_empty(
    backend: RcloneBackend, monkeypatch: pytest.MonkeyPatch
) -> None:
    """Exit code 3 (directory not found) means there are no backups yet."""
    _install(monkeypatch, Recorder(DummyResult(3, stderr="directory not found")))

    assert backend.list() == []


def test_list_empty_array(backend: RcloneBackend, monkeypatch: pytest.MonkeyPatch) -> None:
    """An empty remote lists as an empty sequence."""
    _install(monkeypatch, Recorder(DummyResult(stdout="[]\n")))

    assert backend.list() == []


def test_list_failures(backend: RcloneBackend, monkeypatch: pytest.MonkeyPatch) -> None:
    """Tool errors and unparseable output are list failures."""
    _install(
        monkeypatch,
        Recorder(
            DummyResult(1, stderr="couldn't find section in config file"),
            DummyResult(stdout="{not json"),
            DummyResult(stdout='{"Name": "x.zip"}'),
        ),
    )

    with pytest.raises(ListFailedError) as excinfo:
        backend.list()
    assert excinfo.value.output == "couldn't find section in config file"

    with pytest.raises(ListFailedError, match="Invalid rclone output"):
        backend.list()
    with pytest.raises(ListFailedError, match="expected a JSON array"):
        backend.list()


def test_fetch_copies_into_staging(
    backend: RcloneBackend, monkeypatch: pytest.MonkeyPatch, tmp_path: Path
) -> None:
    """Fetch pulls ``<remote>/<id>.zip`` into the staging directory."""
    recorder = _install(monkeypatch, Recorder(DummyResult()))
    staging = tmp_path / "staging"

    local = backend.fetch("Ab12Cd34Ef56", staging)

    assert local == staging / "Ab12Cd34Ef56.zip"
    assert staging.is_dir()
    assert recorder.calls == [
        ["rclone", "copy", "drive:ZIVPN-BACKUP/Ab12Cd34Ef56.zip", str(staging)]
    ]


def test_fetch_failure(
    backend: RcloneBackend, monkeypatch: pytest.MonkeyPatch, tmp_path: Path
) -> None:
    """A failed copy is a fetch failure carrying the output."""
    _install(monkeypatch, Recorder(DummyResult(3, stderr="object not found")))

    with pytest.raises(FetchFailedError) as excinfo:
        backend.fetch("missing", tmp_path)

    assert excinfo.value.output == "object not found"


@pytest.mark.parametrize("identifier", ["", "../etc", "a/b", ".."])
def test_identifiers_cannot_escape_remote(backend: RcloneBackend, identifier: str) -> None:
    """Identifiers are single path components."""
    with pytest.raises(InvalidInputError):
        backend.filename_for(identifier)


def test_delete_reports_outcome(backend: RcloneBackend, monkeypatch: pytest.MonkeyPatch) -> None:
    """Delete returns a boolean instead of raising."""
    recorder = _install(
        monkeypatch,
        Recorder(DummyResult(), DummyResult(1, stderr="permission denied"), FileNotFoundError()),
    )

    assert backend.delete("old") is True
    assert backend.delete("old") is False
    assert backend.delete("old") is False
    assert recorder.calls[0] == ["rclone", "deletefile", "drive:ZIVPN-BACKUP/old.zip"]


@pytest.mark.parametrize(
    ("value", "expected"),
    [
        ("2024-01-05T10:20:30Z", datetime(2024, 1, 5, 10, 20, 30, tzinfo=UTC)),
        ("2024-01-05T12:20:30.5+02:00", datetime(2024, 1, 5, 10, 20, 30, 500000, tzinfo=UTC)),
        ("2024-01-05T10:20:30", datetime(2024, 1, 5, 10, 20, 30, tzinfo=UTC)),
        ("yesterday", None),
        (None, None),
    ],
)
def test_parse_modtime(value: object, expected: datetime | None) -> None:
    """RFC 3339 timestamps are normalised to UTC; garbage yields None."""
    assert parse_modtime(value) == expected
