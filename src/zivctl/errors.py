"""Error taxonomy shared by the credential and backup subsystems.

Every failure surfaced by a core operation is a :class:`ZivctlError` carrying
one :class:`ErrorKind` tag. Failures of the external sync tool keep the
tool's raw output on :attr:`ZivctlError.output` so operators can see what
``rclone`` actually said.
"""
from __future__ import annotations

from enum import Enum, IntEnum


class ExitCode(IntEnum):
    """Process exit statuses of the CLI, one per failure family."""

    OK = 0
    VALIDATION = 2
    ENVIRONMENT = 3
    PROVIDER = 4


class ErrorKind(str, Enum):
    """Tags for every failure a core operation can report."""

    INVALID_INPUT = "InvalidInput"
    CONFLICT = "Conflict"
    NOT_FOUND = "NotFound"
    IO_ERROR = "IOError"
    UPLOAD_FAILED = "UploadFailed"
    FETCH_FAILED = "FetchFailed"
    LIST_FAILED = "ListFailed"
    ARCHIVE_ERROR = "ArchiveError"


_EXIT_CODES: dict[ErrorKind, ExitCode] = {
    ErrorKind.INVALID_INPUT: ExitCode.VALIDATION,
    ErrorKind.CONFLICT: ExitCode.VALIDATION,
    ErrorKind.NOT_FOUND: ExitCode.VALIDATION,
    ErrorKind.IO_ERROR: ExitCode.ENVIRONMENT,
    ErrorKind.UPLOAD_FAILED: ExitCode.PROVIDER,
    ErrorKind.FETCH_FAILED: ExitCode.PROVIDER,
    ErrorKind.LIST_FAILED: ExitCode.PROVIDER,
    ErrorKind.ARCHIVE_ERROR: ExitCode.PROVIDER,
}


def exit_code_for(kind: ErrorKind) -> ExitCode:
    """Return the CLI exit code for failures tagged *kind*."""
    return _EXIT_CODES[kind]


class ZivctlError(RuntimeError):
    """Base class for tagged core failures."""

    kind: ErrorKind = ErrorKind.IO_ERROR

    def __init__(self, message: str, *, output: str | None = None) -> None:
        """Store the human-readable *message* and optional raw tool *output*."""
        super().__init__(message)
        self.message = message
        self.output = output

    @property
    def exit_code(self) -> ExitCode:
        """Return the CLI exit code associated with this error kind."""
        return exit_code_for(self.kind)

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable description of the error."""
        payload: dict[str, object] = {"kind": self.kind.value, "message": self.message}
        if self.output:
            payload["output"] = self.output
        return payload


class InvalidInputError(ZivctlError):
    """Raised for malformed or missing request fields."""

    kind = ErrorKind.INVALID_INPUT


class ConflictError(ZivctlError):
    """Raised when a secret is already registered."""

    kind = ErrorKind.CONFLICT


class NotFoundError(ZivctlError):
    """Raised when the target of an operation does not exist."""

    kind = ErrorKind.NOT_FOUND


class StoreIOError(ZivctlError):
    """Raised when a local file cannot be read or written."""

    kind = ErrorKind.IO_ERROR


class UploadFailedError(ZivctlError):
    """Raised when the sync tool fails to upload an archive."""

    kind = ErrorKind.UPLOAD_FAILED


class FetchFailedError(ZivctlError):
    """Raised when the sync tool fails to download an archive."""

    kind = ErrorKind.FETCH_FAILED


class ListFailedError(ZivctlError):
    """Raised when the remote listing fails or cannot be parsed."""

    kind = ErrorKind.LIST_FAILED


class ArchiveError(ZivctlError):
    """Raised when a local archive cannot be constructed."""

    kind = ErrorKind.ARCHIVE_ERROR


__all__ = [
    "ArchiveError",
    "ConflictError",
    "ErrorKind",
    "ExitCode",
    "FetchFailedError",
    "InvalidInputError",
    "ListFailedError",
    "NotFoundError",
    "StoreIOError",
    "UploadFailedError",
    "ZivctlError",
    "exit_code_for",
]
