"""Tagged operation results and the JSON envelope used at the HTTP boundary."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Generic, TypeVar

from .errors import ErrorKind, ZivctlError

T = TypeVar("T")

UNAUTHORIZED = "Unauthorized"


@dataclass(frozen=True, slots=True)
class Success(Generic[T]):
    """A completed operation and its payload."""

    message: str
    data: T | None = None

    @property
    def ok(self) -> bool:
        """Return ``True``."""
        return True


@dataclass(frozen=True, slots=True)
class Failure:
    """A failed operation tagged with its :class:`ErrorKind`."""

    kind: ErrorKind
    message: str
    output: str | None = None

    @property
    def ok(self) -> bool:
        """Return ``False``."""
        return False

    @classmethod
    def from_error(cls, error: ZivctlError) -> Failure:
        """Build a failure from a raised :class:`ZivctlError`."""
        return cls(kind=error.kind, message=error.message, output=error.output)


Result = Success[T] | Failure


def envelope(result: Success[object] | Failure) -> dict[str, object]:
    """Serialise *result* into ``{"success", "message", "data"}``."""
    if isinstance(result, Success):
        payload: dict[str, object] = {"success": True, "message": result.message}
        if result.data is not None:
            payload["data"] = result.data
        return payload
    body: dict[str, object] = {"success": False, "message": result.message}
    if result.output:
        body["data"] = {"kind": result.kind.value, "output": result.output}
    return body


__all__ = ["UNAUTHORIZED", "Failure", "Result", "Success", "envelope"]
