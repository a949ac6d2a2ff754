"""File-backed credential store.

Two co-located files describe the VPN users:

* the service configuration document (JSON) whose ``auth.config`` array is the
  list of secrets the VPN daemon accepts, and
* the ledger, a plain-text file with one ``secret | YYYY-MM-DD`` record per
  line holding each secret's expiry date.

This module only knows how to read and write them. Keeping the two in step is
the job of :mod:`zivctl.credentials`.
"""
from __future__ import annotations

import json
import os
import tempfile
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import date
from pathlib import Path

from .errors import StoreIOError

LEDGER_SEPARATOR = "|"
DATE_FORMAT = "%Y-%m-%d"
DEFAULT_FILE_MODE = 0o644

_KNOWN_KEYS = ("listen", "cert", "key", "obfs", "auth")


@dataclass(slots=True)
class ServiceConfig:
    """In-memory form of the VPN service configuration document."""

    listen: str = ""
    cert: str = ""
    key: str = ""
    obfs: str = ""
    auth_mode: str = "passwords"
    credentials: list[str] = field(default_factory=list)
    auth_extra: dict[str, object] = field(default_factory=dict)
    extra: dict[str, object] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Mapping[str, object], *, source: Path | None = None) -> ServiceConfig:
        """Build a :class:`ServiceConfig` from a parsed JSON document."""
        label = str(source) if source else "service config"
        auth_raw = data.get("auth") or {}
        if not isinstance(auth_raw, Mapping):
            raise StoreIOError(f"'auth' must be an object in {label}.")
        secrets_raw = auth_raw.get("config") or []
        if not isinstance(secrets_raw, list) or not all(
            isinstance(item, str) for item in secrets_raw
        ):
            raise StoreIOError(f"'auth.config' must be a list of strings in {label}.")
        return cls(
            listen=str(data.get("listen") or ""),
            cert=str(data.get("cert") or ""),
            key=str(data.get("key") or ""),
            obfs=str(data.get("obfs") or ""),
            auth_mode=str(auth_raw.get("mode") or "passwords"),
            credentials=list(secrets_raw),
            auth_extra={k: v for k, v in auth_raw.items() if k not in {"mode", "config"}},
            extra={k: v for k, v in data.items() if k not in _KNOWN_KEYS},
        )

    def to_dict(self) -> dict[str, object]:
        """Return the JSON document, preserving keys this tool does not manage."""
        auth: dict[str, object] = {"mode": self.auth_mode, "config": list(self.credentials)}
        auth.update(self.auth_extra)
        payload: dict[str, object] = {
            "listen": self.listen,
            "cert": self.cert,
            "key": self.key,
            "obfs": self.obfs,
            "auth": auth,
        }
        payload.update(self.extra)
        return payload


@dataclass(frozen=True, slots=True)
class LedgerEntry:
    """A parsed ``secret | expiry`` ledger record."""

    secret: str
    expiry: str

    def expiry_date(self) -> date | None:
        """Return the expiry as a date, or ``None`` when it does not parse."""
        try:
            return date.fromisoformat(self.expiry)
        except ValueError:
            return None


def format_ledger_line(secret: str, expiry: date) -> str:
    """Return the ledger record for *secret* expiring on *expiry*."""
    return f"{secret} {LEDGER_SEPARATOR} {expiry.strftime(DATE_FORMAT)}"


def parse_ledger_line(line: str) -> LedgerEntry | None:
    """Parse a ledger record; return ``None`` when the delimiter is missing."""
    secret, separator, expiry = line.partition(LEDGER_SEPARATOR)
    if not separator:
        return None
    return LedgerEntry(secret=secret.strip(), expiry=expiry.strip())


def ledger_token(line: str) -> str:
    """Return the leading token of a ledger line.

    Accepts both the ``secret | date`` record form and bare ``secret`` lines.
    """
    return line.split(LEDGER_SEPARATOR, 1)[0].strip()


@dataclass(slots=True)
class CredentialStore:
    """Read and write the service configuration document and the ledger."""

    config_path: Path
    ledger_path: Path

    def __post_init__(self) -> None:
        """Normalise paths after initialisation."""
        self.config_path = self.config_path.expanduser()
        self.ledger_path = self.ledger_path.expanduser()

    # Service configuration ----------------------------------------
    def load_configuration(self) -> ServiceConfig:
        """Parse the service configuration; a missing file is an error."""
        try:
            text = self.config_path.read_text(encoding="utf-8")
        except FileNotFoundError as exc:
            raise StoreIOError(f"Service config not found: {self.config_path}") from exc
        except OSError as exc:
            raise StoreIOError(f"Failed reading config {self.config_path}: {exc}") from exc
        try:
            data = json.loads(text)
        except json.JSONDecodeError as exc:
            raise StoreIOError(f"Service config corrupted ({self.config_path}): {exc}") from exc
        if not isinstance(data, Mapping):
            raise StoreIOError(f"Service config must be a JSON object ({self.config_path}).")
        return ServiceConfig.from_dict(data, source=self.config_path)

    def save_configuration(self, config: ServiceConfig) -> None:
        """Atomically persist *config* with two-space indentation."""
        text = json.dumps(config.to_dict(), indent=2) + "\n"
        self._replace(self.config_path, text)

    # Ledger --------------------------------------------------------
    def load_ledger(self) -> list[str]:
        """Return the non-blank ledger lines (empty when the file is missing)."""
        try:
            text = self.ledger_path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return []
        except OSError as exc:
            raise StoreIOError(f"Failed reading ledger {self.ledger_path}: {exc}") from exc
        return [line for line in text.splitlines() if line.strip()]

    def load_entries(self) -> list[LedgerEntry]:
        """Return parsed ledger records, skipping malformed lines."""
        entries: list[LedgerEntry] = []
        for line in self.load_ledger():
            entry = parse_ledger_line(line)
            if entry is not None:
                entries.append(entry)
        return entries

    def save_ledger(self, lines: Iterable[str]) -> None:
        """Overwrite the ledger with *lines*, one record per line."""
        body = "".join(f"{line}\n" for line in lines)
        self._replace(self.ledger_path, body or "\n")

    def append_ledger(self, line: str) -> None:
        """Append a single record to the ledger."""
        try:
            self.ledger_path.parent.mkdir(parents=True, exist_ok=True)
            with self.ledger_path.open("a", encoding="utf-8") as handle:
                handle.write(f"{line}\n")
        except OSError as exc:
            raise StoreIOError(f"Failed writing ledger {self.ledger_path}: {exc}") from exc

    # ------------------------------------------------------------------
    def _replace(self, path: Path, text: str) -> None:
        try:
            mode = path.stat().st_mode & 0o777
        except FileNotFoundError:
            mode = DEFAULT_FILE_MODE
        except OSError as exc:
            raise StoreIOError(f"Failed inspecting {path}: {exc}") from exc
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp_fd, tmp_name = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.")
        except OSError as exc:
            raise StoreIOError(f"Failed writing {path}: {exc}") from exc
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
                handle.write(text)
            os.chmod(tmp_path, mode)
            os.replace(tmp_path, path)
        except OSError as exc:
            raise StoreIOError(f"Failed writing {path}: {exc}") from exc
        finally:
            tmp_path.unlink(missing_ok=True)


__all__ = [
    "CredentialStore",
    "LedgerEntry",
    "ServiceConfig",
    "format_ledger_line",
    "ledger_token",
    "parse_ledger_line",
]
