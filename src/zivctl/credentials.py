"""Credential lifecycle: create, delete, renew, list and trial accounts.

A credential lives in two places. The service configuration's secret list
decides who may connect; the ledger records when each secret expires. Every
mutation below holds the credential lock for the whole read-modify-write of
both files and then asks the services to restart in the background.
"""
from __future__ import annotations

import logging
import random
from collections.abc import Callable
from dataclasses import dataclass
from datetime import date, timedelta

from .errors import ConflictError, InvalidInputError, NotFoundError, StoreIOError
from .locking import LockManager
from .logging import OperationScope
from .providers.systemd import RestartNotifier
from .store import (
    LEDGER_SEPARATOR,
    CredentialStore,
    format_ledger_line,
    ledger_token,
    parse_ledger_line,
)

LOGGER = logging.getLogger(__name__)

STATUS_ACTIVE = "Active"
STATUS_EXPIRED = "Expired"

TRIAL_PREFIX = "TRIAL"
TRIAL_ATTEMPTS = 20


@dataclass(frozen=True, slots=True)
class CredentialRecord:
    """A secret with its expiry date and derived status."""

    secret: str
    expiry: str
    status: str = STATUS_ACTIVE

    def to_dict(self) -> dict[str, str]:
        """Return the record in the wire format used by the API."""
        return {"password": self.secret, "expired": self.expiry, "status": self.status}


def derive_status(expiry: str, today: date) -> str:
    """Return ``Expired`` when *expiry* sorts before *today*, else ``Active``."""
    return STATUS_EXPIRED if expiry < today.isoformat() else STATUS_ACTIVE


def _validate_secret(secret: str) -> str:
    if not isinstance(secret, str) or not secret.strip():
        raise InvalidInputError("Password is required.")
    value = secret.strip()
    if LEDGER_SEPARATOR in value or "\n" in value or "\r" in value:
        raise InvalidInputError(
            f"Password must not contain line breaks or {LEDGER_SEPARATOR!r}."
        )
    return value


def _validate_days(days: int) -> int:
    if isinstance(days, bool) or not isinstance(days, int) or days <= 0:
        raise InvalidInputError("Days must be a positive integer.")
    return days


class CredentialManager:
    """Keep the service configuration and the ledger in step."""

    def __init__(
        self,
        store: CredentialStore,
        locks: LockManager,
        *,
        notifier: RestartNotifier | None = None,
        today: Callable[[], date] | None = None,
        rng: random.Random | None = None,
    ) -> None:
        """Wire the store, the lock manager and the optional restart notifier."""
        self._store = store
        self._locks = locks
        self._notifier = notifier
        self._today = today or date.today
        self._rng = rng or random.SystemRandom()

    @property
    def store(self) -> CredentialStore:
        """Return the underlying :class:`CredentialStore`."""
        return self._store

    def create(
        self, secret: str, days: int, *, op: OperationScope | None = None
    ) -> CredentialRecord:
        """Register *secret* valid for *days* days from today."""
        secret = _validate_secret(secret)
        days = _validate_days(days)
        with self._locks.credential_lock() as handle:
            if op is not None:
                op.set_lock_wait_ms(handle.wait_ms)
            config = self._store.load_configuration()
            if secret in config.credentials:
                raise ConflictError(f"User {secret} already exists.")
            expiry = self._today() + timedelta(days=days)
            config.credentials.append(secret)
            self._store.save_configuration(config)
            _step(op, "config.save", detail=str(self._store.config_path))
            line = format_ledger_line(secret, expiry)
            try:
                lines = self._store.load_ledger()
                kept = [existing for existing in lines if ledger_token(existing) != secret]
                if len(kept) != len(lines):
                    # Stale lines left by an earlier divergence.
                    self._store.save_ledger([*kept, line])
                else:
                    self._store.append_ledger(line)
            except StoreIOError:
                self._report_divergence("create", secret)
                raise
            _step(op, "ledger.append", detail=secret)
        self._schedule_restart("create", op)
        return CredentialRecord(secret=secret, expiry=expiry.isoformat())

    def create_trial(
        self, days: int = 1, *, op: OperationScope | None = None
    ) -> CredentialRecord:
        """Create a ``TRIAL<nnnn>`` credential, retrying on name collisions."""
        for _ in range(TRIAL_ATTEMPTS):
            secret = f"{TRIAL_PREFIX}{self._rng.randint(1000, 9999)}"
            try:
                return self.create(secret, days, op=op)
            except ConflictError:
                _step(op, "trial.collision", status="info", detail=secret)
                continue
        raise ConflictError("Could not find a free trial name; try again.")

    def delete(self, secret: str, *, op: OperationScope | None = None) -> None:
        """Remove *secret* from the configuration and every ledger line naming it."""
        secret = _validate_secret(secret)
        with self._locks.credential_lock() as handle:
            if op is not None:
                op.set_lock_wait_ms(handle.wait_ms)
            config = self._store.load_configuration()
            if secret not in config.credentials:
                raise NotFoundError(f"User {secret} not found.")
            lines = self._store.load_ledger()
            config.credentials = [item for item in config.credentials if item != secret]
            self._store.save_configuration(config)
            _step(op, "config.save", detail=str(self._store.config_path))
            remaining = [line for line in lines if ledger_token(line) != secret]
            try:
                self._store.save_ledger(remaining)
            except StoreIOError:
                self._report_divergence("delete", secret)
                raise
            _step(op, "ledger.save", detail={"removed": len(lines) - len(remaining)})
        self._schedule_restart("delete", op)

    def renew(
        self, secret: str, days: int, *, op: OperationScope | None = None
    ) -> CredentialRecord:
        """Extend *secret* by *days* days.

        Expired records restart from today; active ones are extended from
        their current expiry.
        """
        secret = _validate_secret(secret)
        days = _validate_days(days)
        with self._locks.credential_lock() as handle:
            if op is not None:
                op.set_lock_wait_ms(handle.wait_ms)
            lines = self._store.load_ledger()
            today = self._today()
            renewed: date | None = None
            updated: list[str] = []
            for line in lines:
                entry = parse_ledger_line(line)
                if entry is None or entry.secret != secret:
                    updated.append(line)
                    continue
                current = entry.expiry_date() or today
                renewed = max(current, today) + timedelta(days=days)
                updated.append(format_ledger_line(secret, renewed))
            if renewed is None:
                raise NotFoundError(f"User {secret} not found.")
            self._store.save_ledger(updated)
            _step(op, "ledger.save", detail={"secret": secret, "expiry": renewed.isoformat()})
        self._schedule_restart("renew", op)
        return CredentialRecord(secret=secret, expiry=renewed.isoformat())

    def list(self) -> list[CredentialRecord]:
        """Return every parseable ledger record with its derived status."""
        today = self._today()
        return [
            CredentialRecord(
                secret=entry.secret,
                expiry=entry.expiry,
                status=derive_status(entry.expiry, today),
            )
            for entry in self._store.load_entries()
        ]

    # ------------------------------------------------------------------
    def _schedule_restart(self, reason: str, op: OperationScope | None) -> None:
        if self._notifier is None:
            _step(op, "services.restart", status="skipped", detail="no controller")
            return
        self._notifier.notify(reason)
        _step(op, "services.restart", status="scheduled", detail=reason)

    def _report_divergence(self, action: str, secret: str) -> None:
        LOGGER.error(
            "%s of %s left %s and %s out of step; repair the ledger by hand",
            action,
            secret,
            self._store.config_path,
            self._store.ledger_path,
        )


def _step(
    op: OperationScope | None, name: str, *, status: str = "success", detail: object = None
) -> None:
    if op is not None:
        op.add_step(name, status=status, detail=detail)


__all__ = [
    "STATUS_ACTIVE",
    "STATUS_EXPIRED",
    "CredentialManager",
    "CredentialRecord",
    "derive_status",
]
