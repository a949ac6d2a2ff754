"""Systemd provider restarting the ZiVPN units."""
from __future__ import annotations

import logging
import subprocess
import threading
from collections.abc import Sequence
from dataclasses import dataclass, field

from .base import ServiceController

LOGGER = logging.getLogger(__name__)


class SystemdError(RuntimeError):
    """Raised when systemd operations fail."""


@dataclass(slots=True)
class SystemdProvider:
    """Run ``systemctl`` against the configured units."""

    units: Sequence[str] = ("zivpn", "zivpn-api", "zivpn-bot")
    systemctl_bin: str = "systemctl"
    timeout: float = 60.0

    def restart(self, unit: str) -> subprocess.CompletedProcess[str]:
        """Restart *unit*."""
        return self._systemctl("restart", unit)

    def restart_all(self) -> list[str]:
        """Restart every unit, continuing past failures; return the failures."""
        failures: list[str] = []
        for unit in self.units:
            try:
                self.restart(unit)
            except SystemdError as exc:
                failures.append(str(exc))
        return failures

    # ------------------------------------------------------------------
    def _systemctl(self, command: str, unit: str) -> subprocess.CompletedProcess[str]:
        args = [self.systemctl_bin, command, unit]
        error_prefix = f"{self.systemctl_bin} {command} {unit}"
        try:
            result = subprocess.run(  # noqa: S603 - controlled command execution
                args,
                capture_output=True,
                text=True,
                check=False,
                timeout=self.timeout,
            )
        except FileNotFoundError as exc:
            raise SystemdError(f"{self.systemctl_bin} not found: {exc}") from exc
        except subprocess.TimeoutExpired as exc:
            raise SystemdError(f"{error_prefix} timed out after {self.timeout:.0f}s") from exc
        if result.returncode != 0:
            message = (result.stderr or "").strip() or (result.stdout or "").strip() or "no output"
            raise SystemdError(f"{error_prefix} failed (exit {result.returncode}): {message}")
        return result


@dataclass(slots=True)
class RestartNotifier:
    """Fire-and-forget restart requests after files changed on disk.

    :meth:`notify` returns immediately; the restart runs on a daemon thread
    and its outcome is only logged.
    """

    controller: ServiceController
    _threads: list[threading.Thread] = field(init=False, default_factory=list)
    _guard: threading.Lock = field(init=False, default_factory=threading.Lock)

    def notify(self, reason: str) -> threading.Thread:
        """Schedule a restart of the dependent services."""
        thread = threading.Thread(
            target=self._run,
            args=(reason,),
            name=f"zivctl-restart-{reason}",
            daemon=True,
        )
        with self._guard:
            self._threads = [item for item in self._threads if item.is_alive()]
            self._threads.append(thread)
            thread.start()
        return thread

    def wait(self, timeout: float | None = None) -> None:
        """Join pending restart threads (graceful shutdown and tests)."""
        with self._guard:
            pending = list(self._threads)
        for thread in pending:
            thread.join(timeout)

    def _run(self, reason: str) -> None:
        try:
            failures = self.controller.restart_all()
        except Exception:  # noqa: BLE001 - outcome is reported through the log only
            LOGGER.exception("Service restart after %s crashed", reason)
            return
        if failures:
            for failure in failures:
                LOGGER.warning("Service restart after %s failed: %s", reason, failure)
        else:
            LOGGER.info("Services restarted after %s", reason)


__all__ = ["RestartNotifier", "SystemdError", "SystemdProvider"]
