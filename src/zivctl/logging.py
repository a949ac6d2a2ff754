"""Structured operation logging for zivctl.

Every CLI command and API request runs inside an :class:`OperationScope`.
When the scope closes, a single JSON object describing the operation (its
arguments, the steps it performed, and the outcome) is appended to
``operations.jsonl`` in the logs directory. Human-oriented messages from the
individual modules go through the standard :mod:`logging` package into a
rotating ``zivctl.log`` next to it.

Logging must never break an operation: when the logs directory cannot be
created or written, the logger disables itself and carries on silently.
"""
from __future__ import annotations

import getpass
import json
import logging
import os
import secrets
import threading
import time
from collections.abc import Iterable, Iterator, Mapping, Sequence
from contextlib import contextmanager
from datetime import UTC, datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path

OPERATIONS_LOG_NAME = "operations.jsonl"
TEXT_LOG_NAME = "zivctl.log"
TEXT_LOG_MAX_BYTES = 5 * 1024 * 1024
TEXT_LOG_BACKUPS = 3

_HANDLER_LOCK = threading.Lock()


def _now_iso() -> str:
    return datetime.now(tz=UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _sanitize(value: object) -> object:
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, Mapping):
        return {str(key): _sanitize(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_sanitize(item) for item in value]
    return str(value)


def _current_actor() -> dict[str, object]:
    try:
        user = getpass.getuser()
    except (KeyError, OSError):  # pragma: no cover - depends on passwd database
        user = "unknown"
    return {"user": user, "uid": os.getuid(), "pid": os.getpid()}


def configure_text_log(log_dir: Path, *, level: int = logging.INFO) -> None:
    """Attach a rotating file handler for ``zivctl.log`` to the package logger."""
    package_logger = logging.getLogger("zivctl")
    target = str(log_dir / TEXT_LOG_NAME)
    with _HANDLER_LOCK:
        for handler in package_logger.handlers:
            if isinstance(handler, RotatingFileHandler) and handler.baseFilename == target:
                return
        handler = RotatingFileHandler(
            target,
            maxBytes=TEXT_LOG_MAX_BYTES,
            backupCount=TEXT_LOG_BACKUPS,
            encoding="utf-8",
            delay=True,
        )
        handler.setFormatter(
            logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s")
        )
        package_logger.addHandler(handler)
        package_logger.setLevel(level)


class OperationScope:
    """Collects steps and the final result of a single operation."""

    def __init__(
        self,
        logger: StructuredLogger,
        command: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> None:
        """Bind the scope to *logger* for *command*."""
        self._logger = logger
        self.command = command
        self.args = dict(args or {})
        self.target = dict(target or {})
        self.op_id = f"{datetime.now(tz=UTC):%Y%m%dT%H%M%S}-{secrets.token_hex(3)}"
        self.actor: Mapping[str, object] = _current_actor()
        self.started_at = _now_iso()
        self._started = time.monotonic()
        self._steps: list[dict[str, object]] = []
        self._lock_wait_ms: int | None = None
        self._result: dict[str, object] | None = None

    @property
    def result(self) -> Mapping[str, object] | None:
        """Return the recorded result, if any."""
        return self._result

    def set_lock_wait_ms(self, wait_ms: int) -> None:
        """Record how long the operation waited for its lock."""
        self._lock_wait_ms = int(wait_ms)

    def add_step(self, name: str, *, status: str = "success", detail: object = None) -> None:
        """Append a named step to the operation record."""
        step: dict[str, object] = {"name": name, "status": status, "at": _now_iso()}
        if detail is not None:
            step["detail"] = _sanitize(detail)
        self._steps.append(step)

    def success(
        self,
        message: str,
        *,
        changed: int = 0,
        backups: Iterable[str] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Record a successful outcome."""
        self._record("success", message, changed=changed, backups=backups, context=context)

    def warning(
        self,
        message: str,
        *,
        warnings: Sequence[str] | None = None,
        errors: Sequence[str] | None = None,
        changed: int = 0,
        backups: Iterable[str] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Record an outcome that succeeded with caveats."""
        self._record(
            "warning",
            message,
            warnings=warnings if warnings is not None else [message],
            errors=errors,
            changed=changed,
            backups=backups,
            context=context,
        )

    def error(
        self,
        message: str,
        *,
        errors: Sequence[str] | None = None,
        rc: int | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Record a failed outcome."""
        self._record(
            "error",
            message,
            errors=errors if errors else [message],
            rc=rc,
            context=context,
        )

    def _record(
        self,
        status: str,
        message: str,
        *,
        changed: int = 0,
        warnings: Sequence[str] | None = None,
        errors: Sequence[str] | None = None,
        backups: Iterable[str] | None = None,
        rc: int | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        result: dict[str, object] = {
            "status": status,
            "message": message,
            "changed": changed,
            "warnings": list(warnings or []),
            "errors": list(errors or []),
            "backups": list(backups or []),
        }
        if rc is not None:
            result["rc"] = rc
        if context:
            result["context"] = _sanitize(context)
        self._result = result

    def to_record(self) -> dict[str, object]:
        """Return the JSON-serialisable operation record."""
        record: dict[str, object] = {
            "op_id": self.op_id,
            "command": self.command,
            "args": _sanitize(self.args),
            "target": _sanitize(self.target),
            "actor": _sanitize(self.actor),
            "started_at": self.started_at,
            "finished_at": _now_iso(),
            "duration_ms": int((time.monotonic() - self._started) * 1000),
            "steps": list(self._steps),
            "result": self._result,
        }
        if self._lock_wait_ms is not None:
            record["lock_wait_ms"] = self._lock_wait_ms
        return record


class StructuredLogger:
    """Append-only JSONL writer for operation records."""

    def __init__(self, log_dir: Path) -> None:
        """Prepare *log_dir*; disable logging when it is unusable."""
        self._log_dir = log_dir
        self._operations_log_path = log_dir / OPERATIONS_LOG_NAME
        self._write_lock = threading.Lock()
        self._enabled = True
        try:
            log_dir.mkdir(parents=True, exist_ok=True)
        except OSError:
            self._enabled = False
            return
        try:
            configure_text_log(log_dir)
        except OSError:
            logging.getLogger(__name__).debug("Text log unavailable under %s", log_dir)

    @property
    def operations_log(self) -> Path:
        """Return the path of ``operations.jsonl``."""
        return self._operations_log_path

    @contextmanager
    def operation(
        self,
        command: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> Iterator[OperationScope]:
        """Yield an :class:`OperationScope` and persist it when the block exits."""
        scope = OperationScope(self, command, args=args, target=target)
        try:
            yield scope
        except BaseException as exc:
            if scope.result is None:
                scope.error(
                    f"{type(exc).__name__}: {exc}" if str(exc) else type(exc).__name__,
                    rc=getattr(exc, "exit_code", None),
                )
            raise
        finally:
            if scope.result is None:
                scope.success("Completed.")
            self._write(scope.to_record())

    def _write(self, record: Mapping[str, object]) -> None:
        if not self._enabled:
            return
        line = json.dumps(record, sort_keys=False, default=str)
        with self._write_lock:
            try:
                with self._operations_log_path.open("a", encoding="utf-8") as handle:
                    handle.write(line + "\n")
            except OSError:
                self._enabled = False


__all__ = ["OperationScope", "StructuredLogger", "configure_text_log"]
