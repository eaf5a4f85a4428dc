"""Structured operations log for phoenixctl.

Every CLI invocation opens an :class:`OperationScope` through
:meth:`StructuredLogger.operation`. When the scope closes a single JSON record
is appended to ``<logs_dir>/operations.jsonl`` describing the command, its
arguments, the steps taken and the final result. Logging must never break an
operation: when the directory cannot be created or a write fails the logger
disables itself and later records are skipped silently.
"""
from __future__ import annotations

import json
import os
import secrets
import time
from collections.abc import Iterable, Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path


def _now_iso() -> str:
    return datetime.now(tz=UTC).isoformat(timespec="seconds").replace("+00:00", "Z")


def _sanitize(value: object) -> object:
    """Return a JSON-safe representation of *value*."""
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, Mapping):
        return {str(key): _sanitize(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_sanitize(item) for item in value]
    return str(value)


@dataclass(slots=True)
class OperationScope:
    """Collects steps and the outcome of one CLI operation."""

    command: str
    args: Mapping[str, object]
    target: Mapping[str, object]
    started_at: str = field(default_factory=_now_iso)
    operation_id: str = field(default_factory=lambda: secrets.token_hex(6))
    steps: list[dict[str, object]] = field(default_factory=list)
    lock_wait_ms: int | None = None
    result: dict[str, object] | None = None
    _started: float = field(default_factory=time.monotonic)

    def add_step(self, name: str, *, status: str = "success", detail: str = "") -> None:
        """Record an intermediate step."""
        step: dict[str, object] = {"name": name, "status": status}
        if detail:
            step["detail"] = detail
        self.steps.append(step)

    def set_lock_wait_ms(self, wait_ms: int) -> None:
        """Record how long the remote lock took to acquire."""
        self.lock_wait_ms = wait_ms

    def success(
        self,
        message: str,
        *,
        changed: int = 0,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation successful."""
        self._finish("success", message, changed=changed, context=context)

    def warning(
        self,
        message: str,
        *,
        warnings: Iterable[str] | None = None,
        errors: Iterable[str] | None = None,
        changed: int = 0,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation complete with warnings."""
        self._finish(
            "warning",
            message,
            changed=changed,
            warnings=list(warnings or [message]),
            errors=list(errors or []),
            context=context,
        )

    def error(
        self,
        message: str,
        *,
        errors: Iterable[str] | None = None,
        rc: int = 1,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation failed."""
        self._finish(
            "error",
            message,
            errors=list(errors or [message]),
            rc=rc,
            context=context,
        )

    def _finish(
        self,
        status: str,
        message: str,
        *,
        changed: int | None = None,
        warnings: list[str] | None = None,
        errors: list[str] | None = None,
        rc: int | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        result: dict[str, object] = {"status": status, "message": message}
        if changed is not None:
            result["changed"] = changed
        if warnings:
            result["warnings"] = warnings
        if errors:
            result["errors"] = errors
        if rc is not None:
            result["rc"] = rc
        if context:
            result["context"] = _sanitize(context)
        self.result = result

    def to_record(self) -> dict[str, object]:
        """Return the JSON record written to the operations log."""
        record: dict[str, object] = {
            "id": self.operation_id,
            "command": self.command,
            "started_at": self.started_at,
            "finished_at": _now_iso(),
            "duration_ms": int((time.monotonic() - self._started) * 1000),
            "args": _sanitize(self.args),
            "target": _sanitize(self.target),
            "steps": list(self.steps),
            "result": self.result or {"status": "success", "message": ""},
        }
        if self.lock_wait_ms is not None:
            record["lock_wait_ms"] = self.lock_wait_ms
        return record


class StructuredLogger:
    """Append JSON operation records to ``operations.jsonl``."""

    def __init__(self, log_dir: Path) -> None:
        """Prepare *log_dir*; disable logging when it is unusable."""
        self._log_dir = Path(log_dir).expanduser()
        self._operations_log_path = self._log_dir / "operations.jsonl"
        self._enabled = True
        try:
            self._log_dir.mkdir(parents=True, exist_ok=True)
        except OSError:
            self._enabled = False

    @property
    def path(self) -> Path:
        """Return the operations log path."""
        return self._operations_log_path

    @contextmanager
    def operation(
        self,
        command: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> Iterator[OperationScope]:
        """Yield a scope for *command* and persist it on exit."""
        scope = OperationScope(command=command, args=dict(args or {}), target=dict(target or {}))
        try:
            yield scope
        except BaseException as exc:
            if scope.result is None:
                scope.error(str(exc) or type(exc).__name__, rc=getattr(exc, "exit_code", 1))
            raise
        finally:
            self._write(scope.to_record())

    def _write(self, record: Mapping[str, object]) -> None:
        if not self._enabled:
            return
        try:
            with self._operations_log_path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(record, sort_keys=False))
                handle.write("\n")
            os.chmod(self._operations_log_path, 0o600)
        except OSError:
            self._enabled = False


__all__ = ["OperationScope", "StructuredLogger"]
