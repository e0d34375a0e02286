"""Structured operation logging for redisnode commands.

Each CLI command runs inside :meth:`StructuredLogger.operation`, which records
one JSON object per operation in ``<logs_dir>/operations.jsonl``. A logger that
cannot create its directory or write its file disables itself rather than
failing the command it is observing.
"""
from __future__ import annotations

import json
import logging
import os
import time
import uuid
from collections.abc import Iterable, Iterator, Mapping, Sequence
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path

LOGGER = logging.getLogger(__name__)

OPERATIONS_LOG = "operations.jsonl"


def _now_iso() -> str:
    return datetime.now(tz=UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _json_safe(value: object) -> object:
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, Mapping):
        return {str(key): _json_safe(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_json_safe(item) for item in value]
    return str(value)


@dataclass(slots=True)
class OperationScope:
    """Mutable record of a single operation, finalised on scope exit."""

    op_id: str
    command: str
    args: Mapping[str, object]
    target: Mapping[str, object]
    started_at: str
    steps: list[dict[str, object]] = field(default_factory=list)
    result: dict[str, object] | None = None
    lock_wait_ms: int | None = None

    def add_step(self, name: str, *, status: str, detail: str | None = None) -> None:
        """Append a step entry to the operation."""
        step: dict[str, object] = {"name": name, "status": status, "at": _now_iso()}
        if detail:
            step["detail"] = detail
        self.steps.append(step)

    def set_lock_wait_ms(self, value: int) -> None:
        """Record how long the operation waited for its locks."""
        self.lock_wait_ms = value

    def success(
        self,
        message: str,
        *,
        changed: int = 0,
        backups: Sequence[str] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as successful."""
        self._finish("success", message, changed=changed, backups=backups, context=context)

    def warning(
        self,
        message: str,
        *,
        warnings: Iterable[str] | None = None,
        errors: Iterable[str] | None = None,
        changed: int = 0,
        backups: Sequence[str] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as completed with warnings."""
        self._finish(
            "warning",
            message,
            changed=changed,
            backups=backups,
            context=context,
            warnings=list(warnings or [message]),
            errors=list(errors or []),
        )

    def error(
        self,
        message: str,
        *,
        errors: Iterable[str] | None = None,
        rc: int | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as failed."""
        self._finish(
            "error",
            message,
            context=context,
            errors=list(errors or [message]),
            rc=rc,
        )

    def _finish(
        self,
        status: str,
        message: str,
        *,
        changed: int = 0,
        backups: Sequence[str] | None = None,
        context: Mapping[str, object] | None = None,
        warnings: list[str] | None = None,
        errors: list[str] | None = None,
        rc: int | None = None,
    ) -> None:
        result: dict[str, object] = {
            "status": status,
            "message": message,
            "changed": changed,
        }
        if warnings is not None:
            result["warnings"] = warnings
        if errors is not None:
            result["errors"] = errors
        if backups:
            result["backups"] = list(backups)
        if context:
            result["context"] = _json_safe(context)
        if rc is not None:
            result["rc"] = rc
        self.result = result


class StructuredLogger:
    """Append operation records as JSON lines under *log_dir*."""

    def __init__(self, log_dir: Path) -> None:
        """Prepare the log directory, disabling the logger if that fails."""
        self._log_dir = Path(log_dir).expanduser()
        self._operations_log_path = self._log_dir / OPERATIONS_LOG
        self._enabled = True
        try:
            self._log_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            LOGGER.warning("Operation log disabled; cannot create %s: %s", self._log_dir, exc)
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
        """Yield an :class:`OperationScope` and persist it when the block exits."""
        scope = OperationScope(
            op_id=uuid.uuid4().hex,
            command=command,
            args=dict(args or {}),
            target=dict(target or {}),
            started_at=_now_iso(),
        )
        start = time.perf_counter()
        try:
            yield scope
        except Exception as exc:
            if scope.result is None:
                scope.error(f"Unhandled error: {exc}")
            raise
        finally:
            if scope.result is None:
                scope.add_step("operation.exit", status="info", detail="no result recorded")
            duration_ms = int((time.perf_counter() - start) * 1000)
            self._write(scope, duration_ms)

    def _write(self, scope: OperationScope, duration_ms: int) -> None:
        if not self._enabled:
            return
        record: dict[str, object] = {
            "op_id": scope.op_id,
            "ts": scope.started_at,
            "pid": os.getpid(),
            "command": scope.command,
            "args": _json_safe(scope.args),
            "target": _json_safe(scope.target),
            "steps": scope.steps,
            "result": scope.result or {"status": "unknown"},
            "duration_ms": duration_ms,
        }
        if scope.lock_wait_ms is not None:
            record["lock_wait_ms"] = scope.lock_wait_ms
        try:
            with self._operations_log_path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(record, sort_keys=False))
                handle.write("\n")
        except OSError as exc:
            LOGGER.warning("Operation log disabled after write failure: %s", exc)
            self._enabled = False


__all__ = ["OperationScope", "StructuredLogger"]
