"""Structured operation logging for devsetup.

Each CLI operation produces a single JSON line in ``operations.jsonl`` under
the configured logs directory. The record captures the invocation arguments,
the steps performed along the way and the final result. Logging must never
break a provisioning run: when the directory is unusable or a write fails the
logger disables itself and subsequent operations become no-ops.
"""
from __future__ import annotations

import json
import os
import time
import uuid
from collections.abc import Iterable, Iterator, Mapping, Sequence
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path

OPERATIONS_LOG_NAME = "operations.jsonl"


def _timestamp() -> str:
    return datetime.now(tz=UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _sanitize(value: object) -> object:
    if value is None:
        return None
    if isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, Mapping):
        return {str(key): _sanitize(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_sanitize(item) for item in value]
    return str(value)


def _as_list(values: Iterable[object] | None) -> list[object]:
    if values is None:
        return []
    if isinstance(values, (str, bytes)):
        return [values if isinstance(values, str) else values.decode("utf-8", "replace")]
    return [_sanitize(item) for item in values]


class OperationScope:
    """Mutable record for a single logged operation."""

    def __init__(
        self,
        command: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> None:
        """Initialise the scope for *command*."""
        self.op_id = uuid.uuid4().hex
        self.command = command
        self.args = dict(args or {})
        self.target = dict(target or {})
        self.steps: list[dict[str, object]] = []
        self.result: dict[str, object] | None = None
        self.lock_wait_ms: int | None = None
        self.started_at = _timestamp()
        self._start = time.perf_counter()

    def add_step(self, name: str, *, status: str = "success", detail: object = None) -> None:
        """Append a step entry to the operation record."""
        entry: dict[str, object] = {"name": name, "status": status}
        if detail is not None:
            entry["detail"] = _sanitize(detail)
        self.steps.append(entry)

    def set_lock_wait_ms(self, value: int) -> None:
        """Record how long the operation waited for locks."""
        self.lock_wait_ms = int(value)

    def success(
        self,
        message: str,
        *,
        changed: int | None = None,
        warnings: Sequence[str] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as successful."""
        self._set_result(
            "success",
            message,
            changed=changed,
            warnings=warnings,
            context=context,
        )

    def warning(
        self,
        message: str,
        *,
        rc: int | None = None,
        warnings: Iterable[object] | None = None,
        errors: Iterable[object] | None = None,
        changed: int | None = None,
        backups: Iterable[object] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as completed with warnings."""
        self._set_result(
            "warning",
            message,
            rc=rc,
            warnings=warnings,
            errors=errors,
            changed=changed,
            backups=backups,
            context=context,
        )

    def error(
        self,
        message: str,
        *,
        rc: int | None = None,
        errors: Iterable[object] | None = None,
        warnings: Iterable[object] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as failed."""
        self._set_result(
            "error",
            message,
            rc=rc,
            errors=errors if errors is not None else [message],
            warnings=warnings,
            context=context,
        )

    def _set_result(
        self,
        status: str,
        message: str,
        *,
        rc: int | None = None,
        errors: Iterable[object] | None = None,
        warnings: Iterable[object] | None = None,
        changed: int | None = None,
        backups: Iterable[object] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        result: dict[str, object] = {
            "status": status,
            "message": message,
            "errors": _as_list(errors),
            "warnings": _as_list(warnings),
        }
        if rc is not None:
            result["rc"] = rc
        if changed is not None:
            result["changed"] = changed
        if backups is not None:
            result["backups"] = _as_list(backups)
        if context:
            result["context"] = _sanitize(context)
        self.result = result

    def to_record(self) -> dict[str, object]:
        """Return the JSON-ready operation record."""
        record: dict[str, object] = {
            "ts": self.started_at,
            "op_id": self.op_id,
            "pid": os.getpid(),
            "command": self.command,
            "args": _sanitize(self.args),
            "target": _sanitize(self.target),
            "steps": list(self.steps),
            "duration_ms": int((time.perf_counter() - self._start) * 1000),
            "result": self.result,
        }
        if self.lock_wait_ms is not None:
            record["lock_wait_ms"] = self.lock_wait_ms
        return record


class StructuredLogger:
    """Append-only JSONL logger for CLI operations."""

    def __init__(self, log_dir: Path) -> None:
        """Prepare the log directory, disabling the logger when unusable."""
        self.log_dir = log_dir
        self._operations_log_path = log_dir / OPERATIONS_LOG_NAME
        self._enabled = True
        try:
            log_dir.mkdir(parents=True, exist_ok=True)
        except OSError:
            self._enabled = False

    @property
    def operations_log_path(self) -> Path:
        """Return the path of the operations log."""
        return self._operations_log_path

    @contextmanager
    def operation(
        self,
        command: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> Iterator[OperationScope]:
        """Yield an :class:`OperationScope` and persist it on exit."""
        scope = OperationScope(command, args=args, target=target)
        try:
            yield scope
        except BaseException as exc:
            if scope.result is None:
                scope.error(f"Operation aborted: {exc!r}")
            self._write(scope)
            raise
        if scope.result is None:
            scope.success("Operation completed.")
        self._write(scope)

    def _write(self, scope: OperationScope) -> None:
        if not self._enabled:
            return
        line = json.dumps(scope.to_record(), sort_keys=False)
        try:
            with self._operations_log_path.open("a", encoding="utf-8") as handle:
                handle.write(line + "\n")
        except OSError:
            self._enabled = False


__all__ = ["OperationScope", "StructuredLogger", "OPERATIONS_LOG_NAME"]
