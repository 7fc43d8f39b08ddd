"""Structured operation logging for ldbctl commands.

Each CLI command runs inside :meth:`StructuredLogger.operation`, which appends
one JSON line to ``<logs_dir>/operations.jsonl`` when the command finishes.
Logging never breaks a command: if the directory cannot be created or a write
fails the logger disables itself and carries on silently.
"""
from __future__ import annotations

import json
import secrets
import time
from collections.abc import Iterable, Iterator, Mapping, Sequence
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path

OPERATIONS_LOG_NAME = "operations.jsonl"
_REDACTED_KEYS = frozenset({"password", "root_password"})


def _now_iso() -> str:
    return datetime.now(tz=UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _sanitize(value: object) -> object:
    """Return a JSON-safe rendition of *value*."""
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, Mapping):
        return {
            str(key): ("***" if str(key) in _REDACTED_KEYS and item else _sanitize(item))
            for key, item in value.items()
        }
    if isinstance(value, (list, tuple)):
        return [_sanitize(item) for item in value]
    return str(value)


class OperationScope:
    """Collect steps and the final result for one logged operation."""

    def __init__(
        self,
        command: str,
        *,
        args: Mapping[str, object] | None,
        target: Mapping[str, object] | None,
    ) -> None:
        """Initialise an open scope for *command*."""
        self.op_id = f"op-{datetime.now(UTC):%Y%m%dT%H%M%S}-{secrets.token_hex(3)}"
        self.command = command
        self.args = _sanitize(dict(args or {}))
        self.target = _sanitize(dict(target or {}))
        self.started_at = _now_iso()
        self._started = time.monotonic()
        self.lock_wait_ms: int | None = None
        self.steps: list[dict[str, object]] = []
        self.result: dict[str, object] | None = None

    def add_step(self, name: str, *, status: str = "success", detail: str | None = None) -> None:
        """Record an intermediate step."""
        step: dict[str, object] = {"name": name, "status": status}
        if detail:
            step["detail"] = detail
        self.steps.append(step)

    def set_lock_wait_ms(self, wait_ms: int) -> None:
        """Record how long the command waited for its locks."""
        self.lock_wait_ms = wait_ms

    def success(
        self,
        message: str,
        *,
        changed: int = 0,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation successful."""
        self._set_result("success", message, rc=0, changed=changed, context=context)

    def warning(
        self,
        message: str,
        *,
        warnings: Iterable[str] | None = None,
        errors: Iterable[str] | None = None,
        changed: int = 0,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation completed with warnings."""
        self._set_result(
            "warning",
            message,
            rc=0,
            changed=changed,
            warnings=list(warnings or [message]),
            errors=list(errors or []),
            context=context,
        )

    def error(
        self,
        message: str,
        *,
        errors: Sequence[str] | None = None,
        rc: int = 1,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation failed."""
        self._set_result(
            "error",
            message,
            rc=rc,
            changed=0,
            errors=list(errors or [message]),
            context=context,
        )

    def _set_result(
        self,
        status: str,
        message: str,
        *,
        rc: int,
        changed: int,
        warnings: list[str] | None = None,
        errors: list[str] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        self.result = {
            "status": status,
            "message": message,
            "rc": rc,
            "changed": changed,
            "warnings": warnings or [],
            "errors": errors or [],
            "context": _sanitize(dict(context or {})),
        }

    def to_record(self) -> dict[str, object]:
        """Return the JSON record for this operation."""
        return {
            "op_id": self.op_id,
            "command": self.command,
            "args": self.args,
            "target": self.target,
            "started_at": self.started_at,
            "finished_at": _now_iso(),
            "duration_ms": int((time.monotonic() - self._started) * 1000),
            "lock_wait_ms": self.lock_wait_ms,
            "steps": self.steps,
            "result": self.result,
        }


class StructuredLogger:
    """Append operation records to a JSON lines file."""

    def __init__(self, logs_dir: Path) -> None:
        """Prepare *logs_dir*; disable logging when it cannot be created."""
        self.logs_dir = Path(logs_dir).expanduser()
        self._operations_log_path = self.logs_dir / OPERATIONS_LOG_NAME
        self._enabled = True
        try:
            self.logs_dir.mkdir(parents=True, exist_ok=True)
        except OSError:
            self._enabled = False

    @contextmanager
    def operation(
        self,
        command: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> Iterator[OperationScope]:
        """Open a scope for *command* and persist it on exit."""
        scope = OperationScope(command, args=args, target=target)
        try:
            yield scope
        except BaseException as exc:
            if scope.result is None:
                scope.error(str(exc) or type(exc).__name__, rc=1)
            raise
        finally:
            if scope.result is None:
                scope.success("Completed.", changed=0)
            self._write(scope.to_record())

    def _write(self, record: Mapping[str, object]) -> None:
        if not self._enabled:
            return
        try:
            with self._operations_log_path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(record, sort_keys=False) + "\n")
        except OSError:
            self._enabled = False


__all__ = ["OperationScope", "StructuredLogger"]
