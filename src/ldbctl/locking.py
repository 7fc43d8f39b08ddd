"""Advisory file locks that serialise mutations across ldbctl processes.

Locks live under the runtime directory:

* ``store.lock`` guards read-modify-write cycles on the metadata store.
* ``ldbctl.lock`` is the global mutation lock taken by CLI commands.
* ``instances/<name>.lock`` serialises lifecycle commands per instance.

Lockfiles are left on disk after release; their JSON body records the last
holder for diagnostics.
"""
from __future__ import annotations

import fcntl
import json
import os
import re
import time
from collections.abc import Iterable, Iterator
from contextlib import ExitStack, contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

GLOBAL_LOCK_NAME = "ldbctl.lock"
STORE_LOCK_NAME = "store.lock"
_POLL_INTERVAL = 0.05
_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


class LockTimeoutError(RuntimeError):
    """Raised when a lock cannot be acquired before the timeout expires."""


@dataclass(frozen=True)
class LockHandle:
    """Describe a held lock."""

    path: Path
    wait_ms: int


@dataclass(frozen=True)
class LockBundle:
    """Describe a set of locks acquired together."""

    handles: tuple[LockHandle, ...]

    @property
    def wait_ms(self) -> int:
        """Return the total time spent waiting for all locks."""
        return sum(handle.wait_ms for handle in self.handles)


class LockManager:
    """Acquire exclusive ``flock`` locks under *runtime_dir*."""

    def __init__(self, runtime_dir: Path, default_timeout: float = 30.0) -> None:
        """Record the lock directory and default acquisition timeout."""
        self.runtime_dir = Path(runtime_dir).expanduser()
        self.default_timeout = default_timeout

    # ------------------------------------------------------------------
    @contextmanager
    def store_lock(self, *, timeout: float | None = None) -> Iterator[LockHandle]:
        """Hold the metadata store lock for the duration of the block."""
        with self._acquire(self.runtime_dir / STORE_LOCK_NAME, timeout) as handle:
            yield handle

    @contextmanager
    def global_lock(self, *, timeout: float | None = None) -> Iterator[LockHandle]:
        """Hold the global mutation lock."""
        with self._acquire(self.runtime_dir / GLOBAL_LOCK_NAME, timeout) as handle:
            yield handle

    @contextmanager
    def instance_lock(self, name: str, *, timeout: float | None = None) -> Iterator[LockHandle]:
        """Hold the lock for a single instance reference."""
        with self._acquire(self._instance_lock_path(name), timeout) as handle:
            yield handle

    @contextmanager
    def mutate_instances(
        self,
        names: Iterable[str],
        *,
        timeout: float | None = None,
    ) -> Iterator[LockBundle]:
        """Acquire the global lock followed by per-instance locks in sorted order."""
        with ExitStack() as stack:
            handles = [stack.enter_context(self.global_lock(timeout=timeout))]
            for name in sorted(set(names)):
                handles.append(stack.enter_context(self.instance_lock(name, timeout=timeout)))
            yield LockBundle(tuple(handles))

    # ------------------------------------------------------------------
    def _instance_lock_path(self, name: str) -> Path:
        safe = _UNSAFE_CHARS.sub("_", name.strip()) or "_"
        return self.runtime_dir / "instances" / f"{safe}.lock"

    @contextmanager
    def _acquire(self, path: Path, timeout: float | None) -> Iterator[LockHandle]:
        limit = self.default_timeout if timeout is None else timeout
        path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(path, os.O_RDWR | os.O_CREAT, 0o640)
        started = time.monotonic()
        try:
            while True:
                try:
                    fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                    break
                except BlockingIOError:
                    if time.monotonic() - started >= limit:
                        raise LockTimeoutError(
                            f"Timed out after {limit:.1f}s waiting for lock {path}"
                        ) from None
                    time.sleep(_POLL_INTERVAL)
            wait_ms = int((time.monotonic() - started) * 1000)
            _write_metadata(fd, path)
            try:
                yield LockHandle(path=path, wait_ms=wait_ms)
            finally:
                fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            os.close(fd)


def _write_metadata(fd: int, path: Path) -> None:
    payload = {
        "pid": os.getpid(),
        "path": str(path),
        "acquired_at": datetime.now(UTC).isoformat(),
    }
    os.ftruncate(fd, 0)
    os.lseek(fd, 0, os.SEEK_SET)
    os.write(fd, json.dumps(payload).encode("utf-8"))


__all__ = ["LockBundle", "LockHandle", "LockManager", "LockTimeoutError"]
