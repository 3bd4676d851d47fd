"""Locking primitives for devsetup.

Two layers guard shared state:

* a process-wide run lock (``devsetup.lock``) so only one provisioning run
  touches the host at a time, and
* named resource locks (``resources/<name>.lock``) that serialise steps
  mutating the same system resource, e.g. the package database.

Each lock combines an in-process ``threading.Lock`` (worker threads of one
run) with an advisory ``flock`` on a lockfile (other processes). Lockfiles
persist after release and carry JSON metadata for diagnostics.
"""
from __future__ import annotations

import json
import math
import os
import re
import threading
import time
from collections.abc import Iterable, Iterator
from contextlib import ExitStack, contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import IO

if os.name == "posix":
    import fcntl
else:  # pragma: no cover - Windows hosts only get in-process locking
    fcntl = None

GLOBAL_LOCK_NAME = "devsetup.lock"
#: Timeout value that waits for the holder however long it takes.
WAIT_FOREVER = math.inf
_POLL_INTERVAL = 0.05
_NAME_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")


class LockTimeoutError(RuntimeError):
    """Raised when a lock cannot be acquired before the timeout expires."""


@dataclass(slots=True, frozen=True)
class LockHandle:
    """Information about an acquired lock."""

    name: str
    path: Path
    wait_ms: int


@dataclass(slots=True, frozen=True)
class LockBundle:
    """A set of locks acquired together."""

    handles: tuple[LockHandle, ...]
    wait_ms: int

    @property
    def names(self) -> tuple[str, ...]:
        """Return the names of the held locks in acquisition order."""
        return tuple(handle.name for handle in self.handles)


class LockManager:
    """Hand out run and resource locks rooted at *runtime_dir*."""

    def __init__(self, runtime_dir: Path, default_timeout: float | None = 30.0) -> None:
        """Store the lock directory and default timeout (``None`` waits forever)."""
        self.runtime_dir = runtime_dir
        self.default_timeout = default_timeout
        self._thread_locks: dict[Path, threading.Lock] = {}
        self._registry_lock = threading.Lock()

    @property
    def resources_dir(self) -> Path:
        """Return the directory holding resource lockfiles."""
        return self.runtime_dir / "resources"

    @contextmanager
    def run_lock(self, *, timeout: float | None = None) -> Iterator[LockHandle]:
        """Hold the global run lock."""
        path = self.runtime_dir / GLOBAL_LOCK_NAME
        with self._acquire("run", path, timeout) as handle:
            yield handle

    @contextmanager
    def resource_lock(self, name: str, *, timeout: float | None = None) -> Iterator[LockHandle]:
        """Hold the named resource lock.

        ``timeout=None`` applies :attr:`default_timeout`; :data:`WAIT_FOREVER` never times out.
        """
        path = self.resources_dir / f"{_validate_name(name)}.lock"
        with self._acquire(name, path, timeout) as handle:
            yield handle

    @contextmanager
    def resources(
        self,
        names: Iterable[str],
        *,
        timeout: float | None = None,
    ) -> Iterator[LockBundle]:
        """Hold every named resource lock, acquired in sorted order."""
        ordered = sorted({_validate_name(name) for name in names})
        handles: list[LockHandle] = []
        with ExitStack() as stack:
            for name in ordered:
                handles.append(stack.enter_context(self.resource_lock(name, timeout=timeout)))
            yield LockBundle(
                handles=tuple(handles),
                wait_ms=sum(handle.wait_ms for handle in handles),
            )

    # ------------------------------------------------------------------
    def _thread_lock_for(self, path: Path) -> threading.Lock:
        with self._registry_lock:
            lock = self._thread_locks.get(path)
            if lock is None:
                lock = threading.Lock()
                self._thread_locks[path] = lock
            return lock

    @contextmanager
    def _acquire(
        self,
        name: str,
        path: Path,
        timeout: float | None,
    ) -> Iterator[LockHandle]:
        effective = self.default_timeout if timeout is None else timeout
        if effective is not None and math.isinf(effective):
            effective = None
        deadline = None if effective is None else time.monotonic() + effective
        start = time.perf_counter()

        thread_lock = self._thread_lock_for(path)
        acquired = thread_lock.acquire(timeout=-1 if effective is None else max(effective, 0.0))
        if not acquired:
            raise LockTimeoutError(f"Timed out waiting for lock '{name}' ({path}).")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with path.open("a+", encoding="utf-8") as handle:
                _flock(handle, name, path, deadline)
                try:
                    wait_ms = int((time.perf_counter() - start) * 1000)
                    _write_metadata(handle, path)
                    yield LockHandle(name=name, path=path, wait_ms=wait_ms)
                finally:
                    if fcntl is not None:
                        fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
        finally:
            thread_lock.release()


def _flock(handle: IO[str], name: str, path: Path, deadline: float | None) -> None:
    if fcntl is None:  # pragma: no cover - Windows
        return
    fileno = handle.fileno()
    while True:
        try:
            fcntl.flock(fileno, fcntl.LOCK_EX | fcntl.LOCK_NB)
            return
        except BlockingIOError:
            if deadline is not None and time.monotonic() >= deadline:
                raise LockTimeoutError(
                    f"Timed out waiting for lock '{name}' ({path}); held by another process."
                ) from None
            time.sleep(_POLL_INTERVAL)


def _write_metadata(handle: IO[str], path: Path) -> None:
    payload = {
        "pid": os.getpid(),
        "path": str(path),
        "thread": threading.current_thread().name,
        "acquired_at": datetime.now(tz=UTC).isoformat(timespec="seconds"),
    }
    handle.seek(0)
    handle.truncate()
    handle.write(json.dumps(payload))
    handle.flush()


def _validate_name(name: str) -> str:
    if not _NAME_PATTERN.match(name):
        raise ValueError(f"Invalid lock name '{name}'.")
    return name


__all__ = [
    "GLOBAL_LOCK_NAME",
    "LockBundle",
    "LockHandle",
    "LockManager",
    "LockTimeoutError",
    "WAIT_FOREVER",
]
