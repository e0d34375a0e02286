"""Node-wide and per-instance locking for redisnode.

Locks combine an in-process :class:`threading.Lock` keyed by lock path with an
advisory ``fcntl.flock`` on a file under ``runtime_dir``, so concurrent
requests inside one node process and separate CLI invocations both serialise.

The global lock (``node/global.lock``) guards the instance store together with
the port and capacity bookkeeping derived from it. When both are needed it is
taken before any instance lock. It is reentrant within the thread that holds
it, so helpers that need it may run inside an operation that already does.
"""
from __future__ import annotations

import fcntl
import json
import os
import threading
import time
from collections.abc import Iterable, Iterator
from contextlib import ExitStack, contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import TextIO

_POLL_INTERVAL = 0.05


class LockTimeoutError(RuntimeError):
    """Raised when a lock cannot be acquired before the timeout expires."""


@dataclass(slots=True)
class LockHandle:
    """Details about an acquired lock."""

    name: str
    path: Path
    wait_ms: int


@dataclass(slots=True)
class LockBundle:
    """Locks held together by :meth:`LockManager.mutate_instances`."""

    handles: list[LockHandle] = field(default_factory=list)

    @property
    def wait_ms(self) -> int:
        """Return the total time spent waiting for every lock in the bundle."""
        return sum(handle.wait_ms for handle in self.handles)


class LockManager:
    """Hand out node-wide and per-instance locks rooted under *runtime_dir*."""

    def __init__(self, runtime_dir: Path, default_timeout: float = 30.0) -> None:
        """Store the lock directory and default acquisition timeout."""
        self.runtime_dir = Path(runtime_dir).expanduser()
        self.default_timeout = default_timeout
        self._guard = threading.Lock()
        self._thread_locks: dict[str, threading.Lock] = {}
        self._global_owner: int | None = None

    def lock_path(self, name: str) -> Path:
        """Return the lock file path for instance *name*."""
        safe = name.replace("/", "-")
        return self.runtime_dir / f"{safe}.lock"

    @property
    def global_lock_path(self) -> Path:
        """Return the path of the node-wide lock file."""
        return self.runtime_dir / "node" / "global.lock"

    @contextmanager
    def global_lock(self, *, timeout: float | None = None) -> Iterator[LockHandle]:
        """Hold the node-wide lock; nested use by the owning thread is free."""
        path = self.global_lock_path
        if self._global_owner == threading.get_ident():
            yield LockHandle(name=path.stem, path=path, wait_ms=0)
            return
        with self._acquire(path, timeout) as handle:
            self._global_owner = threading.get_ident()
            try:
                yield handle
            finally:
                self._global_owner = None

    @contextmanager
    def instance_lock(self, name: str, *, timeout: float | None = None) -> Iterator[LockHandle]:
        """Hold the lock for instance *name* for the duration of the block."""
        with self._acquire(self.lock_path(name), timeout) as handle:
            yield handle

    @contextmanager
    def mutate_instances(
        self,
        names: Iterable[str],
        *,
        include_global: bool = True,
        timeout: float | None = None,
    ) -> Iterator[LockBundle]:
        """Acquire the global lock (optionally) followed by each instance lock."""
        bundle = LockBundle()
        with ExitStack() as stack:
            if include_global:
                bundle.handles.append(stack.enter_context(self.global_lock(timeout=timeout)))
            for name in sorted(set(names)):
                bundle.handles.append(
                    stack.enter_context(self.instance_lock(name, timeout=timeout))
                )
            yield bundle

    # ------------------------------------------------------------------
    @contextmanager
    def _acquire(self, path: Path, timeout: float | None) -> Iterator[LockHandle]:
        effective = self.default_timeout if timeout is None else timeout
        deadline = time.monotonic() + effective
        start = time.perf_counter()
        label = path.stem

        thread_lock = self._thread_lock(path)
        if not thread_lock.acquire(timeout=max(effective, 0)):
            raise LockTimeoutError(f"Timed out waiting for lock '{label}'.")
        try:
            handle = self._acquire_file_lock(label, path, deadline)
            try:
                wait_ms = int((time.perf_counter() - start) * 1000)
                self._write_metadata(handle, label, path)
                yield LockHandle(name=label, path=path, wait_ms=wait_ms)
            finally:
                fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
                handle.close()
        finally:
            thread_lock.release()

    def _thread_lock(self, path: Path) -> threading.Lock:
        key = str(path)
        with self._guard:
            lock = self._thread_locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._thread_locks[key] = lock
            return lock

    def _acquire_file_lock(self, label: str, path: Path, deadline: float) -> TextIO:
        path.parent.mkdir(parents=True, exist_ok=True)
        handle = path.open("a+", encoding="utf-8")
        while True:
            try:
                fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
                return handle
            except BlockingIOError:
                if time.monotonic() >= deadline:
                    handle.close()
                    raise LockTimeoutError(
                        f"Timed out waiting for lock '{label}' ({path})."
                    ) from None
                time.sleep(_POLL_INTERVAL)

    def _write_metadata(self, handle: TextIO, name: str, path: Path) -> None:
        payload = {
            "name": name,
            "pid": os.getpid(),
            "path": str(path),
            "acquired_at": datetime.now(tz=UTC).isoformat(),
        }
        handle.seek(0)
        handle.truncate()
        handle.write(json.dumps(payload))
        handle.flush()


__all__ = ["LockBundle", "LockHandle", "LockManager", "LockTimeoutError"]
