"""File-based locking primitives.

Mutating commands take the global ``vhostctl.lock`` followed by one lock per
tenant (sorted, so concurrent invocations acquire in the same order). Lock
files remain on disk after release and carry the holder's pid for
diagnostics.
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
from pathlib import Path

GLOBAL_LOCK_NAME = "vhostctl"
_POLL_INTERVAL = 0.05
_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


class LockTimeoutError(RuntimeError):
    """Raised when a lock cannot be acquired within the timeout."""


@dataclass(slots=True)
class LockHandle:
    """A held lock."""

    path: Path
    wait_ms: int


@dataclass(slots=True)
class LockBundle:
    """A set of held locks acquired together."""

    handles: tuple[LockHandle, ...]

    @property
    def wait_ms(self) -> int:
        """Return the total time spent waiting for the bundle."""
        return sum(handle.wait_ms for handle in self.handles)


def lock_name_for(key: str) -> str:
    """Return a filesystem-safe lock name for a tenant key such as ``node-a/example.com``."""
    safe = _UNSAFE_CHARS.sub("__", key.replace("/", "__")).strip("_")
    return safe or "tenant"


class LockManager:
    """Acquire global and per-tenant locks below ``runtime_dir``."""

    def __init__(self, runtime_dir: Path, default_timeout: float = 30.0) -> None:
        """Store the lock directory and default timeout."""
        self.runtime_dir = Path(runtime_dir)
        self.default_timeout = default_timeout

    def lock_path(self, name: str) -> Path:
        """Return the lock file path for *name*."""
        return self.runtime_dir / f"{name}.lock"

    @contextmanager
    def global_lock(self, *, timeout: float | None = None) -> Iterator[LockHandle]:
        """Hold the process-wide mutation lock."""
        with self._acquire(self.lock_path(GLOBAL_LOCK_NAME), timeout) as handle:
            yield handle

    @contextmanager
    def tenant_lock(self, key: str, *, timeout: float | None = None) -> Iterator[LockHandle]:
        """Hold the lock for a single tenant."""
        with self._acquire(self.lock_path(lock_name_for(key)), timeout) as handle:
            yield handle

    @contextmanager
    def mutate_tenants(
        self,
        keys: Iterable[str],
        *,
        timeout: float | None = None,
    ) -> Iterator[LockBundle]:
        """Acquire the global lock, then each tenant lock in sorted order."""
        handles: list[LockHandle] = []
        with ExitStack() as stack:
            handles.append(stack.enter_context(self.global_lock(timeout=timeout)))
            for key in sorted(set(keys)):
                handles.append(stack.enter_context(self.tenant_lock(key, timeout=timeout)))
            yield LockBundle(handles=tuple(handles))

    @contextmanager
    def _acquire(self, path: Path, timeout: float | None) -> Iterator[LockHandle]:
        effective_timeout = self.default_timeout if timeout is None else timeout
        path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(path, os.O_RDWR | os.O_CREAT, 0o640)
        start = time.monotonic()
        try:
            while True:
                try:
                    fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                    break
                except BlockingIOError:
                    if time.monotonic() - start >= effective_timeout:
                        raise LockTimeoutError(
                            f"Timed out after {effective_timeout:.1f}s waiting for lock {path}"
                        ) from None
                    time.sleep(_POLL_INTERVAL)
            wait_ms = int((time.monotonic() - start) * 1000)
            payload = json.dumps({"pid": os.getpid(), "path": str(path)})
            os.ftruncate(fd, 0)
            os.write(fd, payload.encode("utf-8"))
            try:
                yield LockHandle(path=path, wait_ms=wait_ms)
            finally:
                fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            os.close(fd)


__all__ = ["LockBundle", "LockHandle", "LockManager", "LockTimeoutError", "lock_name_for"]
