from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Protocol

from filelock import FileLock, Timeout

"""Process-wide mutual exclusion for pipeline runs and report jobs.

Backed by a lock file (``filelock``) so that overlapping scheduled runs on
the same host exclude each other. The lock is NOT reentrant: a second
acquisition of the same lock path from the process that already holds it
fails immediately with ``LockHeld`` instead of waiting out the timeout or
silently succeeding.
"""

__all__ = [
    "DEFAULT_LOCK_TIMEOUT_SECONDS",
    "Lock",
    "LockHeld",
    "LockTimeout",
    "ProcessLock",
]

logger = logging.getLogger(__name__)

DEFAULT_LOCK_TIMEOUT_SECONDS = 300.0  # 5 minutes
DEFAULT_LOCK_PATH = Path("./logs/pipeline.lock")

# Lock paths currently held by this process.
_HELD_PATHS: set[str] = set()


class LockTimeout(Exception):
    """Raised when the lock could not be acquired within the wait bound."""


class LockHeld(Exception):
    """Raised on a nested acquisition attempt of an already held lock."""


class Lock(Protocol):
    def acquire(self, timeout_seconds: float) -> bool: ...

    def release(self) -> None: ...


class ProcessLock:
    def __init__(self, path: Path | str = DEFAULT_LOCK_PATH, name: str = "pipeline") -> None:
        self.path = Path(path)
        self.name = name
        # resolved once: a later chdir must not change which lock this is
        self._key = str(self.path.resolve())
        self._file_lock: FileLock | None = None
        self._acquired = False

    @property
    def is_held(self) -> bool:
        return self._acquired

    def acquire(self, timeout_seconds: float = DEFAULT_LOCK_TIMEOUT_SECONDS) -> bool:
        """Try to take the lock, waiting at most ``timeout_seconds``.

        Returns False on timeout. Raises LockHeld when this process already
        holds the same lock path.
        """
        if self._acquired or self._key in _HELD_PATHS:
            raise LockHeld(f"lock '{self.name}' is already held by this process ({self.path})")
        Path(self._key).parent.mkdir(parents=True, exist_ok=True)
        file_lock = FileLock(self._key)
        try:
            file_lock.acquire(timeout=max(timeout_seconds, 0))
        except Timeout:
            logger.debug("lock=%s timed out after %.1fs", self.name, timeout_seconds)
            return False
        self._file_lock = file_lock
        self._acquired = True
        _HELD_PATHS.add(self._key)
        logger.debug("lock=%s acquired path=%s", self.name, self.path)
        return True

    def release(self) -> None:
        """Release the lock; a no-op when it was never acquired."""
        if not self._acquired or self._file_lock is None:
            return
        try:
            self._file_lock.release()
        finally:
            _HELD_PATHS.discard(self._key)
            self._file_lock = None
            self._acquired = False
            logger.debug("lock=%s released", self.name)

    @contextmanager
    def holding(self, timeout_seconds: float = DEFAULT_LOCK_TIMEOUT_SECONDS) -> Iterator[ProcessLock]:
        """Hold the lock for the duration of a ``with`` block.

        Raises LockTimeout when the lock cannot be acquired in time.
        """
        if not self.acquire(timeout_seconds):
            raise LockTimeout(
                f"could not acquire lock '{self.name}' within {timeout_seconds:g}s"
            )
        try:
            yield self
        finally:
            self.release()
