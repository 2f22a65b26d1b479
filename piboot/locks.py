"""Per-service advisory file locks.

The reload lock serializes watcher reloads and fleet updates against one
compose project. The watch lock is held for a watcher's whole lifetime so
only one watcher per service runs on the host.
"""
from __future__ import annotations

import fcntl
import logging
import time
from pathlib import Path
from typing import IO, Optional

from .errors import FilesystemError, LockTimeout

log = logging.getLogger(__name__)

_RETRY_INTERVAL = 0.1


class ServiceLock:
    """``flock``-based exclusive lock on a file next to the compose project."""

    def __init__(self, path: Path, timeout: float = 0) -> None:
        self.path = path
        self.timeout = timeout
        self._handle: Optional[IO[str]] = None

    @property
    def held(self) -> bool:
        return self._handle is not None

    def acquire(self, timeout: Optional[float] = None) -> bool:
        """Try to take the lock, waiting up to ``timeout`` seconds.

        Returns False when another holder keeps it past the deadline.
        """
        if self._handle is not None:
            return True
        if timeout is None:
            timeout = self.timeout
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            handle = open(self.path, "a")
        except OSError as exc:
            raise FilesystemError(f"Cannot open lock file {self.path}: {exc}", path=self.path) from exc

        deadline = time.monotonic() + timeout
        while True:
            try:
                fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
            except BlockingIOError:
                if time.monotonic() >= deadline:
                    handle.close()
                    return False
                time.sleep(_RETRY_INTERVAL)
                continue
            except OSError:
                handle.close()
                raise
            self._handle = handle
            return True

    def release(self) -> None:
        if self._handle is None:
            return
        try:
            fcntl.flock(self._handle.fileno(), fcntl.LOCK_UN)
        except OSError as exc:
            log.warning("Error releasing lock %s: %s", self.path, exc)
        finally:
            self._handle.close()
            self._handle = None

    def is_held_elsewhere(self) -> bool:
        """Check whether another holder owns the lock, without keeping it."""
        if self._handle is not None:
            return False
        if not self.path.exists():
            return False
        if self.acquire(timeout=0):
            self.release()
            return False
        return True

    def __enter__(self) -> "ServiceLock":
        if not self.acquire():
            raise LockTimeout(f"Timed out after {self.timeout:g}s waiting for {self.path}")
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> bool:
        self.release()
        return False
