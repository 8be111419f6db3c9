"""Cross-process spawn lock.

An advisory ``flock`` on ``spawn.lock`` serializes every code path that
may start a local server. The kernel drops the lock when its holder
dies, so a crashed CLI can never wedge later invocations. The lock file
itself is never deleted.
"""

from __future__ import annotations

import logging
import os
import time
from pathlib import Path
from typing import IO, Any

from nebi._utils import lock_file, unlock_file
from nebi.errors import LockTimeoutError

logger = logging.getLogger(__name__)

DEFAULT_LOCK_TIMEOUT = 10.0
_POLL_INTERVAL = 0.1


class SpawnLock:
    """Exclusive advisory lock with bounded, polling acquisition.

    Usable as a context manager::

        with SpawnLock(paths.lock_file):
            ...  # probe, spawn, wait
    """

    def __init__(
        self,
        path: Path,
        timeout: float = DEFAULT_LOCK_TIMEOUT,
        poll_interval: float = _POLL_INTERVAL,
    ) -> None:
        self.path = path
        self.timeout = timeout
        self.poll_interval = poll_interval
        self._fd: IO[Any] | None = None

    @property
    def held(self) -> bool:
        return self._fd is not None

    def acquire(self) -> None:
        """Poll for the lock until ``timeout`` elapses.

        Raises:
            LockTimeoutError: another process held the lock for the whole wait.
        """
        if self._fd is not None:
            return
        self.path.parent.mkdir(mode=0o755, parents=True, exist_ok=True)
        fd = os.open(self.path, os.O_RDWR | os.O_CREAT, 0o644)
        lock_fd = os.fdopen(fd, "r+")

        deadline = time.monotonic() + self.timeout
        while True:
            try:
                lock_file(lock_fd, exclusive=True, blocking=False)
                break
            except OSError:
                if time.monotonic() >= deadline:
                    lock_fd.close()
                    raise LockTimeoutError(self.path, self.timeout)
                time.sleep(self.poll_interval)

        self._fd = lock_fd
        logger.debug(f"Acquired spawn lock {self.path}")

    def release(self) -> None:
        """Unlock and close. Safe to call when not held."""
        lock_fd = self._fd
        if lock_fd is None:
            return
        self._fd = None
        try:
            unlock_file(lock_fd)
        finally:
            lock_fd.close()
        logger.debug(f"Released spawn lock {self.path}")

    def __enter__(self) -> SpawnLock:
        self.acquire()
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.release()
