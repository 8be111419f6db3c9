"""Errors raised while bringing up or talking to the local nebi server.

Every error carries a ``kind`` tag so callers can tell failures apart
without string matching.
"""

from __future__ import annotations

from pathlib import Path


class LocalServerError(Exception):
    """Base class for local server supervision failures."""

    kind = "LocalServerError"


class BinaryNotFoundError(LocalServerError):
    kind = "BinaryNotFound"


class PortExhaustedError(LocalServerError):
    kind = "PortExhausted"

    def __init__(self, start: int, span: int) -> None:
        self.start = start
        self.span = span
        super().__init__(
            f"No available port found in range {start}-{start + span - 1}"
        )


class LockTimeoutError(LocalServerError):
    kind = "LockTimeout"

    def __init__(self, lock_path: Path, timeout: float) -> None:
        self.lock_path = lock_path
        self.timeout = timeout
        super().__init__(
            f"Timed out after {timeout:g}s acquiring spawn lock {lock_path} "
            "(another process may be starting the server)"
        )


class SpawnFailedError(LocalServerError):
    kind = "SpawnFailed"


class ReadinessTimeoutError(LocalServerError):
    kind = "ReadinessTimeout"

    def __init__(self, timeout: float, log_path: Path) -> None:
        self.timeout = timeout
        self.log_path = log_path
        super().__init__(
            f"Server did not become ready within {timeout:g}s. "
            f"Check logs at {log_path}"
        )


class StateCorruptError(LocalServerError):
    """The state file exists but does not hold a valid server record."""

    kind = "StateCorrupt"
