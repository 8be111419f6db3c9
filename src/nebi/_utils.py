"""Shared utilities for the nebi package.

Low-level helpers used by both sides of the local server handshake:
PID liveness, TCP probes, cross-platform file locking, detached
subprocess kwargs, HTTP health checks and token generation.
"""

from __future__ import annotations

import json
import os
import secrets
import socket
import sys
from typing import Any

LOCAL_TOKEN_PREFIX = "nebi_local_"

# ---------------------------------------------------------------------------
# PID check
# ---------------------------------------------------------------------------


def is_pid_alive(pid: int) -> bool:
    """Check if a process with the given PID is alive.

    A process owned by another user still counts as alive: the null
    signal fails with EPERM, but the PID is taken.
    """
    if pid <= 0:
        return False
    if sys.platform == "win32":
        import ctypes

        kernel32 = ctypes.windll.kernel32  # type: ignore[attr-defined]
        PROCESS_QUERY_LIMITED_INFORMATION = 0x1000
        handle = kernel32.OpenProcess(PROCESS_QUERY_LIMITED_INFORMATION, False, pid)
        if handle:
            kernel32.CloseHandle(handle)
            return True
        return False
    else:
        try:
            os.kill(pid, 0)
        except PermissionError:
            return True
        except (OSError, OverflowError):
            return False
        return not _is_zombie(pid)


def _is_zombie(pid: int) -> bool:
    """True if /proc reports ``pid`` as exited but not yet reaped (Linux only)."""
    if not sys.platform.startswith("linux"):
        return False
    try:
        with open(f"/proc/{pid}/stat") as f:
            content = f.read()
    except OSError:
        return False
    # The command name is in parens and may contain spaces
    fields = content[content.rfind(")") + 2 :].split()
    return bool(fields) and fields[0] == "Z"


# ---------------------------------------------------------------------------
# TCP probes
# ---------------------------------------------------------------------------


def is_port_open(port: int, host: str = "127.0.0.1", timeout: float = 0.5) -> bool:
    """Return True if something accepts TCP connections on host:port."""
    try:
        with socket.create_connection((host, port), timeout=timeout):
            return True
    except OSError:
        return False


def can_bind(port: int, host: str = "127.0.0.1") -> bool:
    """Return True if a listener could be bound on host:port right now."""
    try:
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
            s.bind((host, port))
            return True
    except OSError:
        return False


# ---------------------------------------------------------------------------
# Cross-platform file locking
# ---------------------------------------------------------------------------


def lock_file(fd: Any, exclusive: bool = True, blocking: bool = True) -> None:
    """Acquire a file lock. Works on Unix (fcntl) and Windows (msvcrt).

    Raises OSError (BlockingIOError on Unix) when ``blocking`` is False
    and the lock is held elsewhere.
    """
    if sys.platform == "win32":
        import msvcrt

        mode = msvcrt.LK_LOCK if blocking else msvcrt.LK_NBLCK
        # msvcrt.locking operates on the file descriptor's current position
        fd.seek(0)
        msvcrt.locking(fd.fileno(), mode, 1)
    else:
        import fcntl

        if exclusive:
            op = fcntl.LOCK_EX
        else:
            op = fcntl.LOCK_SH
        if not blocking:
            op |= fcntl.LOCK_NB
        fcntl.flock(fd, op)


def unlock_file(fd: Any) -> None:
    """Release a file lock."""
    if sys.platform == "win32":
        import msvcrt

        fd.seek(0)
        try:
            msvcrt.locking(fd.fileno(), msvcrt.LK_UNLCK, 1)
        except OSError:
            pass
    else:
        import fcntl

        fcntl.flock(fd, fcntl.LOCK_UN)


# ---------------------------------------------------------------------------
# Cross-platform subprocess detach kwargs
# ---------------------------------------------------------------------------


def detached_popen_kwargs() -> dict[str, Any]:
    """Return Popen kwargs for detaching a subprocess from the parent."""
    if sys.platform == "win32":
        CREATE_NEW_PROCESS_GROUP = 0x00000200
        DETACHED_PROCESS = 0x00000008
        return {"creationflags": CREATE_NEW_PROCESS_GROUP | DETACHED_PROCESS}
    return {"start_new_session": True}


# ---------------------------------------------------------------------------
# Health check
# ---------------------------------------------------------------------------


def health_check(url: str, timeout: float = 2.0) -> dict[str, Any] | None:
    """GET /api/v1/health and return the decoded payload if status is ok."""
    try:
        import urllib.request

        req = urllib.request.Request(f"{url}/api/v1/health", method="GET")
        with urllib.request.urlopen(req, timeout=timeout) as resp:
            data = json.loads(resp.read())
            if data.get("status") != "ok":
                return None
            return data
    except Exception:
        return None


# ---------------------------------------------------------------------------
# Tokens
# ---------------------------------------------------------------------------


def generate_local_token() -> str:
    """Return a fresh bearer token with 256 bits of entropy."""
    return LOCAL_TOKEN_PREFIX + secrets.token_hex(32)


def token_prefix(token: str | None) -> str:
    """Truncate a token for diagnostics."""
    if not token:
        return "<none>"
    return token[:16] + "..."
