"""nebi: command-line front-end for a Pixi environment server.

This package carries the local-server supervision layer: every CLI
command that needs the API calls ensure_local_server(), which attaches
to the per-user local server or starts one in the background.

Quick Start:
    from nebi import ensure_local_server

    info = ensure_local_server()
    # info.url   -> "http://127.0.0.1:8460"
    # info.token -> "nebi_local_..."
"""

from __future__ import annotations

__version__ = "0.1.0"

import json
import logging
import os
import signal
import threading
import time
from typing import Any

from nebi._types import LocalServerStatus, ServerInfo, ServerState
from nebi.errors import (
    BinaryNotFoundError,
    LocalServerError,
    LockTimeoutError,
    PortExhaustedError,
    ReadinessTimeoutError,
    SpawnFailedError,
    StateCorruptError,
)
from nebi.paths import LocalServerPaths, get_local_server_paths

__all__ = [
    "BinaryNotFoundError",
    "LocalServerError",
    "LocalServerPaths",
    "LocalServerStatus",
    "LockTimeoutError",
    "PortExhaustedError",
    "ReadinessTimeoutError",
    "ServerInfo",
    "ServerState",
    "SpawnFailedError",
    "StateCorruptError",
    "ensure_local_server",
    "server_status",
    "stop_server",
]

logger = logging.getLogger(__name__)

# Module-level state (thread-safe via _lock)
_lock = threading.Lock()
_supervisor: Any = None  # LocalServerSupervisor | None


def _get_supervisor() -> Any:
    global _supervisor
    from nebi.supervisor import LocalServerSupervisor

    paths = get_local_server_paths()
    if _supervisor is None or _supervisor.paths != paths:
        _supervisor = LocalServerSupervisor(paths=paths)
    return _supervisor


def ensure_local_server() -> ServerInfo:
    """Return connection info for the local server, starting it if needed.

    Raises a LocalServerError subclass when no healthy server could be
    reached or started.
    """
    with _lock:
        supervisor = _get_supervisor()
    return supervisor.ensure()


def server_status(paths: LocalServerPaths | None = None) -> LocalServerStatus:
    """Describe the local server without starting one."""
    from nebi._utils import health_check, is_pid_alive, is_port_open
    from nebi.state import read_state

    paths = paths or get_local_server_paths()
    status = LocalServerStatus(
        status="not running", log_file=paths.log_file, database=paths.database
    )
    try:
        state = read_state(paths.state_file)
    except StateCorruptError:
        logger.debug(f"Corrupt state file {paths.state_file}")
        status.status = "not running (stale)"
        return status
    if state is None:
        return status
    if not is_pid_alive(state.pid):
        status.status = "not running (stale)"
        return status

    status.pid = state.pid
    status.port = state.port
    status.started_at = state.started_at
    if not is_port_open(state.port):
        status.status = "not responding"
        return status
    status.status = "running"
    health = health_check(state.url, timeout=1.0)
    if health is not None:
        status.version = health.get("version")
    return status


def stop_server(paths: LocalServerPaths | None = None, timeout: float = 5.0) -> bool:
    """Stop the running local server via POST /api/v1/admin/shutdown.

    Falls back to SIGTERM when the API does not respond. The database
    persists; the server removes its own state file on the way out.

    Returns True if a server was stopped.
    """
    global _supervisor

    from nebi._utils import is_pid_alive
    from nebi.state import read_state, remove_state

    paths = paths or get_local_server_paths()
    try:
        state = read_state(paths.state_file)
    except StateCorruptError:
        return False
    if state is None or not is_pid_alive(state.pid):
        return False

    shutdown_requested = False
    try:
        import urllib.request

        req = urllib.request.Request(
            f"{state.url}/api/v1/admin/shutdown",
            data=json.dumps({}).encode(),
            headers={
                "Content-Type": "application/json",
                "Authorization": f"Bearer {state.token}",
            },
            method="POST",
        )
        with urllib.request.urlopen(req, timeout=5):
            shutdown_requested = True
    except Exception:
        logger.debug(f"Failed to request shutdown for {state.url}")

    if not shutdown_requested:
        try:
            os.kill(state.pid, signal.SIGTERM)
        except OSError:
            logger.debug(f"Failed to send SIGTERM to pid={state.pid}")

    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if not is_pid_alive(state.pid):
            break
        time.sleep(0.1)
    else:
        logger.debug(f"Server pid={state.pid} still alive after {timeout:g}s")
        return False

    # Normally already gone; covers a server killed before cleanup
    try:
        current = read_state(paths.state_file)
    except StateCorruptError:
        current = None
    if current is not None and current.pid == state.pid:
        remove_state(paths.state_file)

    with _lock:
        _supervisor = None
    return True
