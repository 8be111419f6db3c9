"""Local server supervisor: guarantee exactly one healthy local server.

Every CLI invocation that needs the API runs :meth:`LocalServerSupervisor.ensure`.

Discovery flow:
1. Fast path: state file -> pid alive -> port answers -> done
2. Acquire the spawn lock (bounded wait)
3. Re-check under the lock: a concurrent CLI may have just spawned
4. Remove the stale state file
5. Pick a free loopback port
6. Spawn the server, detached
7. Poll the state file until a live pid answers on its recorded port
8. Release the lock

The state file written by the server is authoritative: if a different
server than the one just spawned ends up recorded there, callers attach
to that one.
"""

from __future__ import annotations

import logging
import sys
import time
from collections.abc import Callable

from nebi._types import ServerInfo, ServerState
from nebi._utils import is_pid_alive, is_port_open
from nebi.errors import ReadinessTimeoutError, StateCorruptError
from nebi.lock import DEFAULT_LOCK_TIMEOUT, SpawnLock
from nebi.paths import LocalServerPaths, get_local_server_paths
from nebi.ports import DEFAULT_BASE_PORT, DEFAULT_PORT_SPAN, pick_port
from nebi.spawner import Spawner
from nebi.state import read_state, remove_state

logger = logging.getLogger(__name__)

DEFAULT_READY_TIMEOUT = 30.0
_READY_POLL_INTERVAL = 0.2
_PROBE_TIMEOUT = 0.5
# Extra wait for a live pid whose port is not answering yet
_GRACE_PROBE = 0.5


def _notify(msg: str) -> None:
    print(msg, file=sys.stderr)


class LocalServerSupervisor:
    """Find, recover or start the per-user local server.

    Args:
        paths: Filesystem layout. Defaults to the per-user data directory.
        spawner: Launches the server process. Defaults to a ``Spawner``
            that runs ``nebi-server``.
        lock_timeout: Upper bound on waiting for the spawn lock.
        ready_timeout: Upper bound on waiting for a spawned server.
        port_start: First port to try for a new server.
        port_span: Number of ports to try.
        notify: Sink for user-facing progress lines (stderr by default).
    """

    def __init__(
        self,
        paths: LocalServerPaths | None = None,
        spawner: Spawner | None = None,
        lock_timeout: float = DEFAULT_LOCK_TIMEOUT,
        ready_timeout: float = DEFAULT_READY_TIMEOUT,
        port_start: int = DEFAULT_BASE_PORT,
        port_span: int = DEFAULT_PORT_SPAN,
        poll_interval: float = _READY_POLL_INTERVAL,
        probe_timeout: float = _PROBE_TIMEOUT,
        grace_probe: float = _GRACE_PROBE,
        notify: Callable[[str], None] | None = _notify,
    ) -> None:
        self.paths = paths or get_local_server_paths()
        self.spawner = spawner or Spawner(self.paths)
        self.lock_timeout = lock_timeout
        self.ready_timeout = ready_timeout
        self.port_start = port_start
        self.port_span = port_span
        self.poll_interval = poll_interval
        self.probe_timeout = probe_timeout
        self.grace_probe = grace_probe
        self._notify = notify
        self._info: ServerInfo | None = None

    # --- Probes ---

    def read_state(self) -> ServerState | None:
        """Read the state file, treating a corrupt file as absent."""
        try:
            return read_state(self.paths.state_file)
        except StateCorruptError as e:
            logger.debug(f"Ignoring corrupt state file: {e}")
            return None

    def is_healthy(self, state: ServerState) -> bool:
        return is_pid_alive(state.pid) and is_port_open(
            state.port, timeout=self.probe_timeout
        )

    def probe(self, grace: bool = False) -> ServerState | None:
        """Return the recorded state if its server is alive and reachable.

        With ``grace``, a live pid whose port is silent gets one more
        chance after a short pause (it may still be binding, or an idle
        shutdown may be in flight).
        """
        state = self.read_state()
        if state is None:
            return None
        if self.is_healthy(state):
            return state
        if grace and self.grace_probe > 0 and is_pid_alive(state.pid):
            time.sleep(self.grace_probe)
            if self.is_healthy(state):
                return state
        logger.debug(f"Server pid={state.pid} port={state.port} is not healthy")
        return None

    # --- Entry point ---

    def ensure(self) -> ServerInfo:
        """Return connection info for a healthy local server, starting one if needed.

        Raises:
            LockTimeoutError: the spawn lock could not be acquired in time.
            PortExhaustedError: no port in the configured range could be bound.
            BinaryNotFoundError: the server executable is missing.
            SpawnFailedError: the server process could not be started.
            ReadinessTimeoutError: the spawned server never became reachable.
        """
        if self._info is not None:
            if is_pid_alive(self._info.pid) and is_port_open(
                self._info.port, timeout=self.probe_timeout
            ):
                return self._info
            self._info = None

        state = self.probe()
        if state is not None:
            logger.debug(f"Local server already running (pid={state.pid}, port={state.port})")
            self._info = ServerInfo.from_state(state)
            return self._info

        with SpawnLock(self.paths.lock_file, timeout=self.lock_timeout):
            # Another CLI may have finished spawning while we waited
            state = self.probe(grace=True)
            if state is not None:
                logger.debug(f"Server became available while waiting (pid={state.pid})")
                self._info = ServerInfo.from_state(state)
                return self._info

            remove_state(self.paths.state_file)

            port = pick_port(self.port_start, self.port_span)
            self._emit(f"Starting local server on port {port}...")
            self.spawner.spawn(port)

            state = self._wait_for_ready()

        if state.port != port:
            logger.debug(f"Server recorded port {state.port}, picked {port}")
        self._emit(f"Local server started (PID {state.pid})")
        self._info = ServerInfo.from_state(state)
        return self._info

    def _wait_for_ready(self) -> ServerState:
        deadline = time.monotonic() + self.ready_timeout
        while True:
            state = self.read_state()
            if state is not None and self.is_healthy(state):
                return state
            if time.monotonic() >= deadline:
                raise ReadinessTimeoutError(self.ready_timeout, self.paths.log_file)
            time.sleep(self.poll_interval)

    def _emit(self, msg: str) -> None:
        if self._notify is not None:
            self._notify(msg)
