"""Helpers shared by the supervisor and server tests."""

import signal
import socket
import subprocess
import sys
import threading
import time

from nebi.spawner import Spawner

SERVER_COMMAND = [sys.executable, "-m", "nebi.server"]


def free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


def dead_pid() -> int:
    """Return the PID of a process that has already exited and been reaped."""
    proc = subprocess.Popen([sys.executable, "-c", "pass"])
    proc.wait()
    return proc.pid


class RecordingSpawner(Spawner):
    """Spawner running the in-tree server module that remembers its children."""

    def __init__(self, paths):
        super().__init__(paths, command=SERVER_COMMAND)
        self.processes = []
        self._lock = threading.Lock()

    @property
    def spawn_count(self):
        with self._lock:
            return len(self.processes)

    def spawn(self, port):
        proc = super().spawn(port)
        with self._lock:
            self.processes.append(proc)
        return proc

    def terminate_all(self):
        for proc in self.processes:
            if proc.poll() is None:
                proc.send_signal(signal.SIGTERM)
        deadline = time.monotonic() + 10
        for proc in self.processes:
            try:
                proc.wait(timeout=max(0.1, deadline - time.monotonic()))
            except subprocess.TimeoutExpired:
                proc.kill()
                proc.wait()
