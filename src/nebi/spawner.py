"""Launch the nebi server as a detached background process."""

from __future__ import annotations

import logging
import os
import shutil
import subprocess
import sys
from pathlib import Path

from nebi._types import LOOPBACK_HOST
from nebi._utils import detached_popen_kwargs
from nebi.errors import BinaryNotFoundError, SpawnFailedError
from nebi.paths import LocalServerPaths

logger = logging.getLogger(__name__)

SERVER_BINARY = "nebi-server"


def find_server_binary() -> str:
    """Locate the ``nebi-server`` executable.

    Looks next to the running CLI first (the ``bin/`` directory of the
    environment it was installed into), then on PATH.
    """
    names = [SERVER_BINARY]
    if sys.platform == "win32":
        names.insert(0, SERVER_BINARY + ".exe")

    candidates_dirs: list[Path] = []
    if sys.argv and sys.argv[0]:
        candidates_dirs.append(Path(sys.argv[0]).absolute().parent)
    candidates_dirs.append(Path(sys.executable).parent)

    for directory in candidates_dirs:
        for name in names:
            candidate = directory / name
            if candidate.is_file() and os.access(candidate, os.X_OK):
                return str(candidate)

    found = shutil.which(SERVER_BINARY)
    if found:
        return found

    raise BinaryNotFoundError(
        f"{SERVER_BINARY} binary not found. "
        "Ensure it's in your PATH or next to the nebi CLI"
    )


class Spawner:
    """Start a local-mode server on a given port and return immediately.

    Args:
        paths: Filesystem layout shared with the server.
        command: Override for the server command prefix, e.g.
            ``[sys.executable, "-m", "nebi.server"]``. Resolved with
            :func:`find_server_binary` when omitted.
    """

    def __init__(
        self,
        paths: LocalServerPaths,
        command: list[str] | None = None,
    ) -> None:
        self.paths = paths
        self.command = command

    def build_command(self, port: int) -> list[str]:
        prefix = list(self.command) if self.command else [find_server_binary()]
        return [*prefix, "--port", str(port), "--mode", "both", "--local"]

    def build_env(self) -> dict[str, str]:
        env = dict(os.environ)
        env.update(
            {
                "NEBI_DATA_DIR": str(self.paths.data_dir),
                "NEBI_STATE_FILE": str(self.paths.state_file),
                "NEBI_DATABASE_DRIVER": "sqlite",
                "NEBI_DATABASE_DSN": str(self.paths.database),
                "NEBI_SERVER_HOST": LOOPBACK_HOST,
            }
        )
        return env

    def spawn(self, port: int) -> subprocess.Popen:
        """Launch the server and return its process without waiting for readiness.

        Raises:
            BinaryNotFoundError: no server executable could be located.
            SpawnFailedError: the log file or the process could not be opened.
        """
        cmd = self.build_command(port)
        try:
            self.paths.ensure_dirs()
            log_fd = open(self.paths.log_file, "ab")
        except OSError as e:
            raise SpawnFailedError(
                f"Failed to open log file {self.paths.log_file}: {e}"
            ) from e

        try:
            proc = subprocess.Popen(
                cmd,
                stdin=subprocess.DEVNULL,
                stdout=log_fd,
                stderr=subprocess.STDOUT,
                env=self.build_env(),
                close_fds=True,
                **detached_popen_kwargs(),
            )
        except OSError as e:
            raise SpawnFailedError(f"Failed to start server {cmd[0]}: {e}") from e
        finally:
            # The child holds its own copy of the descriptor
            log_fd.close()

        logger.debug(f"Server process started (pid={proc.pid}, port={port})")
        return proc
