"""Per-user filesystem layout for the local server."""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

from nebi.errors import LocalServerError

STATE_FILE_NAME = "server.state"
LOCK_FILE_NAME = "spawn.lock"
DATABASE_FILE_NAME = "nebi.db"


def get_data_dir(environ: Mapping[str, str] | None = None) -> Path:
    """Resolve the nebi data directory.

    Resolution order:
    1. ``NEBI_DATA_DIR`` environment variable (explicit override)
    2. ``~/.local/share/nebi`` on every platform

    XDG_DATA_HOME is deliberately ignored: sandboxed launchers rewrite it
    per application, which would split CLI and server onto different
    state files.
    """
    if environ is None:
        environ = os.environ
    env = environ.get("NEBI_DATA_DIR")
    if env:
        return Path(env).expanduser().absolute()
    try:
        home = Path.home()
    except RuntimeError as e:
        raise LocalServerError(f"Failed to determine home directory: {e}") from e
    return (home / ".local" / "share" / "nebi").absolute()


@dataclass(frozen=True)
class LocalServerPaths:
    """All paths the supervisor and the local server agree on."""

    data_dir: Path
    state_file: Path
    lock_file: Path
    database: Path
    log_dir: Path
    log_file: Path

    @classmethod
    def from_data_dir(cls, data_dir: Path) -> LocalServerPaths:
        data_dir = Path(data_dir).absolute()
        log_dir = data_dir / "logs"
        return cls(
            data_dir=data_dir,
            state_file=data_dir / STATE_FILE_NAME,
            lock_file=data_dir / LOCK_FILE_NAME,
            database=data_dir / DATABASE_FILE_NAME,
            log_dir=log_dir,
            log_file=log_dir / "server.log",
        )

    def ensure_dirs(self) -> None:
        """Create the data and log directories if missing."""
        self.data_dir.mkdir(mode=0o755, parents=True, exist_ok=True)
        self.log_dir.mkdir(mode=0o755, parents=True, exist_ok=True)


def get_local_server_paths() -> LocalServerPaths:
    return LocalServerPaths.from_data_dir(get_data_dir())
