"""Atomic persistence of the local server state file.

The state file is the only rendezvous between CLI processes and the
local server. It is written by the server alone, always through a
temporary sibling and a rename, so readers see either the previous
record or the new one and never a partial write.
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path

from nebi._types import ServerState
from nebi.errors import StateCorruptError

logger = logging.getLogger(__name__)


def read_state(path: Path) -> ServerState | None:
    """Return the recorded server state, or None if there is no state file.

    Raises:
        StateCorruptError: the file exists but is not a valid record.
    """
    try:
        raw = path.read_bytes()
    except FileNotFoundError:
        return None
    try:
        data = json.loads(raw.decode("utf-8"))
        if not isinstance(data, dict):
            raise TypeError(f"expected a JSON object, got {type(data).__name__}")
        return ServerState.from_dict(data)
    except (UnicodeDecodeError, ValueError, KeyError, TypeError) as e:
        raise StateCorruptError(f"Corrupt server state file {path}: {e}") from e


def write_state(path: Path, state: ServerState) -> None:
    """Atomically replace the state file with ``state`` (mode 0600)."""
    path.parent.mkdir(mode=0o755, parents=True, exist_ok=True)
    tmp_path = path.with_name(path.name + ".tmp")
    payload = json.dumps(state.to_dict(), indent=2).encode("utf-8")

    fd = os.open(tmp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(payload)
            f.flush()
            os.fsync(f.fileno())
        # os.open's mode only applies when it creates the file
        os.chmod(tmp_path, 0o600)
        os.replace(tmp_path, path)
    except BaseException:
        try:
            tmp_path.unlink()
        except OSError:
            pass
        raise
    logger.debug(f"State file written: {path}")


def remove_state(path: Path) -> None:
    """Remove the state file. A missing file is not an error."""
    try:
        path.unlink()
        logger.debug(f"State file removed: {path}")
    except FileNotFoundError:
        pass


def remove_state_if_owned(path: Path, pid: int) -> bool:
    """Remove the state file only if it still records ``pid``.

    A newer server may have replaced the file after this one started.
    Deleting it blindly would orphan that server, so the recorded PID is
    checked first. Returns True if the file was removed.
    """
    try:
        state = read_state(path)
    except StateCorruptError:
        logger.debug(f"State file {path} is corrupt; leaving it")
        return False
    if state is None:
        return False
    if state.pid != pid:
        logger.debug(f"State file belongs to pid={state.pid}, not us ({pid}); leaving it")
        return False
    remove_state(path)
    return True
