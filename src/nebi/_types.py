"""Type definitions for local server supervision.

Defines the records exchanged between the CLI and the local server:
the persisted server state, the connection info handed back to callers,
and the status snapshot shown by ``nebi server status``.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

LOOPBACK_HOST = "127.0.0.1"
# Largest pid any supported platform hands out
MAX_PID = 2**31 - 1


def format_timestamp(dt: datetime) -> str:
    """ISO-8601 UTC at second resolution, e.g. ``2026-01-02T03:04:05Z``."""
    return dt.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def parse_timestamp(value: str) -> datetime:
    if not isinstance(value, str):
        raise TypeError(f"timestamp must be a string, got {type(value).__name__}")
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    dt = datetime.fromisoformat(value)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


@dataclass(frozen=True)
class ServerState:
    """Rendezvous record written by a local server once it is listening."""

    pid: int
    port: int
    token: str
    started_at: datetime

    def __post_init__(self) -> None:
        if (
            isinstance(self.pid, bool)
            or not isinstance(self.pid, int)
            or not 0 < self.pid <= MAX_PID
        ):
            raise ValueError(f"pid must be in 1-{MAX_PID}, got {self.pid!r}")
        if (
            isinstance(self.port, bool)
            or not isinstance(self.port, int)
            or not 1024 <= self.port <= 65535
        ):
            raise ValueError(f"port must be in 1024-65535, got {self.port!r}")
        if not isinstance(self.token, str) or not self.token:
            raise ValueError("token must be a non-empty string")
        if not isinstance(self.started_at, datetime):
            raise TypeError("started_at must be a datetime")
        # Second resolution, always UTC
        object.__setattr__(
            self,
            "started_at",
            self.started_at.astimezone(timezone.utc).replace(microsecond=0),
        )

    @property
    def url(self) -> str:
        return f"http://{LOOPBACK_HOST}:{self.port}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "pid": self.pid,
            "port": self.port,
            "token": self.token,
            "started_at": format_timestamp(self.started_at),
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> ServerState:
        return cls(
            pid=d["pid"],
            port=d["port"],
            token=d["token"],
            started_at=parse_timestamp(d["started_at"]),
        )


@dataclass(frozen=True)
class ServerInfo:
    """Connection details for a running local server."""

    url: str
    token: str
    pid: int
    port: int

    @classmethod
    def from_state(cls, state: ServerState) -> ServerInfo:
        return cls(url=state.url, token=state.token, pid=state.pid, port=state.port)


@dataclass
class LocalServerStatus:
    """Snapshot of the local server as seen from the CLI."""

    status: str
    log_file: Path
    database: Path
    port: int = 0
    pid: int = 0
    started_at: datetime | None = None
    version: str | None = None

    @property
    def is_running(self) -> bool:
        return self.status == "running"

    @property
    def uptime(self) -> float:
        """Seconds since the server started, or 0 if unknown."""
        if self.started_at is None:
            return 0.0
        return max(0.0, (datetime.now(timezone.utc) - self.started_at).total_seconds())
