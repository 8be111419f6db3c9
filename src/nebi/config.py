"""Server configuration from ``NEBI_*`` environment variables."""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, replace
from pathlib import Path

from nebi._types import LOOPBACK_HOST
from nebi.paths import DATABASE_FILE_NAME, STATE_FILE_NAME, get_data_dir
from nebi.ports import DEFAULT_BASE_PORT

DEFAULT_IDLE_TIMEOUT = 600.0
RUN_MODES = ("server", "worker", "both")


def _env_float(environ: Mapping[str, str], name: str, default: float) -> float:
    raw = environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}") from None


def _env_int(environ: Mapping[str, str], name: str, default: int) -> int:
    raw = environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from None


@dataclass(frozen=True)
class ServerConfig:
    data_dir: Path
    state_file: Path
    database_driver: str = "sqlite"
    database_dsn: str = ""
    host: str = LOOPBACK_HOST
    port: int = DEFAULT_BASE_PORT
    mode: str = "both"
    local: bool = False
    idle_timeout: float = DEFAULT_IDLE_TIMEOUT
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> ServerConfig:
        """Build a config from the environment (``os.environ`` by default)."""
        if environ is None:
            environ = os.environ
        data_dir = get_data_dir(environ)
        state_file = environ.get("NEBI_STATE_FILE") or str(data_dir / STATE_FILE_NAME)
        return cls(
            data_dir=data_dir,
            state_file=Path(state_file),
            database_driver=environ.get("NEBI_DATABASE_DRIVER") or "sqlite",
            database_dsn=environ.get("NEBI_DATABASE_DSN")
            or str(data_dir / DATABASE_FILE_NAME),
            host=environ.get("NEBI_SERVER_HOST") or LOOPBACK_HOST,
            port=_env_int(environ, "NEBI_SERVER_PORT", DEFAULT_BASE_PORT),
            idle_timeout=_env_float(environ, "NEBI_IDLE_TIMEOUT", DEFAULT_IDLE_TIMEOUT),
            log_level=(environ.get("NEBI_LOG_LEVEL") or "INFO").upper(),
        )

    def with_overrides(
        self,
        port: int | None = None,
        mode: str | None = None,
        local: bool | None = None,
        idle_timeout: float | None = None,
    ) -> ServerConfig:
        """Apply command-line flags on top of the environment."""
        cfg = replace(
            self,
            port=self.port if port is None else port,
            mode=self.mode if mode is None else mode,
            local=self.local if local is None else local,
            idle_timeout=self.idle_timeout if idle_timeout is None else idle_timeout,
        )
        if cfg.local:
            cfg = replace(cfg, host=LOOPBACK_HOST)
        return cfg

    def validate(self) -> None:
        if self.mode not in RUN_MODES:
            raise ValueError(
                f"Invalid mode {self.mode!r} (valid modes: {', '.join(RUN_MODES)})"
            )
        if self.database_driver != "sqlite":
            raise ValueError(
                f"Unsupported database driver {self.database_driver!r} (supported: sqlite)"
            )
        if self.local and self.mode == "worker":
            raise ValueError("--local requires the HTTP server (mode 'server' or 'both')")
        if not 1 <= self.port <= 65535:
            raise ValueError(f"Invalid port {self.port}")
        if self.idle_timeout < 0:
            raise ValueError("Idle timeout must be >= 0")

    @property
    def runs_server(self) -> bool:
        return self.mode in ("server", "both")

    @property
    def runs_worker(self) -> bool:
        return self.mode in ("worker", "both")
