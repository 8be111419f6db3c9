"""nebi server: Starlette + uvicorn, with an optional local mode.

Local mode is what the CLI supervisor spawns. It binds loopback only,
generates a per-process bearer token, writes the state file once the
listener is up, and shuts itself down after a period without requests.

Lifecycle:
    init -> bind (or exit 1) -> start worker -> write state file
    -> serve (each request resets the idle timer)
    -> signal / idle / shutdown request -> graceful shutdown
    -> remove state file -> exit

Endpoints:
    GET  /api/v1/health              → health check (no auth)
    POST /api/v1/admin/shutdown      → graceful shutdown (auth required)
    GET  /api/v1/jobs                → list jobs (auth required)
    POST /api/v1/jobs                → enqueue a job (auth required)
    GET  /api/v1/jobs/{job_id}       → job details (auth required)
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import secrets
import signal
import socket
import sys
import threading
import time
from datetime import datetime, timezone
from typing import Any

import uvicorn
from starlette.applications import Starlette
from starlette.middleware import Middleware
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route

from nebi import __version__
from nebi import db
from nebi._types import ServerState
from nebi._utils import generate_local_token, token_prefix
from nebi.config import RUN_MODES, ServerConfig
from nebi.idle import IdleTimeoutMiddleware, IdleTimer
from nebi.state import remove_state_if_owned, write_state
from nebi.worker import JobStore, Worker

logger = logging.getLogger(__name__)

_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


class LocalServer:
    """HTTP server for the nebi API surface needed by local mode.

    Manages the Starlette app, the uvicorn server thread and the idle
    timer. The caller owns the worker and the state file.

    Args:
        config: Server configuration.
        token: Bearer token accepted by protected endpoints. Protected
            endpoints reject every request when no token is set.
        job_store: Backing store for the jobs endpoints.
    """

    def __init__(
        self,
        config: ServerConfig,
        token: str | None = None,
        job_store: JobStore | None = None,
    ) -> None:
        self.config = config
        self.host = config.host
        self.port = config.port
        self.token = token
        self.job_store = job_store
        self._server: uvicorn.Server | None = None
        self._thread: threading.Thread | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._shutdown_requested = threading.Event()
        self._started_at = datetime.now(timezone.utc)

        self.idle_timer: IdleTimer | None = None
        if config.local and config.idle_timeout > 0:
            self.idle_timer = IdleTimer(config.idle_timeout, self.request_shutdown)

        self._app = self._build_app()

    def _build_app(self) -> Starlette:
        """Build the Starlette application with all routes."""
        routes = [
            Route("/api/v1/health", self._api_health, methods=["GET"]),
            Route("/api/v1/admin/shutdown", self._api_shutdown, methods=["POST"]),
            Route("/api/v1/jobs", self._api_jobs_list, methods=["GET"]),
            Route("/api/v1/jobs", self._api_jobs_create, methods=["POST"]),
            Route("/api/v1/jobs/{job_id:int}", self._api_job_get, methods=["GET"]),
        ]
        middleware = []
        if self.idle_timer is not None:
            middleware.append(Middleware(IdleTimeoutMiddleware, idle_timer=self.idle_timer))
        return Starlette(routes=routes, middleware=middleware)

    @property
    def app(self) -> Starlette:
        return self._app

    # --- Auth ---

    def _check_auth(self, request: Request) -> bool:
        """Check Bearer token authorization."""
        if not self.token:
            return False
        auth = request.headers.get("authorization", "")
        scheme, _, credential = auth.partition(" ")
        if scheme.lower() != "bearer" or not credential:
            return False
        return secrets.compare_digest(credential.strip(), self.token)

    @staticmethod
    def _unauthorized() -> JSONResponse:
        return JSONResponse({"error": "unauthorized"}, status_code=401)

    # --- Handlers ---

    async def _api_health(self, request: Request) -> JSONResponse:
        uptime_seconds = (datetime.now(timezone.utc) - self._started_at).total_seconds()
        return JSONResponse(
            {
                "status": "ok",
                "version": __version__,
                "mode": self.config.mode,
                "local": self.config.local,
                "pid": os.getpid(),
                "uptime": round(uptime_seconds, 1),
            }
        )

    async def _api_shutdown(self, request: Request) -> JSONResponse:
        """Graceful shutdown endpoint (auth required)."""
        if not self._check_auth(request):
            return self._unauthorized()
        logger.info("Shutdown requested via API")
        self.request_shutdown()
        return JSONResponse({"status": "shutting_down"})

    async def _api_jobs_list(self, request: Request) -> JSONResponse:
        if not self._check_auth(request):
            return self._unauthorized()
        if self.job_store is None:
            return JSONResponse({"error": "job queue unavailable"}, status_code=503)
        status = request.query_params.get("status")
        try:
            limit = int(request.query_params.get("limit", "100"))
        except ValueError:
            return JSONResponse({"error": "limit must be an integer"}, status_code=400)
        jobs = await asyncio.to_thread(self.job_store.list, status, limit)
        return JSONResponse(jobs)

    async def _api_jobs_create(self, request: Request) -> JSONResponse:
        if not self._check_auth(request):
            return self._unauthorized()
        if self.job_store is None:
            return JSONResponse({"error": "job queue unavailable"}, status_code=503)
        try:
            body = await request.json()
        except ValueError:
            return JSONResponse({"error": "invalid JSON"}, status_code=400)
        if not isinstance(body, dict) or not isinstance(body.get("kind"), str):
            return JSONResponse({"error": "'kind' is required"}, status_code=400)
        payload = body.get("payload") or {}
        if not isinstance(payload, dict):
            return JSONResponse({"error": "'payload' must be an object"}, status_code=400)
        job = await asyncio.to_thread(self.job_store.enqueue, body["kind"], payload)
        return JSONResponse(job, status_code=201)

    async def _api_job_get(self, request: Request) -> JSONResponse:
        if not self._check_auth(request):
            return self._unauthorized()
        if self.job_store is None:
            return JSONResponse({"error": "job queue unavailable"}, status_code=503)
        job = await asyncio.to_thread(self.job_store.get, request.path_params["job_id"])
        if job is None:
            return JSONResponse({"error": "not found"}, status_code=404)
        return JSONResponse(job)

    # --- Lifecycle ---

    def request_shutdown(self) -> None:
        """Ask the process to shut down (idle timer, API, or signal)."""
        self._shutdown_requested.set()

    def wait_for_shutdown_request(self, timeout: float | None = None) -> bool:
        return self._shutdown_requested.wait(timeout)

    def _bind(self) -> socket.socket:
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        if sys.platform != "win32":
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            sock.bind((self.host, self.port))
            sock.listen(128)
        except OSError:
            sock.close()
            raise
        return sock

    def start(self, timeout: float = 10.0) -> None:
        """Bind the listener and serve from a background thread.

        Returns once uvicorn has finished startup, so connections to
        ``host:port`` are accepted when this returns.

        Raises:
            OSError: the port could not be bound.
            RuntimeError: uvicorn did not start within ``timeout``.
        """
        if self._thread and self._thread.is_alive():
            return

        sock = self._bind()
        config = uvicorn.Config(
            app=self._app,
            log_level="warning",
            access_log=False,
            timeout_graceful_shutdown=5,
        )
        self._server = uvicorn.Server(config)
        server = self._server

        def _run() -> None:
            self._loop = asyncio.new_event_loop()
            asyncio.set_event_loop(self._loop)
            try:
                self._loop.run_until_complete(server.serve(sockets=[sock]))
            finally:
                self._loop.close()

        self._thread = threading.Thread(target=_run, name="nebi-http", daemon=True)
        self._thread.start()

        deadline = time.monotonic() + timeout
        while not server.started:
            if not self._thread.is_alive():
                sock.close()
                raise RuntimeError("HTTP server exited during startup")
            if time.monotonic() >= deadline:
                server.should_exit = True
                raise RuntimeError(f"HTTP server did not start within {timeout:g}s")
            time.sleep(0.05)

        if self.idle_timer is not None:
            self.idle_timer.start()
        logger.info(f"Server listening on {self.host}:{self.port} (local_mode={self.config.local})")

    def stop(self) -> None:
        """Stop the idle timer and the HTTP server."""
        if self.idle_timer is not None:
            self.idle_timer.stop()
        if self._server:
            self._server.should_exit = True
        if self._thread:
            self._thread.join(timeout=10)
            self._thread = None
        self._server = None
        logger.info("HTTP server stopped")

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    @property
    def url(self) -> str:
        return f"http://{self.host}:{self.port}"


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=_LOG_FORMAT,
        stream=sys.stderr,
    )


def run(config: ServerConfig) -> int:
    """Run the server until a signal, an idle timeout or a shutdown request.

    Returns the process exit code.
    """
    try:
        config.validate()
    except ValueError as e:
        logger.error(f"Invalid configuration: {e}")
        return 1

    logger.info(f"Starting nebi server {__version__} (mode={config.mode}, local={config.local})")

    try:
        conn = db.connect(config.database_driver, config.database_dsn)
    except Exception:
        logger.exception(f"Failed to initialize database {config.database_dsn}")
        return 1
    job_store = JobStore(conn)

    token: str | None
    if config.local:
        token = generate_local_token()
        logger.info(f"Local mode enabled (token_prefix={token_prefix(token)})")
    else:
        token = os.environ.get("NEBI_AUTH_TOKEN") or None

    http: LocalServer | None = None
    worker: Worker | None = None
    stop_event = threading.Event()

    def _shutdown(signum: int, frame: Any) -> None:
        logger.info(f"Received signal {signum}, shutting down...")
        stop_event.set()

    # On Windows, only SIGINT and SIGBREAK are supported.
    if sys.platform == "win32":
        signal.signal(signal.SIGBREAK, _shutdown)  # type: ignore[attr-defined]
    else:
        signal.signal(signal.SIGTERM, _shutdown)
    signal.signal(signal.SIGINT, _shutdown)

    state_written = False
    try:
        if config.runs_server:
            http = LocalServer(config, token=token, job_store=job_store)
            try:
                http.start()
            except OSError as e:
                logger.error(f"Failed to bind {config.host}:{config.port}: {e}")
                return 1
            except RuntimeError as e:
                logger.error(str(e))
                return 1

        if config.runs_worker:
            worker = Worker(job_store)
            worker.start()

        if config.local and http is not None and token is not None:
            state = ServerState(
                pid=os.getpid(),
                port=http.port,
                token=token,
                started_at=datetime.now(timezone.utc),
            )
            try:
                write_state(config.state_file, state)
            except OSError as e:
                logger.error(f"Failed to write state file {config.state_file}: {e}")
                return 1
            state_written = True
            logger.info(f"State file written: {config.state_file}")

        while not stop_event.is_set():
            if http is not None:
                if http.wait_for_shutdown_request(0.2):
                    break
                if not http.is_running:
                    logger.error("HTTP server exited unexpectedly")
                    return 1
            else:
                stop_event.wait(0.2)
        return 0
    finally:
        logger.info("Shutting down...")
        if http is not None:
            http.stop()
        if worker is not None:
            worker.stop()
        conn.close()
        if state_written and remove_state_if_owned(config.state_file, os.getpid()):
            logger.info(f"State file removed: {config.state_file}")
        logger.info("nebi server exited")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="nebi-server", description="nebi server")
    parser.add_argument("--port", "-p", type=int, default=None, help="Port to bind to")
    parser.add_argument(
        "--mode",
        "-m",
        choices=RUN_MODES,
        default="both",
        help="Run mode: server (API only), worker (worker only), or both",
    )
    parser.add_argument(
        "--local",
        action="store_true",
        help="Local mode: loopback only, generated token, state file, idle shutdown",
    )
    parser.add_argument(
        "--idle-timeout",
        type=float,
        default=None,
        help="Seconds without requests before a local server exits (0 disables)",
    )
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    if args.local and args.port is None:
        build_parser().error("--port is required with --local")

    try:
        base = ServerConfig.from_env()
    except ValueError as e:
        _configure_logging("INFO")
        logger.error(f"Invalid configuration: {e}")
        return 1

    config = base.with_overrides(
        port=args.port,
        mode=args.mode,
        local=args.local,
        idle_timeout=args.idle_timeout,
    )
    _configure_logging(config.log_level)
    return run(config)


if __name__ == "__main__":
    sys.exit(main())
