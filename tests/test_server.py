"""Tests for nebi.server.

Tests cover:
- Health endpoint (no auth)
- Auth token enforcement on protected endpoints
- Shutdown endpoint
- Jobs endpoints
- Idle timer wiring in local mode
- In-process start/stop and bind failures
- The server process lifecycle: state file, graceful shutdown, exit codes
"""

import os
import signal
import socket
import subprocess
import time

import httpx
import pytest
from starlette.testclient import TestClient

from nebi import __version__, db
from nebi._utils import health_check, is_port_open
from nebi.config import ServerConfig
from nebi.server import LocalServer, main
from nebi.state import read_state
from nebi.worker import JobStore

from helpers import SERVER_COMMAND, free_port

_TEST_TOKEN = "nebi_local_test-secret-token"
_AUTH = {"Authorization": f"Bearer {_TEST_TOKEN}"}


@pytest.fixture
def config():
    return ServerConfig.from_env().with_overrides(port=free_port(), local=True)


@pytest.fixture
def job_store():
    conn = db.connect("sqlite", ":memory:")
    yield JobStore(conn)
    conn.close()


@pytest.fixture
def server(config, job_store):
    srv = LocalServer(config, token=_TEST_TOKEN, job_store=job_store)
    yield srv
    if srv.idle_timer is not None:
        srv.idle_timer.stop()


@pytest.fixture
def client(server):
    return TestClient(server.app)


class TestServerCreation:
    def test_local_mode_has_idle_timer(self, server, config):
        assert server.idle_timer is not None
        assert server.idle_timer.timeout == config.idle_timeout

    def test_zero_idle_timeout_disables_timer(self, config):
        srv = LocalServer(config.with_overrides(idle_timeout=0), token=_TEST_TOKEN)
        assert srv.idle_timer is None

    def test_non_local_has_no_idle_timer(self, config):
        srv = LocalServer(config.with_overrides(local=False), token=_TEST_TOKEN)
        assert srv.idle_timer is None

    def test_url(self, server, config):
        assert server.url == f"http://127.0.0.1:{config.port}"


class TestHealthEndpoint:
    def test_health_without_auth(self, client):
        resp = client.get("/api/v1/health")
        assert resp.status_code == 200
        data = resp.json()
        assert data["status"] == "ok"
        assert data["version"] == __version__
        assert data["mode"] == "both"
        assert data["local"] is True
        assert data["pid"] == os.getpid()

    def test_health_resets_idle_timer(self, server, client):
        server.idle_timer.start()
        with pytest.MonkeyPatch.context() as mp:
            calls = []
            mp.setattr(server.idle_timer, "reset", lambda: calls.append(1))
            client.get("/api/v1/health")
        assert calls == [1]


class TestAuth:
    @pytest.mark.parametrize(
        "headers",
        [
            {},
            {"Authorization": "Bearer wrong-token"},
            {"Authorization": f"Basic {_TEST_TOKEN}"},
            {"Authorization": "Bearer"},
        ],
    )
    def test_rejected(self, client, headers):
        resp = client.get("/api/v1/jobs", headers=headers)
        assert resp.status_code == 401
        assert resp.json() == {"error": "unauthorized"}

    def test_accepted(self, client):
        assert client.get("/api/v1/jobs", headers=_AUTH).status_code == 200

    def test_scheme_is_case_insensitive(self, client):
        headers = {"Authorization": f"bearer {_TEST_TOKEN}"}
        assert client.get("/api/v1/jobs", headers=headers).status_code == 200

    def test_server_without_token_rejects_everything(self, config, job_store):
        srv = LocalServer(config.with_overrides(local=False), token=None, job_store=job_store)
        client = TestClient(srv.app)
        assert client.get("/api/v1/jobs", headers=_AUTH).status_code == 401
        assert client.get("/api/v1/health").status_code == 200


class TestShutdownEndpoint:
    def test_requires_auth(self, server, client):
        resp = client.post("/api/v1/admin/shutdown")
        assert resp.status_code == 401
        assert not server.wait_for_shutdown_request(0)

    def test_requests_shutdown(self, server, client):
        resp = client.post("/api/v1/admin/shutdown", headers=_AUTH)
        assert resp.status_code == 200
        assert resp.json() == {"status": "shutting_down"}
        assert server.wait_for_shutdown_request(0)


class TestJobsEndpoints:
    def test_create_and_get(self, client):
        resp = client.post(
            "/api/v1/jobs", json={"kind": "install", "payload": {"env": "demo"}}, headers=_AUTH
        )
        assert resp.status_code == 201
        job = resp.json()
        assert job["kind"] == "install"
        assert job["payload"] == {"env": "demo"}
        assert job["status"] == "pending"

        resp = client.get(f"/api/v1/jobs/{job['id']}", headers=_AUTH)
        assert resp.status_code == 200
        assert resp.json()["id"] == job["id"]

    def test_list(self, client):
        for kind in ("a", "b"):
            client.post("/api/v1/jobs", json={"kind": kind}, headers=_AUTH)
        resp = client.get("/api/v1/jobs", headers=_AUTH)
        assert [j["kind"] for j in resp.json()] == ["b", "a"]
        resp = client.get("/api/v1/jobs?status=completed", headers=_AUTH)
        assert resp.json() == []

    def test_missing_job(self, client):
        assert client.get("/api/v1/jobs/42", headers=_AUTH).status_code == 404

    @pytest.mark.parametrize(
        "body",
        [{}, {"kind": 3}, {"kind": "x", "payload": [1, 2]}, ["kind"]],
    )
    def test_invalid_body(self, client, body):
        assert client.post("/api/v1/jobs", json=body, headers=_AUTH).status_code == 400

    def test_invalid_json(self, client):
        resp = client.post(
            "/api/v1/jobs",
            content=b"{not json",
            headers={**_AUTH, "Content-Type": "application/json"},
        )
        assert resp.status_code == 400

    def test_bad_limit(self, client):
        assert client.get("/api/v1/jobs?limit=many", headers=_AUTH).status_code == 400

    def test_no_store(self, config):
        srv = LocalServer(config.with_overrides(idle_timeout=0), token=_TEST_TOKEN)
        client = TestClient(srv.app)
        assert client.get("/api/v1/jobs", headers=_AUTH).status_code == 503


class TestStartStop:
    def test_serves_on_loopback(self, config, job_store):
        srv = LocalServer(config.with_overrides(idle_timeout=0), token=_TEST_TOKEN, job_store=job_store)
        srv.start()
        try:
            assert srv.is_running
            data = health_check(srv.url)
            assert data is not None
            assert data["local"] is True
        finally:
            srv.stop()
        assert not srv.is_running
        assert not is_port_open(config.port, timeout=0.2)

    def test_bind_failure(self, config):
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
            s.bind(("127.0.0.1", config.port))
            s.listen()
            srv = LocalServer(config.with_overrides(idle_timeout=0), token=_TEST_TOKEN)
            with pytest.raises(OSError):
                srv.start()
            assert not srv.is_running

    def test_idle_expiry_requests_shutdown(self, config):
        srv = LocalServer(config.with_overrides(idle_timeout=0.3), token=_TEST_TOKEN)
        srv.start()
        try:
            assert srv.wait_for_shutdown_request(5)
        finally:
            srv.stop()


class TestMain:
    def test_local_requires_port(self):
        with pytest.raises(SystemExit) as exc_info:
            main(["--local"])
        assert exc_info.value.code == 2

    def test_rejects_unknown_mode(self):
        with pytest.raises(SystemExit):
            main(["--mode", "daemon"])

    def test_invalid_environment(self, monkeypatch):
        monkeypatch.setenv("NEBI_IDLE_TIMEOUT", "later")
        assert main(["--port", str(free_port())]) == 1

    def test_local_worker_rejected(self, paths):
        assert main(["--local", "--port", str(free_port()), "--mode", "worker"]) == 1
        assert not paths.state_file.exists()


def _start_process(port, *extra, env=None):
    return subprocess.Popen(
        SERVER_COMMAND + ["--port", str(port), "--local", *extra],
        env=env,
        stdout=subprocess.PIPE,
        stderr=subprocess.STDOUT,
        text=True,
    )


def _wait_for_state(path, timeout=15.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        state = read_state(path)
        if state is not None:
            return state
        time.sleep(0.1)
    raise AssertionError(f"state file {path} was not written")


@pytest.fixture
def process_port():
    return free_port()


@pytest.fixture
def server_process(process_port):
    proc = _start_process(process_port)
    yield proc
    if proc.poll() is None:
        proc.kill()
    proc.communicate()


class TestServerProcess:
    def test_writes_state_after_listening(self, server_process, process_port, paths):
        state = _wait_for_state(paths.state_file)
        assert state.pid == server_process.pid
        assert state.port == process_port
        assert state.token.startswith("nebi_local_")
        assert is_port_open(process_port)
        assert paths.database.exists()
        assert oct(paths.state_file.stat().st_mode & 0o777) == "0o600"

    def test_shutdown_endpoint_removes_state(self, server_process, paths):
        state = _wait_for_state(paths.state_file)
        client_headers = {"Authorization": f"Bearer {state.token}"}
        resp = httpx.post(f"{state.url}/api/v1/admin/shutdown", headers=client_headers)
        assert resp.status_code == 200
        assert server_process.wait(timeout=15) == 0
        assert not paths.state_file.exists()

    def test_sigterm_removes_state(self, server_process, paths):
        _wait_for_state(paths.state_file)
        server_process.send_signal(signal.SIGTERM)
        assert server_process.wait(timeout=15) == 0
        assert not paths.state_file.exists()

    def test_rejects_wrong_token(self, server_process, paths):
        state = _wait_for_state(paths.state_file)
        resp = httpx.post(
            f"{state.url}/api/v1/admin/shutdown",
            headers={"Authorization": "Bearer nebi_local_wrong"},
        )
        assert resp.status_code == 401
        assert server_process.poll() is None

    def test_bind_failure_exits_nonzero(self, paths):
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
            s.bind(("127.0.0.1", 0))
            s.listen()
            port = s.getsockname()[1]
            proc = _start_process(port)
            output, _ = proc.communicate(timeout=15)
        assert proc.returncode == 1
        assert "Failed to bind" in output
        assert not paths.state_file.exists()

    def test_idle_timeout_exits(self, process_port, paths):
        env = {**os.environ, "NEBI_IDLE_TIMEOUT": "1"}
        proc = _start_process(process_port, env=env)
        try:
            _wait_for_state(paths.state_file)
            assert proc.wait(timeout=15) == 0
        finally:
            if proc.poll() is None:
                proc.kill()
            proc.communicate()
        assert not paths.state_file.exists()

    def test_leaves_foreign_state_file(self, server_process, paths):
        """A server never deletes a state file that records another pid."""
        from datetime import datetime, timezone

        from nebi._types import ServerState
        from nebi.state import write_state

        state = _wait_for_state(paths.state_file)
        write_state(
            paths.state_file,
            ServerState(
                pid=os.getpid(), port=state.port, token="nebi_local_other",
                started_at=datetime.now(timezone.utc),
            ),
        )
        server_process.send_signal(signal.SIGTERM)
        server_process.wait(timeout=15)
        assert read_state(paths.state_file).token == "nebi_local_other"
