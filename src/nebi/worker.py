"""Background job worker.

Jobs live in the ``jobs`` table; the worker thread claims pending rows
in insertion order and runs the handler registered for their kind.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from collections.abc import Callable
from datetime import datetime, timezone
from typing import Any

from nebi._types import format_timestamp

logger = logging.getLogger(__name__)

JobHandler = Callable[[dict[str, Any]], None]

_HANDLERS: dict[str, JobHandler] = {}


def register_handler(kind: str, handler: JobHandler) -> None:
    """Register the function that runs jobs of ``kind``."""
    _HANDLERS[kind] = handler


def unregister_handler(kind: str) -> None:
    _HANDLERS.pop(kind, None)


def _now() -> str:
    return format_timestamp(datetime.now(timezone.utc))


class JobStore:
    """Thread-safe access to the jobs table."""

    def __init__(self, conn: sqlite3.Connection) -> None:
        self.conn = conn
        self._lock = threading.Lock()

    def enqueue(self, kind: str, payload: dict[str, Any] | None = None) -> dict[str, Any]:
        with self._lock:
            cur = self.conn.execute(
                "INSERT INTO jobs (kind, payload, created_at) VALUES (?, ?, ?)",
                (kind, json.dumps(payload or {}), _now()),
            )
            self.conn.commit()
            job_id = cur.lastrowid
        job = self.get(job_id)
        if job is None:
            raise RuntimeError(f"Job {job_id} vanished right after insert")
        return job

    def get(self, job_id: int) -> dict[str, Any] | None:
        with self._lock:
            row = self.conn.execute("SELECT * FROM jobs WHERE id = ?", (job_id,)).fetchone()
        return _row_to_dict(row) if row else None

    def list(self, status: str | None = None, limit: int = 100) -> list[dict[str, Any]]:
        with self._lock:
            if status:
                rows = self.conn.execute(
                    "SELECT * FROM jobs WHERE status = ? ORDER BY id DESC LIMIT ?",
                    (status, limit),
                ).fetchall()
            else:
                rows = self.conn.execute(
                    "SELECT * FROM jobs ORDER BY id DESC LIMIT ?", (limit,)
                ).fetchall()
        return [_row_to_dict(r) for r in rows]

    def claim_next(self) -> dict[str, Any] | None:
        """Mark the oldest pending job as running and return it."""
        with self._lock:
            row = self.conn.execute(
                "SELECT * FROM jobs WHERE status = 'pending' ORDER BY id LIMIT 1"
            ).fetchone()
            if row is None:
                return None
            self.conn.execute(
                "UPDATE jobs SET status = 'running' WHERE id = ?", (row["id"],)
            )
            self.conn.commit()
        job = _row_to_dict(row)
        job["status"] = "running"
        return job

    def finish(self, job_id: int, error: str | None = None) -> None:
        status = "failed" if error else "completed"
        with self._lock:
            self.conn.execute(
                "UPDATE jobs SET status = ?, error = ?, finished_at = ? WHERE id = ?",
                (status, error, _now(), job_id),
            )
            self.conn.commit()


def _row_to_dict(row: sqlite3.Row) -> dict[str, Any]:
    job = dict(row)
    try:
        job["payload"] = json.loads(job.get("payload") or "{}")
    except json.JSONDecodeError:
        job["payload"] = {}
    return job


class Worker:
    """Daemon thread draining the job queue until stopped."""

    def __init__(self, store: JobStore, poll_interval: float = 0.5) -> None:
        self.store = store
        self.poll_interval = poll_interval
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.is_running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="nebi-worker", daemon=True)
        self._thread.start()
        logger.info("Worker started")

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None
        logger.info("Worker stopped")

    def run_once(self) -> bool:
        """Run a single pending job. Returns False if the queue was empty."""
        job = self.store.claim_next()
        if job is None:
            return False
        handler = _HANDLERS.get(job["kind"])
        if handler is None:
            logger.warning(f"No handler for job kind {job['kind']!r} (id={job['id']})")
            self.store.finish(job["id"], error=f"no handler for kind {job['kind']!r}")
            return True
        try:
            handler(job["payload"])
        except Exception as e:
            logger.exception(f"Job {job['id']} ({job['kind']}) failed")
            self.store.finish(job["id"], error=str(e) or type(e).__name__)
        else:
            self.store.finish(job["id"])
        return True

    def _run(self) -> None:
        while not self._stop.is_set():
            try:
                if self.run_once():
                    continue
            except sqlite3.Error:
                logger.exception("Worker failed to read the job queue")
            self._stop.wait(self.poll_interval)
