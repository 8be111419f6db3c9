"""Idle shutdown for the local server.

The timer restarts on every HTTP request; when it fires, the server
begins its graceful shutdown.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from typing import Any

logger = logging.getLogger(__name__)


class IdleTimer:
    """Call ``on_expire`` once after ``timeout`` seconds without activity.

    A timeout of 0 disables the timer.
    """

    def __init__(self, timeout: float, on_expire: Callable[[], None]) -> None:
        self.timeout = timeout
        self._on_expire = on_expire
        self._lock = threading.Lock()
        self._timer: threading.Timer | None = None
        self._stopped = False
        self._expired = False

    @property
    def expired(self) -> bool:
        return self._expired

    def start(self) -> None:
        self.reset()

    def reset(self) -> None:
        """Restart the countdown."""
        if self.timeout <= 0:
            return
        with self._lock:
            if self._stopped or self._expired:
                return
            if self._timer is not None:
                self._timer.cancel()
            self._timer = threading.Timer(self.timeout, self._fire)
            self._timer.daemon = True
            self._timer.start()

    def stop(self) -> None:
        with self._lock:
            self._stopped = True
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None

    def _fire(self) -> None:
        with self._lock:
            if self._stopped or self._expired:
                return
            # A timer replaced by reset() may already be running its callback
            if threading.current_thread() is not self._timer:
                return
            self._expired = True
            self._timer = None
        logger.info(f"No requests for {self.timeout:g}s, shutting down")
        self._on_expire()


class IdleTimeoutMiddleware:
    """ASGI middleware that resets an IdleTimer on every HTTP request."""

    def __init__(self, app: Any, idle_timer: IdleTimer) -> None:
        self.app = app
        self.idle_timer = idle_timer

    async def __call__(self, scope: Any, receive: Any, send: Any) -> None:
        if scope["type"] in ("http", "websocket"):
            self.idle_timer.reset()
        await self.app(scope, receive, send)
