"""Loopback port selection for a freshly spawned server."""

from __future__ import annotations

import logging

from nebi._types import LOOPBACK_HOST
from nebi._utils import can_bind
from nebi.errors import PortExhaustedError

logger = logging.getLogger(__name__)

DEFAULT_BASE_PORT = 8460
DEFAULT_PORT_SPAN = 40


def pick_port(start: int = DEFAULT_BASE_PORT, span: int = DEFAULT_PORT_SPAN) -> int:
    """Return the first port in ``[start, start + span)`` that binds on loopback.

    The probe listener is closed immediately; the spawned server rebinds
    the port a moment later. If another process wins that race the server
    fails to start and the supervisor reports a readiness timeout.
    """
    for port in range(start, start + span):
        if can_bind(port, LOOPBACK_HOST):
            return port
        logger.debug(f"Port {port} is in use")
    raise PortExhaustedError(start, span)
