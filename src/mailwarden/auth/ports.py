"""Callback port selection.

Probes a fixed, ordered list of ports and returns the first that can be
bound. First-fit keeps the redirect URL stable between runs.

The redirect URL names ``localhost``, which browsers may resolve to either
``127.0.0.1`` or ``::1``. A port counts as free only when both loopback
addresses can be bound, and the listener holds both.
"""

import errno
import logging
import os
import socket
from collections.abc import Iterable

from mailwarden.auth.errors import NoPortAvailable

logger = logging.getLogger(__name__)

OAUTH_PORTS: tuple[int, ...] = (3000, 3001, 3002)
IPV6_LOOPBACK = "::1"

# ::1 is skipped when the host has no IPv6 loopback configured.
_NO_IPV6 = frozenset({errno.EADDRNOTAVAIL, errno.EAFNOSUPPORT})


def _listen(family: socket.AddressFamily, host: str, port: int, backlog: int) -> socket.socket:
    sock = socket.socket(family, socket.SOCK_STREAM)
    try:
        if os.name == "posix":
            # TIME_WAIT leftovers do not block the bind; a live listener still does.
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        if family == socket.AF_INET6:
            sock.setsockopt(socket.IPPROTO_IPV6, socket.IPV6_V6ONLY, 1)
        sock.bind((host, port))
        sock.listen(backlog)
    except OSError:
        sock.close()
        raise
    return sock


def bind_loopback(port: int, host: str = "127.0.0.1", backlog: int = 16) -> list[socket.socket]:
    """Bind listening sockets on *host* and on ``::1`` for *port*.

    Raises the first ``OSError`` after closing anything already bound.
    """
    sockets = [_listen(socket.AF_INET, host, port, backlog)]
    if not socket.has_ipv6:
        return sockets
    try:
        sockets.append(_listen(socket.AF_INET6, IPV6_LOOPBACK, port, backlog))
    except OSError as e:
        if e.errno in _NO_IPV6:
            logger.debug("IPv6 loopback unavailable, listening on %s only", host)
            return sockets
        for s in sockets:
            s.close()
        raise
    return sockets


def is_port_available(port: int, host: str = "127.0.0.1") -> bool:
    """Return True if a listener could be bound on *port* right now."""
    try:
        sockets = bind_loopback(port, host, backlog=1)
    except OSError:
        return False
    for s in sockets:
        s.close()
    return True


def select_port(candidates: Iterable[int] = OAUTH_PORTS, host: str = "127.0.0.1") -> int:
    """Return the first free port from *candidates*, probing in order.

    The probe sockets are closed before returning, so nothing stays bound.

    Raises:
        NoPortAvailable: every candidate is already bound.
    """
    candidates = list(candidates)
    for port in candidates:
        if is_port_available(port, host):
            return port
        logger.debug("Callback port %d busy", port)
    raise NoPortAvailable(candidates)
