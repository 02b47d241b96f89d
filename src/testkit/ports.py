"""Port allocation for test servers.

Every server started through the same allocator gets a port higher than
the last one handed out, so ports are never knowingly reused while other
servers in the process may still be alive.
"""

from __future__ import annotations

from testkit.config import DEFAULT_FIRST_PORT


class PortAllocator:
    """Monotonically increasing source of candidate port numbers."""

    __slots__ = ("_first_port", "_next_port")

    def __init__(self, first_port: int = DEFAULT_FIRST_PORT) -> None:
        self._check(first_port)
        self._first_port = first_port
        self._next_port = first_port

    @staticmethod
    def _check(port: int) -> None:
        if not 0 < port <= 65535:
            raise ValueError(f"Port out of range: {port}")

    def next(self) -> int:
        """Return the next candidate port and advance the counter."""
        port = self._next_port
        self._check(port)
        self._next_port += 1
        return port

    def peek(self) -> int:
        """Return the port ``next()`` would hand out, without advancing."""
        return self._next_port

    def reset(self, first_port: int | None = None) -> None:
        """Start counting again from ``first_port`` (default: the original first port)."""
        if first_port is not None:
            self._check(first_port)
            self._first_port = first_port
        self._next_port = self._first_port


# Shared by all servers started without an explicit allocator
default_ports = PortAllocator()
