"""Error types raised by testkit."""

from __future__ import annotations


class TestkitError(Exception):
    """Base class for all testkit errors."""

    __test__ = False


class QueueClosedError(TestkitError):
    """Raised by ``BlockingQueue.take()`` once the queue is closed and drained.

    This is the normal end-of-stream signal, not a failure.
    """

    def __init__(self, message: str = "queue was closed") -> None:
        super().__init__(message)


class BindError(TestkitError):
    """Raised when a server cannot listen on its port."""

    def __init__(self, port: int, message: str) -> None:
        super().__init__(f"Cannot listen on port {port}: {message}")
        self.port = port


class ShutdownError(TestkitError):
    """Raised when a server's listening socket fails to shut down."""


class MissingResourceError(TestkitError):
    """Raised by ``with_closeable`` when there is no entity to manage."""
