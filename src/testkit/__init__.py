"""testkit - helpers for asynchronous end-to-end tests.

This package provides an embeddable mock HTTP/HTTPS server (with proxy and
CONNECT tunneling modes) that records requests and answers them with
pluggable handlers, plus the async primitives used to drive it: a
closeable blocking queue, a FIFO mutex and callback-to-future adapters.
"""

from testkit.blocking_queue import BlockingQueue
from testkit.bridge import (
    PromiseAndErrorValueCallback,
    PromiseAndValueCallback,
    event_sink,
    promisify,
    promisify_single,
    read_all,
    with_closeable,
)
from testkit.certs import SelfSignedCertificate
from testkit.config import CertificateConfig, ServerConfig
from testkit.error import (
    BindError,
    MissingResourceError,
    QueueClosedError,
    ShutdownError,
    TestkitError,
)
from testkit.handlers import (
    TestHttpHandlers,
    chunked_stream,
    network_error,
    respond,
    respond_json,
    sse_stream,
)
from testkit.http_server import ResponseWriter, TestHttpServer, TestHttpServers
from testkit.mutex import Mutex
from testkit.ports import PortAllocator, default_ports
from testkit.types import CapturedRequest, Handler, Headers, SSEItem

__version__ = "0.1.0"

__all__ = [
    # Async primitives
    "BlockingQueue",
    "Mutex",
    # Callback adapters
    "PromiseAndValueCallback",
    "PromiseAndErrorValueCallback",
    "promisify",
    "promisify_single",
    "event_sink",
    "read_all",
    "with_closeable",
    # Errors
    "TestkitError",
    "QueueClosedError",
    "BindError",
    "ShutdownError",
    "MissingResourceError",
    # Configuration (Pydantic models)
    "ServerConfig",
    "CertificateConfig",
    "PortAllocator",
    "default_ports",
    # Server
    "TestHttpServer",
    "TestHttpServers",
    "ResponseWriter",
    "CapturedRequest",
    "SelfSignedCertificate",
    "Headers",
    "Handler",
    # Handlers
    "TestHttpHandlers",
    "SSEItem",
    "respond",
    "respond_json",
    "chunked_stream",
    "sse_stream",
    "network_error",
]
