"""Embedded HTTP/HTTPS server for end-to-end tests.

A ``TestHttpServer`` listens on a local port, records every request it
receives in a ``BlockingQueue`` and answers it with a handler chosen by
method and path. Test code never touches aiohttp directly: it registers
handlers from ``testkit.handlers`` and awaits ``next_request()``.

Example:
    ```python
    async with await TestHttpServer.start() as server:
        server.for_method_and_path("get", "/flags", respond_json({"on": True}))
        ...  # point the code under test at server.url
        request = await server.next_request()
        assert request.path == "/flags"
    ```

Secure servers use a freshly generated self-signed certificate, exposed as
``server.certificate`` so clients can trust it. Proxy servers relay
absolute-URL requests and CONNECT tunnels to their real targets instead of
running handlers; see ``testkit.proxy``.
"""

from __future__ import annotations

import asyncio
import contextlib
import errno
import logging
import ssl
import tempfile
from pathlib import Path
from typing import Any, Mapping

from aiohttp import hdrs, web

from testkit.blocking_queue import BlockingQueue
from testkit.bridge import read_all
from testkit.certs import SelfSignedCertificate, generate
from testkit.config import CertificateConfig, ServerConfig
from testkit.error import BindError, ShutdownError
from testkit.handlers import respond
from testkit.ports import PortAllocator, default_ports
from testkit.proxy import ProxyListener
from testkit.types import (
    BODY_METHODS,
    CapturedRequest,
    Handler,
    Headers,
    join_headers,
)

logger = logging.getLogger(__name__)


class ResponseWriter:
    """Writes the response to one request; passed to every handler.

    Wraps an aiohttp ``StreamResponse`` so handlers can send the status and
    headers first and the body later, in as many pieces as they like.
    """

    __slots__ = ("_request", "_response", "_ended", "_aborted")

    def __init__(self, request: web.BaseRequest) -> None:
        self._request = request
        self._response: web.StreamResponse | None = None
        self._ended = False
        self._aborted = False

    @property
    def headers_sent(self) -> bool:
        """True once ``write_head()`` has sent the status line and headers."""
        return self._response is not None and self._response.prepared

    @property
    def ended(self) -> bool:
        """True once the response is complete or the connection was aborted."""
        return self._ended or self._aborted

    async def write_head(
        self,
        status: int,
        headers: Headers | None = None,
        *,
        chunked: bool = False,
        content_length: int | None = None,
    ) -> None:
        """Send the status line and headers.

        Args:
            status: HTTP status code
            headers: Response headers
            chunked: Force chunked transfer encoding so every ``write()``
                reaches the client immediately
            content_length: Body length, unless ``headers`` already set one
        """
        if self._response is not None:
            raise RuntimeError("Response headers were already sent")
        response = web.StreamResponse(status=status, headers=headers)
        if chunked:
            response.enable_chunked_encoding()
        elif content_length is not None and hdrs.CONTENT_LENGTH not in response.headers:
            response.content_length = content_length
        self._response = response
        await response.prepare(self._request)

    async def write(self, chunk: str | bytes) -> None:
        """Send part of the body, sending a 200 status first if needed."""
        if self._response is None:
            await self.write_head(200)
        if isinstance(chunk, str):
            chunk = chunk.encode("utf-8")
        if chunk:
            await self._response.write(chunk)

    async def end(self) -> None:
        """Finish the response. Calling it again does nothing."""
        if self._ended or self._aborted:
            return
        self._ended = True
        if self._response is None:
            await self.write_head(200)
        await self._response.write_eof()

    def abort(self) -> None:
        """Drop the connection without finishing (or starting) the response."""
        self._aborted = True
        transport = self._request.transport
        if transport is not None:
            transport.abort()

    def finish(self) -> web.StreamResponse:
        """Return the response for aiohttp once the handler has returned."""
        if self._response is None:
            if not self._aborted:
                logger.warning(
                    "Handler for %s %s did not write a response",
                    self._request.method,
                    self._request.raw_path,
                )
                return web.Response(status=500)
            return web.StreamResponse()
        self._ended = True
        return self._response


def _server_ssl_context(certificate: SelfSignedCertificate) -> ssl.SSLContext:
    context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
    # load_cert_chain only reads from files
    with tempfile.TemporaryDirectory() as tmp:
        cert_path = Path(tmp) / "cert.pem"
        key_path = Path(tmp) / "key.pem"
        cert_path.write_text(certificate.cert)
        key_path.write_text(certificate.private_key)
        context.load_cert_chain(cert_path, key_path)
    return context


class TestHttpServer:
    """A local HTTP or HTTPS server that records requests and runs handlers.

    Attributes:
        url: Base URL, e.g. ``http://localhost:8000``
        hostname: Host name used in ``url``
        port: Port the server listens on
        certificate: PEM certificate of a secure server, else None
        requests: Queue of every request received, in arrival order
    """

    __test__ = False

    def __init__(
        self,
        *,
        proxy: bool = False,
        config: ServerConfig | None = None,
        ports: PortAllocator | None = None,
        certificate: SelfSignedCertificate | None = None,
    ) -> None:
        """Create a server; use the ``start*`` class methods instead.

        Args:
            proxy: Relay requests to their targets instead of running handlers
            config: Server options
            ports: Allocator for auto-assigned ports
            certificate: Key and certificate; makes the server secure
        """
        self.config = config or ServerConfig()
        self.hostname = self.config.hostname
        self.port = 0
        self.url = ""
        self.certificate = certificate.cert if certificate is not None else None
        self.requests: BlockingQueue[CapturedRequest] = BlockingQueue()

        self._ports = ports if ports is not None else default_ports
        self._ssl_context = (
            _server_ssl_context(certificate) if certificate is not None else None
        )
        self._proxy = ProxyListener(self._record) if proxy else None
        self._handlers: list[tuple[str, str, Handler]] = []
        self._default_handler: Handler = respond(404)
        self._count = 0
        self._responses: list[ResponseWriter] = []
        self._handler_tasks: set[asyncio.Task[Any]] = set()
        self._runner: web.ServerRunner | None = None
        self._closed = False
        self._close_task: asyncio.Task[None] | None = None
        self._shutdown: asyncio.Future[None] | None = None

    @classmethod
    async def start(cls, config: ServerConfig | None = None) -> "TestHttpServer":
        """Start a plain HTTP server."""
        return await TestHttpServers().start(config)

    @classmethod
    async def start_secure(cls, config: ServerConfig | None = None) -> "TestHttpServer":
        """Start an HTTPS server with a self-signed certificate."""
        return await TestHttpServers().start_secure(config)

    @classmethod
    async def start_proxy(cls, config: ServerConfig | None = None) -> "TestHttpServer":
        """Start an HTTP proxy server."""
        return await TestHttpServers().start_proxy(config)

    @classmethod
    async def start_secure_proxy(
        cls, config: ServerConfig | None = None
    ) -> "TestHttpServer":
        """Start a proxy server that clients reach over HTTPS."""
        return await TestHttpServers().start_secure_proxy(config)

    @property
    def secure(self) -> bool:
        return self._ssl_context is not None

    @property
    def closed(self) -> bool:
        return self._closed

    async def next_request(self) -> CapturedRequest:
        """Wait for the next recorded request.

        Raises:
            QueueClosedError: If the server is closed and every request
                has been taken
        """
        return await self.requests.take()

    def request_count(self) -> int:
        """Number of requests received so far."""
        return self._count

    def by_default(self, handler: Handler) -> "TestHttpServer":
        """Use ``handler`` for requests no other handler matches."""
        self._default_handler = handler
        return self

    def for_method_and_path(
        self, method: str, path: str, handler: Handler
    ) -> "TestHttpServer":
        """Use ``handler`` for requests with this method and exact path.

        A later registration for the same method and path takes precedence.
        """
        self._handlers.insert(0, (method.lower(), path, handler))
        return self

    def close(self) -> asyncio.Task[None]:
        """Start closing the server without waiting; errors are ignored.

        Returns:
            The task doing the close, which never raises
        """
        if self._close_task is None:
            self._close_task = asyncio.ensure_future(self._close_quietly())
        return self._close_task

    async def _close_quietly(self) -> None:
        try:
            await self.close_and_wait()
        except Exception as e:
            logger.debug("Ignoring error while closing %s: %s", self.url, e)

    async def close_and_wait(self) -> None:
        """Close the server and wait until it stops listening.

        Responses still in progress are ended, handlers still running are
        cancelled and anyone waiting in ``next_request()`` gets
        ``QueueClosedError``.

        Raises:
            ShutdownError: If the listening socket could not be shut down
        """
        if self._shutdown is None:
            self._closed = True
            self._shutdown = asyncio.ensure_future(
                self._shut_down(asyncio.current_task())
            )
        # A caller cancelled while waiting must not abort the shutdown itself
        await asyncio.shield(self._shutdown)

    async def _shut_down(self, caller: asyncio.Task[Any] | None) -> None:
        # In case any handlers didn't end their responses
        for response in list(self._responses):
            try:
                await response.end()
            except (ConnectionError, RuntimeError) as e:
                logger.debug("Could not end response: %s", e)
        self.requests.close()

        for task in list(self._handler_tasks):
            if task is not caller:
                task.cancel()

        try:
            await self._stop_listening()
        except Exception as e:
            raise ShutdownError(f"Error while closing {self.url}: {e}") from e
        logger.info("Test server %s closed", self.url)

    async def _stop_listening(self) -> None:
        if self._proxy is not None:
            await self._proxy.stop()
        elif self._runner is not None:
            await self._runner.cleanup()
            self._runner = None

    async def __aenter__(self) -> "TestHttpServer":
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.close_and_wait()

    async def _start_instance(self) -> None:
        """Listen on the configured port, or on the first free allocated one."""
        fixed_port = self.config.port
        while True:
            port = fixed_port if fixed_port is not None else self._ports.next()
            try:
                await self._listen(port)
            except OSError as e:
                if fixed_port is None and e.errno == errno.EADDRINUSE:
                    logger.debug("Port %d is in use, trying the next one", port)
                    continue
                await self._stop_listening()
                raise BindError(port, str(e)) from e
            break

        self.port = port
        scheme = "https" if self.secure else "http"
        self.url = f"{scheme}://{self.hostname}:{port}"
        logger.info(
            "Test %s listening on %s",
            "proxy" if self._proxy is not None else "server",
            self.url,
        )

    async def _listen(self, port: int) -> None:
        if self._proxy is not None:
            await self._proxy.start(self.config.host, port, self._ssl_context)
            return

        if self._runner is None:
            self._runner = web.ServerRunner(
                web.Server(self._handle_request),
                shutdown_timeout=self.config.shutdown_timeout,
            )
            await self._runner.setup()
        site = web.TCPSite(
            self._runner, self.config.host, port, ssl_context=self._ssl_context
        )
        try:
            await site.start()
        except OSError:
            with contextlib.suppress(RuntimeError):
                await site.stop()
            raise

    def _record(
        self,
        method: str,
        path: str,
        headers: Mapping[str, str],
        body: str | None,
    ) -> CapturedRequest:
        """Count a request and add it to the request queue."""
        request = CapturedRequest(
            method=method.lower(),
            path=path,
            headers=dict(headers),
            body=body,
        )
        self._count += 1
        self.requests.add(request)
        logger.debug("Captured %s %s on %s", request.method, request.path, self.url)
        return request

    def _match(self, request: CapturedRequest) -> Handler:
        for method, path, handler in list(self._handlers):
            if request.method == method and request.path == path:
                return handler
        return self._default_handler

    async def _handle_request(self, request: web.BaseRequest) -> web.StreamResponse:
        task = asyncio.current_task()
        if task is not None:
            self._handler_tasks.add(task)
        try:
            method = request.method.lower()
            body = await read_all(request.content) if method in BODY_METHODS else None
            headers = join_headers(request.headers.items())
            captured = self._record(method, request.raw_path, headers, body)

            response = ResponseWriter(request)
            self._responses.append(response)
            try:
                await self._match(captured)(captured, response)
            finally:
                self._responses.remove(response)
            return response.finish()
        finally:
            self._handler_tasks.discard(task)

    def __repr__(self) -> str:
        state = "closed" if self._closed else "open"
        return f"<TestHttpServer {self.url or 'not listening'} {state}>"


class TestHttpServers:
    """Factory for test servers sharing one port allocator.

    Example:
        ```python
        servers = TestHttpServers(PortAllocator(first_port=9000))
        server = await servers.start()
        ```
    """

    __test__ = False

    def __init__(
        self,
        ports: PortAllocator | None = None,
        certificate_config: CertificateConfig | None = None,
    ) -> None:
        self.ports = ports if ports is not None else default_ports
        self.certificate_config = certificate_config or CertificateConfig()

    async def start(self, config: ServerConfig | None = None) -> TestHttpServer:
        """Start a plain HTTP server."""
        return await self._start(config, secure=False, proxy=False)

    async def start_secure(self, config: ServerConfig | None = None) -> TestHttpServer:
        """Start an HTTPS server with a self-signed certificate."""
        return await self._start(config, secure=True, proxy=False)

    async def start_proxy(self, config: ServerConfig | None = None) -> TestHttpServer:
        """Start an HTTP proxy server."""
        return await self._start(config, secure=False, proxy=True)

    async def start_secure_proxy(
        self, config: ServerConfig | None = None
    ) -> TestHttpServer:
        """Start a proxy server that clients reach over HTTPS."""
        return await self._start(config, secure=True, proxy=True)

    async def _start(
        self, config: ServerConfig | None, *, secure: bool, proxy: bool
    ) -> TestHttpServer:
        certificate = None
        if secure:
            cc = self.certificate_config
            # RSA key generation is slow enough to keep off the event loop
            certificate = await asyncio.to_thread(
                generate,
                {"commonName": cc.common_name},
                alt_names=cc.alt_names,
                key_size=cc.key_size,
                days=cc.days,
            )
        server = TestHttpServer(
            proxy=proxy, config=config, ports=self.ports, certificate=certificate
        )
        await server._start_instance()
        return server
