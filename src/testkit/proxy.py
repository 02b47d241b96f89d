"""Forwarding proxy used by ``TestHttpServer.start_proxy()``.

The proxy speaks just enough HTTP/1.1 to record each request and pass it
on:

- A request with an absolute URL (``GET http://host/path``) is sent to its
  target with aiohttp, and the target's status, headers and body are
  written back to the client.
- A ``CONNECT host:port`` request opens a TCP connection to the target,
  answers ``200 Connection Established`` and then relays raw bytes in both
  directions until either side closes.

Every connection carries exactly one request. Tunneling to a secure target
through a secure proxy is not supported.
"""

from __future__ import annotations

import asyncio
import logging
import ssl
from dataclasses import dataclass
from typing import Any, Callable, Mapping

import aiohttp

from testkit.types import BODY_METHODS, CapturedRequest, join_headers

logger = logging.getLogger(__name__)

# Constants
CONNECTION_ESTABLISHED = b"HTTP/1.1 200 Connection Established\r\n\r\n"
BAD_REQUEST = b"HTTP/1.1 400 Bad Request\r\nContent-Length: 0\r\nConnection: close\r\n\r\n"
TUNNEL_BUFFER_SIZE = 64 * 1024

HOP_BY_HOP_HEADERS = frozenset({
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "proxy-connection",
    "te",
    "trailer",
    "transfer-encoding",
    "upgrade",
})

RecordFunc = Callable[[str, str, Mapping[str, str], str | None], CapturedRequest]


@dataclass(frozen=True, slots=True)
class RequestHead:
    """Request line and headers of a proxied request."""

    method: str
    target: str
    version: str
    headers: list[tuple[str, str]]

    def header(self, name: str) -> str | None:
        """Last value of a header, matched case-insensitively."""
        name = name.lower()
        value = None
        for k, v in self.headers:
            if k.lower() == name:
                value = v
        return value


async def read_request_head(reader: asyncio.StreamReader) -> RequestHead | None:
    """Read a request line and headers.

    Returns:
        The parsed head, or None if the client closed without sending one

    Raises:
        ValueError: If the request line or a header line is malformed
    """
    try:
        raw = await reader.readuntil(b"\r\n\r\n")
    except asyncio.IncompleteReadError as e:
        if not e.partial.strip():
            return None
        raise

    lines = raw.decode("latin-1").split("\r\n")
    parts = lines[0].split(" ")
    if len(parts) != 3:
        raise ValueError(f"Malformed request line: {lines[0]!r}")
    method, target, version = parts

    headers: list[tuple[str, str]] = []
    for line in lines[1:]:
        if not line:
            continue
        name, sep, value = line.partition(":")
        if not sep:
            raise ValueError(f"Malformed header line: {line!r}")
        headers.append((name.strip(), value.strip()))
    return RequestHead(method.upper(), target, version, headers)


async def read_body(reader: asyncio.StreamReader, head: RequestHead) -> bytes:
    """Read a request body framed by Content-Length or chunked encoding."""
    transfer_encoding = head.header("transfer-encoding")
    if transfer_encoding and "chunked" in transfer_encoding.lower():
        return await _read_chunked(reader)
    content_length = head.header("content-length")
    if content_length:
        return await reader.readexactly(int(content_length))
    return b""


async def _read_chunked(reader: asyncio.StreamReader) -> bytes:
    body = bytearray()
    while True:
        size_line = await reader.readuntil(b"\r\n")
        size = int(size_line.split(b";", 1)[0].strip(), 16)
        if size == 0:
            # Skip trailers
            while await reader.readuntil(b"\r\n") != b"\r\n":
                pass
            return bytes(body)
        body += await reader.readexactly(size)
        await reader.readexactly(2)


async def _pipe(source: asyncio.StreamReader, destination: asyncio.StreamWriter) -> None:
    """Copy bytes until ``source`` ends, then pass the end on to ``destination``."""
    try:
        while True:
            data = await source.read(TUNNEL_BUFFER_SIZE)
            if not data:
                break
            destination.write(data)
            await destination.drain()
    except ConnectionError as e:
        logger.debug("Tunnel connection lost: %s", e)
    finally:
        if destination.can_write_eof() and not destination.is_closing():
            try:
                destination.write_eof()
            except OSError as e:
                logger.debug("Could not half-close tunnel: %s", e)
        else:
            destination.close()


class ProxyListener:
    """Accepts proxy connections and forwards their requests.

    Args:
        record: Called once per request with (method, path, headers, body)
            before the request is forwarded
    """

    def __init__(self, record: RecordFunc) -> None:
        self._record = record
        self._server: asyncio.AbstractServer | None = None
        self._session: aiohttp.ClientSession | None = None
        self._tasks: set[asyncio.Task[Any]] = set()

    async def start(
        self, host: str, port: int, ssl_context: ssl.SSLContext | None = None
    ) -> None:
        """Start listening.

        Raises:
            OSError: If the port cannot be bound
        """
        self._server = await asyncio.start_server(
            self._handle_client, host, port, ssl=ssl_context
        )
        if self._session is None:
            self._session = aiohttp.ClientSession(auto_decompress=False)

    async def stop(self) -> None:
        """Stop listening and drop every open connection."""
        if self._server is not None:
            self._server.close()

        current = asyncio.current_task()
        tasks = [t for t in self._tasks if t is not current]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        if self._server is not None:
            await self._server.wait_closed()
            self._server = None
        if self._session is not None:
            await self._session.close()
            self._session = None

    async def _handle_client(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> None:
        task = asyncio.current_task()
        if task is not None:
            self._tasks.add(task)
        try:
            head = await read_request_head(reader)
            if head is None:
                return
            if head.method == "CONNECT":
                # So tests can see the actual target URL
                self._record(
                    "connect", "http://" + head.target, join_headers(head.headers), None
                )
                await self._tunnel(head, reader, writer)
            else:
                body = await read_body(reader, head)
                method = head.method.lower()
                text = body.decode("utf-8", errors="replace") if method in BODY_METHODS else None
                self._record(method, head.target, join_headers(head.headers), text)
                await self._relay(head, body, writer)
        except (
            ConnectionError,
            asyncio.IncompleteReadError,
            asyncio.LimitOverrunError,
            aiohttp.ClientError,
            ValueError,
        ) as e:
            logger.debug("Proxy connection failed: %s", e)
        finally:
            self._tasks.discard(task)
            writer.close()
            try:
                await writer.wait_closed()
            except OSError as e:
                logger.debug("Error closing proxy connection: %s", e)

    async def _relay(
        self, head: RequestHead, body: bytes, writer: asyncio.StreamWriter
    ) -> None:
        """Forward an absolute-URL request and copy the response back."""
        if not head.target.startswith(("http://", "https://")):
            writer.write(BAD_REQUEST)
            await writer.drain()
            return

        assert self._session is not None
        headers = [
            (k, v)
            for k, v in head.headers
            if k.lower() not in HOP_BY_HOP_HEADERS and k.lower() != "content-length"
        ]
        logger.debug("Relaying %s %s", head.method, head.target)
        async with self._session.request(
            head.method,
            head.target,
            headers=headers,
            data=body or None,
            allow_redirects=False,
            skip_auto_headers=("Accept", "Accept-Encoding", "User-Agent"),
        ) as upstream:
            response_headers = [
                (k.decode("latin-1"), v.decode("latin-1"))
                for k, v in upstream.raw_headers
                if k.decode("latin-1").lower() not in HOP_BY_HOP_HEADERS
            ]
            has_body = not (
                head.method == "HEAD"
                or upstream.status in (204, 304)
                or 100 <= upstream.status < 200
            )
            chunked = has_body and upstream.headers.get("Content-Length") is None
            if chunked:
                response_headers.append(("Transfer-Encoding", "chunked"))
            response_headers.append(("Connection", "close"))

            lines = [f"HTTP/1.1 {upstream.status} {upstream.reason or ''}"]
            lines.extend(f"{k}: {v}" for k, v in response_headers)
            writer.write(("\r\n".join(lines) + "\r\n\r\n").encode("latin-1"))

            if has_body:
                async for data in upstream.content.iter_any():
                    if chunked:
                        writer.write(b"%x\r\n%s\r\n" % (len(data), data))
                    else:
                        writer.write(data)
                    await writer.drain()
                if chunked:
                    writer.write(b"0\r\n\r\n")
            await writer.drain()

    async def _tunnel(
        self,
        head: RequestHead,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> None:
        """Splice the client connection to the CONNECT target."""
        host, _, port = head.target.rpartition(":")
        try:
            upstream_reader, upstream_writer = await asyncio.open_connection(
                host.strip("[]"), int(port)
            )
        except OSError as e:
            logger.debug("Cannot open tunnel to %s: %s", head.target, e)
            return

        logger.debug("Tunnel to %s established", head.target)
        try:
            writer.write(CONNECTION_ESTABLISHED)
            await writer.drain()
            # Anything the client sent after the CONNECT head is still
            # buffered in reader and goes through the first pipe
            await asyncio.gather(
                _pipe(reader, upstream_writer),
                _pipe(upstream_reader, writer),
            )
        finally:
            upstream_writer.close()
            try:
                await upstream_writer.wait_closed()
            except ConnectionError as e:
                logger.debug("Error closing tunnel to %s: %s", head.target, e)
        logger.debug("Tunnel to %s closed", head.target)
