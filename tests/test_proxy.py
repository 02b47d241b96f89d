"""Tests for proxy-mode test servers.

These tests verify:
1. Absolute-URL requests are recorded and relayed to their target
2. CONNECT requests are recorded and tunneled
3. HTTPS targets work through a plain proxy
4. Secure proxies accept TLS connections from clients
5. Malformed proxy requests are rejected
"""

import asyncio

import pytest

from testkit import TestHttpServer, respond
from testkit.proxy import read_request_head

from conftest import trusting


async def read_response(reader: asyncio.StreamReader) -> tuple[bytes, bytes]:
    """Read a response with a Content-Length body; return (head, body)."""
    head = await reader.readuntil(b"\r\n\r\n")
    length = 0
    for line in head.split(b"\r\n"):
        name, _, value = line.partition(b":")
        if name.strip().lower() == b"content-length":
            length = int(value)
    return head, await reader.readexactly(length)


@pytest.mark.asyncio
class TestProxyRelay:
    """Tests for relaying absolute-URL requests."""

    async def test_relays_get(self, server, proxy, http_client) -> None:
        """Test a GET through the proxy reaches the target and comes back."""
        server.by_default(respond(200, {"x-from": "target"}, "hello"))
        target_url = server.url + "/path?a=b"

        async with http_client.get(target_url, proxy=proxy.url) as resp:
            assert resp.status == 200
            assert resp.headers["x-from"] == "target"
            assert await resp.text() == "hello"

        proxied = await proxy.next_request()
        assert proxied.method == "get"
        assert proxied.path == target_url
        assert proxy.request_count() == 1

        received = await server.next_request()
        assert received.path == "/path?a=b"

    async def test_relays_post_body(self, server, proxy, http_client) -> None:
        """Test a POST body is recorded by the proxy and forwarded."""
        server.by_default(respond(201))

        async with http_client.post(
            server.url + "/items", data="payload", proxy=proxy.url
        ) as resp:
            assert resp.status == 201

        assert (await proxy.next_request()).body == "payload"
        assert (await server.next_request()).body == "payload"

    async def test_relays_error_status(self, server, proxy, http_client) -> None:
        """Test the target's status is passed through unchanged."""
        async with http_client.get(server.url + "/missing", proxy=proxy.url) as resp:
            assert resp.status == 404

    async def test_relative_target_rejected(self, proxy) -> None:
        """Test a request without an absolute URL gets 400."""
        reader, writer = await asyncio.open_connection("127.0.0.1", proxy.port)
        try:
            writer.write(b"GET /relative HTTP/1.1\r\nHost: example\r\n\r\n")
            await writer.drain()
            head, _ = await read_response(reader)
        finally:
            writer.close()

        assert head.startswith(b"HTTP/1.1 400")
        assert (await proxy.next_request()).path == "/relative"


@pytest.mark.asyncio
class TestProxyTunnel:
    """Tests for CONNECT tunneling."""

    async def test_connect_tunnel(self, server, proxy) -> None:
        """Test a raw CONNECT tunnel carries a request to the target."""
        server.by_default(respond(200, None, "tunneled"))
        authority = f"localhost:{server.port}"

        reader, writer = await asyncio.open_connection("127.0.0.1", proxy.port)
        try:
            writer.write(
                f"CONNECT {authority} HTTP/1.1\r\nHost: {authority}\r\n\r\n".encode()
            )
            await writer.drain()
            established = await reader.readuntil(b"\r\n\r\n")
            assert established.startswith(b"HTTP/1.1 200")

            writer.write(
                f"GET /inside HTTP/1.1\r\nHost: {authority}\r\n\r\n".encode()
            )
            await writer.drain()
            head, body = await read_response(reader)
        finally:
            writer.close()

        assert head.startswith(b"HTTP/1.1 200")
        assert body == b"tunneled"

        connect = await proxy.next_request()
        assert connect.method == "connect"
        assert connect.path == server.url
        assert (await server.next_request()).path == "/inside"

    async def test_https_target_through_proxy(
        self, secure_server, proxy, http_client
    ) -> None:
        """Test an HTTPS request is tunneled through a plain proxy."""
        secure_server.by_default(respond(200, None, "secure hello"))

        async with http_client.get(
            secure_server.url + "/s",
            proxy=proxy.url,
            ssl=trusting(secure_server),
        ) as resp:
            assert await resp.text() == "secure hello"

        connect = await proxy.next_request()
        assert connect.method == "connect"
        assert connect.path == f"http://localhost:{secure_server.port}"
        assert (await secure_server.next_request()).path == "/s"

    async def test_unreachable_target_closes_connection(self, server, proxy) -> None:
        """Test a CONNECT to a closed port drops the client connection."""
        port = server.port
        await server.close_and_wait()

        reader, writer = await asyncio.open_connection("127.0.0.1", proxy.port)
        try:
            writer.write(f"CONNECT 127.0.0.1:{port} HTTP/1.1\r\n\r\n".encode())
            await writer.drain()
            assert await asyncio.wait_for(reader.read(), timeout=5) == b""
        finally:
            writer.close()

        assert (await proxy.next_request()).method == "connect"


@pytest.mark.asyncio
class TestSecureProxy:
    """Tests for proxies that clients reach over TLS."""

    async def test_relays_over_tls(self, server) -> None:
        """Test an absolute-URL request sent over TLS is relayed."""
        server.by_default(respond(200, None, "via tls"))
        proxy = await TestHttpServer.start_secure_proxy()
        try:
            assert proxy.url.startswith("https://")
            reader, writer = await asyncio.open_connection(
                "localhost", proxy.port, ssl=trusting(proxy)
            )
            try:
                writer.write(
                    f"GET {server.url}/t HTTP/1.1\r\n"
                    f"Host: localhost:{server.port}\r\n\r\n".encode()
                )
                await writer.drain()
                head, body = await read_response(reader)
            finally:
                writer.close()

            assert head.startswith(b"HTTP/1.1 200")
            assert body == b"via tls"
            assert (await proxy.next_request()).path == server.url + "/t"
        finally:
            await proxy.close_and_wait()


@pytest.mark.asyncio
class TestReadRequestHead:
    """Tests for parsing proxied request heads."""

    async def test_parses_head(self) -> None:
        """Test the request line and headers are split out."""
        reader = asyncio.StreamReader()
        reader.feed_data(b"get http://a/b HTTP/1.1\r\nHost: a\r\nX-One: 1\r\n\r\n")

        head = await read_request_head(reader)
        assert head is not None
        assert head.method == "GET"
        assert head.target == "http://a/b"
        assert head.header("x-one") == "1"
        assert head.header("missing") is None

    async def test_empty_connection(self) -> None:
        """Test a connection closed before any request gives None."""
        reader = asyncio.StreamReader()
        reader.feed_eof()
        assert await read_request_head(reader) is None

    async def test_malformed_request_line(self) -> None:
        """Test a bad request line raises ValueError."""
        reader = asyncio.StreamReader()
        reader.feed_data(b"NONSENSE\r\n\r\n")
        with pytest.raises(ValueError):
            await read_request_head(reader)
