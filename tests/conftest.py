"""Pytest configuration for all tests."""

import ssl
from typing import Any, Callable

import aiohttp
import pytest_asyncio

from testkit import TestHttpServer


class MockEmitter:
    """Minimal ``on(name, listener)`` event emitter for testing."""

    def __init__(self) -> None:
        self.listeners: dict[str, list[Callable[..., Any]]] = {}

    def on(self, name: str, listener: Callable[..., Any]) -> None:
        self.listeners.setdefault(name, []).append(listener)

    def emit(self, name: str, *args: Any) -> None:
        for listener in self.listeners.get(name, []):
            listener(*args)


class MockCloseable:
    """Records whether ``close()`` was called."""

    def __init__(self) -> None:
        self.closed = False

    def close(self) -> None:
        self.closed = True


class MockAsyncCloseable(MockCloseable):
    """Like ``MockCloseable`` but with an async ``close()``."""

    async def close(self) -> None:  # type: ignore[override]
        self.closed = True


def trusting(server: TestHttpServer) -> ssl.SSLContext:
    """Client SSL context that trusts a secure test server's certificate."""
    return ssl.create_default_context(cadata=server.certificate)


@pytest_asyncio.fixture
async def server():
    """A plain HTTP test server, closed after the test."""
    server = await TestHttpServer.start()
    try:
        yield server
    finally:
        await server.close_and_wait()


@pytest_asyncio.fixture
async def secure_server():
    """An HTTPS test server, closed after the test."""
    server = await TestHttpServer.start_secure()
    try:
        yield server
    finally:
        await server.close_and_wait()


@pytest_asyncio.fixture
async def proxy():
    """A plain HTTP proxy server, closed after the test."""
    server = await TestHttpServer.start_proxy()
    try:
        yield server
    finally:
        await server.close_and_wait()


@pytest_asyncio.fixture
async def http_client():
    """An aiohttp client session, closed after the test."""
    async with aiohttp.ClientSession() as session:
        yield session
