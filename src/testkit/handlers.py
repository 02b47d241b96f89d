"""Response handlers for ``TestHttpServer``.

Each function here builds a handler: a coroutine function taking the
captured request and a ``ResponseWriter``. Register handlers with
``server.by_default()`` or ``server.for_method_and_path()``.

Streaming handlers read their output from a ``BlockingQueue``, so test code
can send data at any time after the response headers have gone out and
end the response by closing the queue.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import TYPE_CHECKING, Any, Mapping

from testkit.blocking_queue import BlockingQueue
from testkit.types import CapturedRequest, Handler, Headers, SSEItem

if TYPE_CHECKING:
    from testkit.http_server import ResponseWriter

logger = logging.getLogger(__name__)

# Event type used when an SSE item has data but no type
DEFAULT_EVENT_TYPE = "message"


def respond(
    status: int,
    headers: Headers | None = None,
    body: str | bytes | None = None,
) -> Handler:
    """Respond with a fixed status, headers and optional body."""
    payload = body.encode("utf-8") if isinstance(body, str) else body

    async def handler(request: CapturedRequest, response: ResponseWriter) -> None:
        await response.write_head(status, headers, content_length=len(payload or b""))
        if payload:
            await response.write(payload)
        await response.end()

    return handler


def respond_json(value: Any) -> Handler:
    """Respond with status 200 and ``value`` serialized as JSON."""
    return respond(200, {"Content-Type": "application/json"}, json.dumps(value))


def chunked_stream(
    status: int,
    headers: Headers | None,
    chunk_queue: BlockingQueue[str | bytes],
) -> Handler:
    """Stream chunks from a queue as a chunked response.

    The status and headers are sent immediately. Each chunk taken from
    ``chunk_queue`` is written as soon as it arrives, and the response ends
    when the queue is closed.
    """

    async def handler(request: CapturedRequest, response: ResponseWriter) -> None:
        await response.write_head(status, headers, chunked=True)
        async for chunk in chunk_queue:
            await response.write(chunk)
        await response.end()

    return handler


def format_sse(item: SSEItem) -> str:
    """Render one item in Server-Sent Events format.

    A data item replaces, rather than follows, the comment of the same item.
    The ``id`` line is not newline-terminated.
    """
    chunk = ""
    if item.comment is not None:
        chunk = ":" + item.comment + "\n"
    if item.data is not None:
        chunk = "event: " + (item.type or DEFAULT_EVENT_TYPE) + "\n"
        if item.id:
            chunk += "id: " + item.id
        chunk += "data: " + item.data + "\n\n"
    return chunk


async def _pump_events(
    event_queue: BlockingQueue[SSEItem | Mapping[str, str]],
    chunk_queue: BlockingQueue[str | bytes],
) -> None:
    try:
        async for item in event_queue:
            if not isinstance(item, SSEItem):
                item = SSEItem(**item)
            chunk_queue.add(format_sse(item))
    finally:
        chunk_queue.close()


def sse_stream(event_queue: BlockingQueue[SSEItem | Mapping[str, str]]) -> Handler:
    """Stream items from a queue as a ``text/event-stream`` response.

    Items may be ``SSEItem`` instances or mappings with the same keys. A
    background task converts them into a chunk stream; closing
    ``event_queue`` ends the response. If the response ends early the task
    is cancelled with it.
    """

    async def handler(request: CapturedRequest, response: ResponseWriter) -> None:
        chunk_queue: BlockingQueue[str | bytes] = BlockingQueue()
        pump = asyncio.create_task(_pump_events(event_queue, chunk_queue))
        stream = chunked_stream(200, {"Content-Type": "text/event-stream"}, chunk_queue)
        try:
            await stream(request, response)
        finally:
            if not pump.done():
                logger.debug("Event stream for %s ended early", request.path)
                pump.cancel()

    return handler


def network_error() -> Handler:
    """Drop the connection without sending any response."""

    async def handler(request: CapturedRequest, response: ResponseWriter) -> None:
        response.abort()

    return handler


class TestHttpHandlers:
    """The handler constructors of this module, gathered in one namespace."""

    __test__ = False

    respond = staticmethod(respond)
    respond_json = staticmethod(respond_json)
    chunked_stream = staticmethod(chunked_stream)
    sse_stream = staticmethod(sse_stream)
    network_error = staticmethod(network_error)
