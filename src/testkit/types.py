"""Core type definitions for testkit."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Iterable, Mapping, Protocol

if TYPE_CHECKING:
    from testkit.http_server import ResponseWriter


Headers = Mapping[str, str]

# Methods whose request body is captured
BODY_METHODS = frozenset({"post", "put", "report"})


def join_headers(pairs: Iterable[tuple[str, str]]) -> dict[str, str]:
    """Collapse header pairs into a dict, joining repeated names with ", ".

    Names match case-insensitively; the first spelling seen is kept.
    """
    joined: dict[str, str] = {}
    names: dict[str, str] = {}
    for name, value in pairs:
        key = names.setdefault(name.lower(), name)
        if key in joined:
            joined[key] += ", " + value
        else:
            joined[key] = value
    return joined


@dataclass(frozen=True, slots=True)
class CapturedRequest:
    """Snapshot of a request received by a ``TestHttpServer``.

    Attributes:
        method: Lower-cased HTTP method
        path: Raw request target; for CONNECT requests this is rewritten
            to ``http://host:port`` so the tunneled target is visible
        headers: Request headers, keys as received; repeated headers are
            joined with ", "
        body: Request body for POST, PUT and REPORT requests, else None
    """

    method: str
    path: str
    headers: dict[str, str]
    body: str | None = None


@dataclass(frozen=True, slots=True)
class SSEItem:
    """One item of a Server-Sent Events stream.

    An item is either a comment or an event; when both ``comment`` and
    ``data`` are set only the event is sent.
    """

    type: str | None = None
    id: str | None = None
    data: str | None = None
    comment: str | None = None


Handler = Callable[[CapturedRequest, "ResponseWriter"], Awaitable[None]]


class Closeable(Protocol):
    """Anything with a ``close()`` method, sync or async."""

    def close(self) -> Any:
        ...
