"""A strictly FIFO asynchronous mutex."""

from __future__ import annotations

import asyncio
from collections import deque
from typing import Any, Awaitable, Callable, TypeVar

T = TypeVar("T")


class Mutex:
    """Mutual-exclusion gate granting access in the order ``acquire()`` was called.

    ``_held`` counts the current holder plus every queued waiter, so the
    mutex is free exactly when it is zero. On release, ownership passes
    straight to the oldest waiter without the mutex ever becoming free.

    The mutex does not track ownership: ``release()`` from anyone releases
    it, and releasing a free mutex does nothing.

    Example:
        ```python
        mutex = Mutex()
        result = await mutex.do(some_async_action)

        async with mutex:
            ...
        ```
    """

    __slots__ = ("_held", "_waiters")

    def __init__(self) -> None:
        self._held = 0
        self._waiters: deque[asyncio.Future[None]] = deque()

    def locked(self) -> bool:
        """True if someone holds the mutex."""
        return self._held != 0

    async def acquire(self) -> None:
        """Acquire the mutex, waiting behind earlier callers if it is held."""
        if self._held == 0:
            self._held = 1
            return

        waiter: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        self._held += 1
        try:
            await waiter
        except asyncio.CancelledError:
            if waiter.done() and not waiter.cancelled():
                # Ownership was already handed to us; pass it on
                self.release()
            else:
                try:
                    self._waiters.remove(waiter)
                except ValueError:
                    pass
                else:
                    self._held -= 1
            raise

    def release(self) -> None:
        """Release the mutex, handing it to the oldest waiter if there is one."""
        if self._held == 0:
            return
        while self._waiters:
            waiter = self._waiters.popleft()
            self._held -= 1
            if not waiter.done():
                waiter.set_result(None)
                return
        self._held = 0

    async def do(self, action: Callable[[], Awaitable[T]]) -> T:
        """Run ``action`` while holding the mutex.

        The mutex is released however ``action`` exits; its result or
        exception is passed through unchanged.
        """
        await self.acquire()
        try:
            return await action()
        finally:
            self.release()

    async def __aenter__(self) -> "Mutex":
        await self.acquire()
        return self

    async def __aexit__(self, *args: Any) -> None:
        self.release()
