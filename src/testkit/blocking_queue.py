"""An unbounded, closeable hand-off queue for coordinating async tests.

Producers never block: ``add()`` either stores the item or hands it straight
to the oldest consumer waiting in ``take()``. Consumers await ``take()`` like
ordinary sequential code instead of registering callbacks.

Once ``close()`` is called, waiting consumers fail with ``QueueClosedError``,
further items are dropped, and items already stored can still be drained.
"""

from __future__ import annotations

import asyncio
from collections import deque
from typing import AsyncIterator, Generic, TypeVar

from testkit.error import QueueClosedError

T = TypeVar("T")


class BlockingQueue(Generic[T]):
    """FIFO queue whose ``take()`` suspends until an item is available.

    At any instant at least one of the stored items and the pending waiters
    is empty.

    Example:
        ```python
        queue: BlockingQueue[str] = BlockingQueue()
        queue.add("a")
        assert await queue.take() == "a"
        queue.close()
        ```
    """

    __slots__ = ("_items", "_waiters", "_closed")

    def __init__(self) -> None:
        self._items: deque[T] = deque()
        self._waiters: deque[asyncio.Future[T]] = deque()
        self._closed = False

    @property
    def closed(self) -> bool:
        """True once ``close()`` has been called."""
        return self._closed

    def add(self, item: T) -> None:
        """Add an item, or hand it to the oldest waiting consumer.

        Items added after ``close()`` are silently discarded.
        """
        if self._closed:
            return
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                waiter.set_result(item)
                return
        self._items.append(item)

    async def take(self) -> T:
        """Remove and return the first item, waiting for one if necessary.

        Raises:
            QueueClosedError: If the queue is closed and has no items left
        """
        if self._items:
            return self._items.popleft()
        if self._closed:
            raise QueueClosedError()

        waiter: asyncio.Future[T] = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        try:
            return await waiter
        except asyncio.CancelledError:
            if waiter.done() and not waiter.cancelled():
                # Handed an item (or the close error) just before cancellation
                if waiter.exception() is None:
                    self._redeliver(waiter.result())
            else:
                try:
                    self._waiters.remove(waiter)
                except ValueError:
                    pass
            raise

    def _redeliver(self, item: T) -> None:
        """Give back an item taken by a cancelled waiter, keeping its place first in line."""
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                waiter.set_result(item)
                return
        self._items.appendleft(item)

    def is_empty(self) -> bool:
        """True if no items are stored. Pending waiters are not counted."""
        return not self._items

    def length(self) -> int:
        """Number of stored items. Pending waiters are not counted."""
        return len(self._items)

    def __len__(self) -> int:
        return len(self._items)

    def close(self) -> None:
        """Close the queue and fail every pending ``take()``."""
        self._closed = True
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                waiter.set_exception(QueueClosedError())

    def __aiter__(self) -> AsyncIterator[T]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[T]:
        while True:
            try:
                item = await self.take()
            except QueueClosedError:
                return
            yield item

    def __repr__(self) -> str:
        state = "closed" if self._closed else "open"
        return (
            f"<BlockingQueue {state} items={len(self._items)} "
            f"waiters={len(self._waiters)}>"
        )
