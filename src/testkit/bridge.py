"""Adapters between callback-style interfaces and asyncio.

Some libraries report completion through a callback instead of returning an
awaitable. The helpers here turn those callbacks into futures, collect
emitted events into a ``BlockingQueue``, and manage closeable test
resources.
"""

from __future__ import annotations

import asyncio
import functools
import inspect
import threading
from typing import Any, Awaitable, Callable, Generic, TypeVar

from testkit.blocking_queue import BlockingQueue
from testkit.error import MissingResourceError
from testkit.types import Closeable

T = TypeVar("T")
U = TypeVar("U")
C = TypeVar("C", bound=Closeable)


class _CallbackFuture(Generic[T]):
    """A future bound to the running loop that may be completed from any thread."""

    __slots__ = ("future", "_loop", "_thread_id")

    def __init__(self) -> None:
        self._loop = asyncio.get_running_loop()
        self._thread_id = threading.get_ident()
        self.future: asyncio.Future[T] = self._loop.create_future()

    def _complete(self, error: BaseException | None, value: Any) -> None:
        if threading.get_ident() != self._thread_id:
            self._loop.call_soon_threadsafe(self._settle, error, value)
        else:
            self._settle(error, value)

    def _settle(self, error: BaseException | None, value: Any) -> None:
        if self.future.done():
            return
        if error is not None:
            self.future.set_exception(error)
        else:
            self.future.set_result(value)


class PromiseAndValueCallback(_CallbackFuture[T]):
    """A future plus a single-value callback ``(value)`` that resolves it.

    Must be created inside a running event loop. Calls after the first are
    ignored.

    Example:
        ```python
        pvc = PromiseAndValueCallback()
        register_listener(pvc.callback)
        value = await pvc.future
        ```
    """

    __slots__ = ()

    def callback(self, value: T) -> None:
        self._complete(None, value)


class PromiseAndErrorValueCallback(_CallbackFuture[T]):
    """A future plus an error-first callback ``(err, value)``.

    The future fails with ``err`` if it is truthy, otherwise it resolves with
    ``value``. A non-exception error is wrapped in ``RuntimeError``.
    """

    __slots__ = ()

    def callback(self, err: Any, value: T | None = None) -> None:
        if err:
            if not isinstance(err, BaseException):
                err = RuntimeError(err)
            self._complete(err, None)
        else:
            self._complete(None, value)


def promisify(
    function_with_error_and_value_callback: Callable[..., Any],
) -> Callable[..., Awaitable[Any]]:
    """Convert a function taking a trailing ``(err, value)`` callback into a coroutine.

    Args:
        function_with_error_and_value_callback: Function whose last positional
            parameter is an error-first callback

    Returns:
        An async function taking the remaining arguments. It returns ``value``
        when the callback reports no error, and raises the error otherwise
        (or whatever the wrapped function itself raised).

    Example:
        ```python
        def add(a, b, callback):
            callback(None, a + b)

        assert await promisify(add)(2, 3) == 5
        ```
    """

    @functools.wraps(function_with_error_and_value_callback)
    async def wrapper(*args: Any) -> Any:
        pc: PromiseAndErrorValueCallback[Any] = PromiseAndErrorValueCallback()
        try:
            function_with_error_and_value_callback(*args, pc.callback)
        except Exception as e:
            pc.callback(e)
        return await pc.future

    return wrapper


def promisify_single(
    function_with_single_value_callback: Callable[..., Any],
) -> Callable[..., Awaitable[Any]]:
    """Like ``promisify``, for functions whose callback takes only ``(value)``."""

    @functools.wraps(function_with_single_value_callback)
    async def wrapper(*args: Any) -> Any:
        pc: PromiseAndValueCallback[Any] = PromiseAndValueCallback()
        function_with_single_value_callback(*args, pc.callback)
        return await pc.future

    return wrapper


def event_sink(emitter: Any, name: str) -> BlockingQueue[Any]:
    """Collect every ``name`` event emitted by ``emitter`` into a queue.

    The emitter must provide ``on(name, listener)``. An event with no
    arguments is queued as None, one argument as itself, several as a tuple.
    """
    queue: BlockingQueue[Any] = BlockingQueue()

    def listener(*args: Any) -> None:
        if len(args) > 1:
            queue.add(args)
        elif args:
            queue.add(args[0])
        else:
            queue.add(None)

    emitter.on(name, listener)
    return queue


async def read_all(stream: Any) -> str:
    """Read an asyncio or aiohttp stream to EOF and decode it as UTF-8.

    Invalid byte sequences are replaced rather than raising.
    """
    data = await stream.read()
    return data.decode("utf-8", errors="replace")


def _is_factory(value: Any) -> bool:
    # A class has a "close" attribute too, but it is still a factory
    if inspect.isclass(value):
        return True
    return callable(value) and not hasattr(value, "close")


async def with_closeable(
    entity_or_factory: C | Callable[[], C] | Callable[[], Awaitable[C]] | None,
    callback: Callable[[C], Awaitable[U]],
) -> U:
    """Run ``callback`` with an entity, closing the entity however it exits.

    Args:
        entity_or_factory: The entity, or a class or a sync or async
            function creating it
        callback: Coroutine function receiving the entity

    Returns:
        Whatever ``callback`` returns

    Raises:
        MissingResourceError: If there is no entity; ``callback`` is not called
    """
    if _is_factory(entity_or_factory):
        entity = entity_or_factory()
        if inspect.isawaitable(entity):
            entity = await entity
    else:
        entity = entity_or_factory
    if entity is None:
        raise MissingResourceError(
            "with_closeable's first argument was None or did not return a value"
        )
    try:
        return await callback(entity)
    finally:
        result = entity.close()
        if inspect.isawaitable(result):
            await result
