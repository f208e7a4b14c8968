"""Primary-context dispatch.

A session is driven by one event loop (the primary context). Callbacks, tool
intercepts and stream chunks are always delivered there; blocking work is moved
to worker threads and its results are marshalled back.
"""
from __future__ import annotations

import asyncio
import concurrent.futures
import inspect
import logging
import threading
from typing import Any, AsyncIterator, Callable, Coroutine, Iterable, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

_DONE = object()


async def _call_maybe_async(fn: Callable, *args):
    result = fn(*args)
    if inspect.isawaitable(result):
        return await result
    return result


async def iterate_in_worker(factory: Callable[[], Iterable[T]]) -> AsyncIterator[T]:
    """Drive a blocking iterator on a worker thread, yielding items on the calling loop."""
    loop = asyncio.get_running_loop()
    queue: asyncio.Queue = asyncio.Queue()
    stop = threading.Event()

    def _pump() -> None:
        try:
            for item in factory():
                loop.call_soon_threadsafe(queue.put_nowait, (item, None))
                if stop.is_set():
                    break
        except BaseException as exc:  # delivered to the consumer
            loop.call_soon_threadsafe(queue.put_nowait, (_DONE, exc))
            return
        loop.call_soon_threadsafe(queue.put_nowait, (_DONE, None))

    worker = loop.run_in_executor(None, _pump)
    try:
        while True:
            item, exc = await queue.get()
            if item is _DONE:
                if exc is not None:
                    raise exc
                break
            yield item
    finally:
        stop.set()
        if worker.done():
            worker.result()


class CallbackScheduler:
    def __init__(self, loop: asyncio.AbstractEventLoop | None = None) -> None:
        self._loop = loop

    @property
    def loop(self) -> asyncio.AbstractEventLoop | None:
        return self._loop

    def bind(self, loop: asyncio.AbstractEventLoop | None = None) -> asyncio.AbstractEventLoop:
        self._loop = loop or asyncio.get_running_loop()
        return self._loop

    def is_primary(self) -> bool:
        if self._loop is None:
            return False
        try:
            return asyncio.get_running_loop() is self._loop
        except RuntimeError:
            return False

    def require_loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None or self._loop.is_closed():
            raise RuntimeError("scheduler is not bound to a running event loop")
        return self._loop

    async def invoke(self, fn: Callable[..., Any] | None, *args: Any) -> Any:
        """Run ``fn`` on the primary loop and return its (awaited) result."""
        if fn is None:
            return None
        if self._loop is None or self.is_primary():
            return await _call_maybe_async(fn, *args)
        future = asyncio.run_coroutine_threadsafe(_call_maybe_async(fn, *args), self.require_loop())
        return await asyncio.wrap_future(future)

    def post(self, fn: Callable[..., Any], *args: Any) -> None:
        loop = self.require_loop()

        def _run() -> None:
            result = fn(*args)
            if inspect.isawaitable(result):
                asyncio.ensure_future(result)

        loop.call_soon_threadsafe(_run)

    def submit(self, coro: Coroutine[Any, Any, T]) -> concurrent.futures.Future[T]:
        return asyncio.run_coroutine_threadsafe(coro, self.require_loop())

    async def run_in_worker(self, fn: Callable[..., T], *args: Any) -> T:
        return await asyncio.to_thread(fn, *args)

    def iterate_in_worker(self, factory: Callable[[], Iterable[T]]) -> AsyncIterator[T]:
        return iterate_in_worker(factory)
