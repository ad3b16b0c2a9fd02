"""Queue-backed async stream of answer fragments."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Awaitable, Callable

_DONE = object()

Producer = Callable[[Callable[[str], Awaitable[None]]], Awaitable[None]]


class ChatStream:
    """Async iterator over text fragments written by a producer task.

    The producer receives an `emit` coroutine function. Iteration ends when the
    producer returns, is cancelled, or raises (the error is re-raised to the
    consumer). Closing the iterator early, or setting `cancel_event`, cancels
    the producer. A producer cancelled before its first step cannot report it,
    so the stream yields `cancelled_notice` on its behalf.
    """

    def __init__(
        self,
        producer: Producer,
        *,
        cancel_event: asyncio.Event | None = None,
        maxsize: int = 100,
        cancelled_notice: str | None = None,
    ) -> None:
        self._queue: asyncio.Queue[object] = asyncio.Queue(maxsize=maxsize)
        self._cancelled_notice = cancelled_notice
        self._started = False
        self._task = asyncio.create_task(self._run(producer))
        self._watcher: asyncio.Task[None] | None = None
        if cancel_event is not None:
            watcher = asyncio.create_task(self._watch(cancel_event))
            self._task.add_done_callback(lambda _: watcher.cancel())
            self._watcher = watcher

    async def _run(self, producer: Producer) -> None:
        self._started = True
        try:
            await producer(self._queue.put)
        finally:
            await self._queue.put(_DONE)

    async def _watch(self, event: asyncio.Event) -> None:
        await event.wait()
        self.cancel()

    @property
    def done(self) -> bool:
        return self._task.done()

    def cancel(self) -> None:
        self._task.cancel()

    async def _next(self) -> object:
        if not self._queue.empty():
            return self._queue.get_nowait()
        if self._task.done():
            return _DONE
        getter = asyncio.ensure_future(self._queue.get())
        try:
            await asyncio.wait({getter, self._task}, return_when=asyncio.FIRST_COMPLETED)
        except BaseException:
            getter.cancel()
            raise
        if getter.done():
            return getter.result()
        getter.cancel()
        return self._queue.get_nowait() if not self._queue.empty() else _DONE

    def __aiter__(self) -> AsyncIterator[str]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[str]:
        try:
            while True:
                item = await self._next()
                if item is _DONE:
                    break
                yield item  # type: ignore[misc]
            if self._task.cancelled() and not self._started and self._cancelled_notice:
                yield self._cancelled_notice
        finally:
            if not self._task.done():
                self._task.cancel()
                # Drain so the producer can emit its notice and finish.
                while await self._next() is not _DONE:
                    pass
            await asyncio.gather(self._task, return_exceptions=True)
        if not self._task.cancelled() and self._task.exception() is not None:
            raise self._task.exception()  # type: ignore[misc]

    async def collect(self) -> str:
        return "".join([fragment async for fragment in self])
