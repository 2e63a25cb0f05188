"""Closable asyncio streams used between background loops and their callers.

A ``Stream`` is a bounded ``asyncio.Queue`` with an explicit end marker:

- ``send`` waits for free capacity (backpressure).
- ``offer`` never waits; it drops the item when the stream is full.
- ``receive`` returns ``None`` once the stream is closed and drained.

``race_stop`` runs one awaitable against a stop event and returns ``STOPPED``
if the event wins.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Awaitable
from typing import Any, Generic, TypeVar

from kv_discovery.exceptions import StreamClosedError

__all__ = ["STOPPED", "Stream", "race_stop", "sleep_or_stop"]

T = TypeVar("T")


class _Stopped:
    def __repr__(self) -> str:
        return "STOPPED"


STOPPED: Any = _Stopped()


class Stream(Generic[T]):
    """Single-producer stream with close semantics."""

    def __init__(self, maxsize: int = 1) -> None:
        if maxsize < 1:
            raise ValueError("maxsize must be >= 1")
        self._queue: asyncio.Queue[T] = asyncio.Queue(maxsize=maxsize)
        self._closed = asyncio.Event()

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    async def send(self, item: T) -> None:
        """Enqueue ``item``, waiting while the stream is full."""
        if self.closed:
            raise StreamClosedError()
        await self._queue.put(item)

    def offer(self, item: T) -> bool:
        """Enqueue ``item`` without waiting. Returns False if it was dropped."""
        if self.closed:
            return False
        try:
            self._queue.put_nowait(item)
        except asyncio.QueueFull:
            return False
        return True

    def close(self) -> None:
        """Mark the stream as finished. Safe to call more than once."""
        self._closed.set()

    async def receive(self) -> T | None:
        """Return the next item, or None when the stream is closed and empty."""
        if not self._queue.empty():
            return self._queue.get_nowait()
        if self.closed:
            return None

        getter = asyncio.ensure_future(self._queue.get())
        closer = asyncio.ensure_future(self._closed.wait())
        try:
            await asyncio.wait({getter, closer}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            closer.cancel()
            if not getter.done():
                getter.cancel()
            await asyncio.gather(getter, closer, return_exceptions=True)

        if getter.done() and not getter.cancelled():
            return getter.result()
        if not self._queue.empty():
            return self._queue.get_nowait()
        return None

    def __aiter__(self) -> AsyncIterator[T]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[T]:
        while True:
            item = await self.receive()
            if item is None:
                return
            yield item


async def race_stop(aw: Awaitable[T], stop: asyncio.Event) -> T | Any:
    """Await ``aw`` unless ``stop`` is set first.

    Returns the result of ``aw`` or ``STOPPED``. When stopped, ``aw`` is
    cancelled and awaited before returning. Exceptions raised by ``aw``
    propagate.
    """
    if stop.is_set():
        if asyncio.iscoroutine(aw):
            aw.close()
        return STOPPED

    op = asyncio.ensure_future(aw)
    stopper = asyncio.ensure_future(stop.wait())
    try:
        await asyncio.wait({op, stopper}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        stopper.cancel()
        if not op.done():
            op.cancel()
        await asyncio.gather(op, stopper, return_exceptions=True)

    if op.cancelled():
        return STOPPED
    return op.result()


async def sleep_or_stop(delay: float, stop: asyncio.Event) -> bool:
    """Sleep for ``delay`` seconds. Returns False if ``stop`` was set instead."""
    if stop.is_set():
        return False
    try:
        await asyncio.wait_for(stop.wait(), timeout=max(0.0, delay))
    except asyncio.TimeoutError:
        return True
    return False
