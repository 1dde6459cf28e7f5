"""Outbound event channels for sessions and run listeners."""

from __future__ import annotations

import asyncio
from typing import Any, AsyncIterator, Optional

_CLOSED = object()


class EventChannel:
    """Ordered single-consumer queue of events.

    Producers call :meth:`publish`; a single consumer iterates with
    ``async for``. Once :meth:`close` is called, later publishes are dropped
    and iteration stops after the already-queued events.
    """

    def __init__(self) -> None:
        self._queue: asyncio.Queue = asyncio.Queue()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def publish(self, event: Any) -> bool:
        if self._closed:
            return False
        self._queue.put_nowait(event)
        return True

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(_CLOSED)

    async def get(self) -> Optional[Any]:
        item = await self._queue.get()
        if item is _CLOSED:
            return None
        return item

    def __aiter__(self) -> AsyncIterator[Any]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[Any]:
        while True:
            item = await self.get()
            if item is None:
                return
            yield item
