"""ErrorStream – many-producer, single-consumer error channel with explicit close."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator

log = logging.getLogger("optic-tap")

_CLOSED = object()


class ErrorStream:
    """Unbounded stream of errors, iterated by the caller until closed.

    Producers are the proxy relay and the test loop. ``close()`` is the only
    completion signal: consumers must read until iteration stops rather than
    count errors.
    """

    def __init__(self):
        self._queue: asyncio.Queue = asyncio.Queue()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def put(self, error: BaseException) -> None:
        if self._closed:
            log.warning(f"dropping error reported after close: {error}")
            return
        self._queue.put_nowait(error)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(_CLOSED)

    def __aiter__(self) -> AsyncIterator[BaseException]:
        return self._iter()

    async def _iter(self) -> AsyncIterator[BaseException]:
        while True:
            item = await self._queue.get()
            if item is _CLOSED:
                # leave the sentinel for any other reader
                self._queue.put_nowait(_CLOSED)
                return
            yield item

    async def collect(self) -> list[BaseException]:
        """Drain the stream until it closes and return everything it carried."""
        return [err async for err in self]
