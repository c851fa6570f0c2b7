"""
Push sinks for display connections.

A sink accepts already-framed text and fails synchronously with
SinkClosedError when the frame cannot be delivered. The registry only
ever talks to this capability, so an HTTP stream, a socket or a test
double are interchangeable.
"""

import asyncio
import logging
from typing import AsyncIterator, Optional, Protocol

logger = logging.getLogger(__name__)


class SinkClosedError(Exception):
    """Raised when writing to a sink whose consumer is gone."""


class Sink(Protocol):
    def write_frame(self, frame: str) -> None:
        ...

    def close(self) -> None:
        ...


class QueueSink:
    """
    Bounded in-memory sink drained by a streaming HTTP response.

    A full buffer means the consumer stopped reading; the write fails and
    the sink closes itself so the registry reaps the connection.
    """

    def __init__(self, max_pending: int = 100):
        # One extra slot keeps room for the close sentinel
        self._queue: asyncio.Queue[Optional[str]] = asyncio.Queue(maxsize=max_pending + 1)
        self._max_pending = max_pending
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def write_frame(self, frame: str) -> None:
        if self._closed:
            raise SinkClosedError("sink is closed")
        if self._queue.qsize() >= self._max_pending:
            self.close()
            raise SinkClosedError(f"consumer fell behind ({self._max_pending} frames pending)")
        self._queue.put_nowait(frame)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(None)

    async def frames(self) -> AsyncIterator[str]:
        """Yield frames until the sink is closed."""
        while True:
            frame = await self._queue.get()
            if frame is None:
                return
            yield frame
