"""Ordered hand-off between the control protocol reader and the API consumer."""

from __future__ import annotations

import logging
import math
from collections.abc import AsyncIterator
from contextlib import suppress
from typing import Any

import anyio

logger = logging.getLogger(__name__)


class _EndOfStream:
    """Terminal sentinel; nothing is produced after it."""


class _StreamError:
    """Marker carrying the reader loop's exception to the consumer."""

    def __init__(self, error: BaseException) -> None:
        self.error = error


_END_OF_STREAM = _EndOfStream()


class MessageQueue:
    """Single-producer/single-consumer FIFO of data messages.

    The producer side never blocks (the buffer is unbounded) so a slow
    consumer cannot stall control traffic. ``finish`` may be called any number
    of times; only the first call enqueues the sentinel, optionally preceded by
    one error marker.
    """

    def __init__(self) -> None:
        self._send, self._receive = anyio.create_memory_object_stream[Any](
            max_buffer_size=math.inf
        )
        self._finished = False

    @property
    def finished(self) -> bool:
        return self._finished

    def put(self, message: dict[str, Any]) -> None:
        """Enqueue a data message. Messages put after ``finish`` are dropped."""
        if self._finished:
            logger.debug("[queue] Dropping message after end of stream")
            return
        self._send.send_nowait(message)

    def finish(self, error: BaseException | None = None) -> None:
        """Enqueue the terminal sentinel, preceded by ``error`` if given."""
        if self._finished:
            return
        self._finished = True
        with suppress(anyio.BrokenResourceError, anyio.ClosedResourceError):
            if error is not None:
                self._send.send_nowait(_StreamError(error))
            self._send.send_nowait(_END_OF_STREAM)
        self._send.close()

    async def get(self) -> dict[str, Any] | None:
        """Dequeue the next message.

        Returns ``None`` once the sentinel is reached and raises the reader's
        error at the position it was enqueued.
        """
        try:
            item = await self._receive.receive()
        except (anyio.EndOfStream, anyio.ClosedResourceError):
            return None
        if isinstance(item, _EndOfStream):
            return None
        if isinstance(item, _StreamError):
            raise item.error
        return item  # type: ignore[no-any-return]

    def __aiter__(self) -> AsyncIterator[dict[str, Any]]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[dict[str, Any]]:
        while True:
            message = await self.get()
            if message is None:
                return
            yield message

    async def aclose(self) -> None:
        """Finish the stream and release the receiving side."""
        self.finish()
        await self._receive.aclose()


__all__ = ["MessageQueue"]
