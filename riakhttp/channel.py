from __future__ import annotations

import queue
from collections.abc import Iterator
from threading import Lock
from typing import Any

from riakhttp.errors import ChannelClosedError

_CLOSED = object()


class Channel:
    """
    A closable FIFO handing items from producers to a single consumer.

    Producers call ``put`` and exactly one of them calls ``close`` when the
    stream is finished. Iterating the channel yields items in order and stops
    once the close marker is reached.
    """

    def __init__(self, maxsize: int = 0) -> None:
        self._queue: queue.Queue[Any] = queue.Queue(maxsize=maxsize)
        self._closed = False
        self._lock = Lock()

    @property
    def closed(self) -> bool:
        """True once ``close`` has been called."""
        return self._closed

    def put(self, item: Any) -> None:
        """
        Queue ``item`` for the consumer, blocking while a bounded channel is full.

        Args:
            item: The value to hand over.

        Raises:
            ChannelClosedError: If the channel was already closed.
        """
        # checked and queued under the lock so nothing lands behind the close marker
        with self._lock:
            if self._closed:
                raise ChannelClosedError("put on a closed channel")
            self._queue.put(item)

    def close(self) -> None:
        """
        Mark the end of the stream.

        Raises:
            ChannelClosedError: If the channel was already closed.
        """
        with self._lock:
            if self._closed:
                raise ChannelClosedError("channel already closed")
            self._closed = True
            self._queue.put(_CLOSED)

    def __iter__(self) -> Iterator[Any]:
        while True:
            item = self._queue.get()
            if item is _CLOSED:
                # leave the marker for any later iteration
                self._queue.put(_CLOSED)
                return
            yield item
