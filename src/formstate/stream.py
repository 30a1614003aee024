"""
Multi-subscriber snapshot stream.

The controller publishes every snapshot here after its listeners ran.
Consumers can subscribe a callback, await the next snapshot, or iterate:

    async for snapshot in controller.stream:
        render(snapshot)
"""

import asyncio
import logging
from typing import Any, AsyncIterator, Callable, List, Optional

logger = logging.getLogger(__name__)

_CLOSED = object()


class StreamClosedError(RuntimeError):
    """Raised by ``next()`` when the stream is closed while waiting."""


class Subscription:
    """Handle returned by :meth:`SnapshotStream.subscribe`.

    Calling the subscription (or ``cancel()``) unsubscribes it.
    """

    def __init__(self, stream: 'SnapshotStream', callback: Callable[[Any], None]):
        self._stream = stream
        self._callback = callback
        self._active = True

    @property
    def active(self) -> bool:
        return self._active

    def cancel(self) -> None:
        if self._active:
            self._active = False
            self._stream._remove_subscriber(self._callback)

    __call__ = cancel


class SnapshotStream:
    """Broadcasts snapshots to callbacks, awaiting consumers and async iterators."""

    def __init__(self):
        self._subscribers: List[Callable[[Any], None]] = []
        self._waiters: List[asyncio.Future] = []
        self._queues: List[asyncio.Queue] = []
        self._latest: Optional[Any] = None
        self._closed = False

    @property
    def latest(self) -> Optional[Any]:
        """Most recently published snapshot, None before the first publish."""
        return self._latest

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers) + len(self._queues)

    def subscribe(self, callback: Callable[[Any], None]) -> Subscription:
        if self._closed:
            raise StreamClosedError("Cannot subscribe to a closed stream")
        self._subscribers.append(callback)
        return Subscription(self, callback)

    def _remove_subscriber(self, callback: Callable[[Any], None]) -> None:
        if callback in self._subscribers:
            self._subscribers.remove(callback)

    def publish(self, snapshot: Any) -> None:
        if self._closed:
            return
        self._latest = snapshot

        for callback in list(self._subscribers):
            try:
                callback(snapshot)
            except Exception as e:
                logger.warning(f"Error in stream subscriber: {e}")

        waiters, self._waiters = self._waiters, []
        for waiter in waiters:
            if not waiter.done():
                waiter.set_result(snapshot)

        for queue in self._queues:
            queue.put_nowait(snapshot)

    async def next(self) -> Any:
        """Wait for the next published snapshot."""
        if self._closed:
            raise StreamClosedError("Stream is closed")
        waiter = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        try:
            return await waiter
        finally:
            if waiter in self._waiters:
                self._waiters.remove(waiter)

    def __aiter__(self) -> AsyncIterator[Any]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[Any]:
        queue: asyncio.Queue = asyncio.Queue()
        self._queues.append(queue)
        try:
            while True:
                item = await queue.get()
                if item is _CLOSED:
                    return
                yield item
        finally:
            if queue in self._queues:
                self._queues.remove(queue)

    def close(self) -> None:
        """Stop publishing; wakes every waiter and ends every iterator."""
        if self._closed:
            return
        self._closed = True
        self._subscribers.clear()

        waiters, self._waiters = self._waiters, []
        for waiter in waiters:
            if not waiter.done():
                waiter.set_exception(StreamClosedError("Stream closed"))
        for queue in self._queues:
            queue.put_nowait(_CLOSED)
        logger.debug("Snapshot stream closed")
