"""
Bounded channel between a run's producer task and its stream consumer.
Uses an asyncio queue with an explicit close sentinel.
"""

import asyncio
from typing import Any, AsyncIterator

import structlog

logger = structlog.get_logger()

_CLOSED = object()


class ChannelClosedError(Exception):
    """Raised when putting into a channel that is closed or has no consumer"""

    pass


class EventChannel:
    """
    Single-producer, single-consumer channel.

    put() blocks while the channel is full, which is how a slow consumer
    pushes back on the producer. The consumer's loop ends when it reads the
    close sentinel, never just because the queue happens to be empty.
    """

    def __init__(self, max_queue_size: int = 100, name: str = None):
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=max_queue_size)
        self.name = name
        self._closed = False
        self._detached = False
        self._put_count = 0

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def detached(self) -> bool:
        return self._detached

    async def put(self, item: Any):
        """
        Put one item, waiting while the channel is full.

        Raises:
            ChannelClosedError: Channel closed or consumer detached
        """
        if self._closed:
            raise ChannelClosedError(f"Channel {self.name} is closed")
        if self._detached:
            raise ChannelClosedError(f"Channel {self.name} has no consumer")

        await self._queue.put(item)
        self._put_count += 1

    async def close(self):
        """Signal completion; the consumer drains remaining items then stops"""
        if self._closed:
            return
        self._closed = True

        if not self._detached:
            await self._queue.put(_CLOSED)

        logger.debug("channel_closed", channel=self.name, items_put=self._put_count)

    def detach(self):
        """
        Consumer is gone.

        Buffered items are dropped so a producer blocked in put() wakes up;
        its next put() raises ChannelClosedError.
        """
        if self._detached:
            return
        self._detached = True

        dropped = 0
        while not self._queue.empty():
            self._queue.get_nowait()
            dropped += 1

        logger.info("channel_consumer_detached", channel=self.name, dropped=dropped)

    async def __aiter__(self) -> AsyncIterator[Any]:
        while True:
            item = await self._queue.get()
            if item is _CLOSED:
                break
            yield item

    def get_stats(self) -> dict:
        """Get channel statistics"""
        return {
            "name": self.name,
            "queue_size": self._queue.qsize(),
            "max_queue_size": self._queue.maxsize,
            "items_put": self._put_count,
            "closed": self._closed,
            "detached": self._detached,
        }
