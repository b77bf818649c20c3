"""Per-session event channels and the hub that merges them.

Every session owns an :class:`EventChannel`. The :class:`EventHub` runs one
forwarding task per attached channel and republishes everything into a single
channel the host application subscribes to.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import AsyncIterator, Union

from ive_connect.events.models import EventCallback, SessionEvent

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class _ChannelClosed:
    pass


CHANNEL_CLOSED = _ChannelClosed()

QueueItem = Union[SessionEvent, _ChannelClosed]


class EventChannel:
    """Typed event channel with queue subscribers and synchronous callbacks.

    Publishing never blocks. A bounded subscriber queue that is full drops the event
    for that subscriber only.

    Args:
        maxsize: Capacity of every subscriber queue, 0 for unbounded.
    """

    def __init__(self, maxsize: int = 0):
        self._maxsize = maxsize
        self._queues: list[asyncio.Queue[QueueItem]] = []
        self._callbacks: list[EventCallback] = []
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def subscribe(self) -> "asyncio.Queue[QueueItem]":
        """Return a new queue receiving every event published from now on.

        The queue receives ``CHANNEL_CLOSED`` when the channel is closed.
        """
        queue: asyncio.Queue[QueueItem] = asyncio.Queue(maxsize=self._maxsize)
        if self._closed:
            queue.put_nowait(CHANNEL_CLOSED)
        else:
            self._queues.append(queue)
        return queue

    def unsubscribe(self, queue: "asyncio.Queue[QueueItem]") -> None:
        if queue in self._queues:
            self._queues.remove(queue)

    def add_callback(self, callback: EventCallback) -> None:
        self._callbacks.append(callback)

    def remove_callback(self, callback: EventCallback) -> None:
        if callback in self._callbacks:
            self._callbacks.remove(callback)

    def publish(self, event: SessionEvent) -> None:
        if self._closed:
            logger.debug(f"Dropping {event.event_type} on closed channel")
            return
        for queue in list(self._queues):
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.warning(f"Subscriber queue full, dropping {event.event_type}")
        for callback in list(self._callbacks):
            try:
                callback(event)
            except Exception as e:
                logger.error(f"Error in event callback: {e}")

    async def stream(self) -> AsyncIterator[SessionEvent]:
        """Iterate over published events until the channel closes."""
        queue = self.subscribe()
        try:
            while True:
                item = await queue.get()
                if isinstance(item, _ChannelClosed):
                    return
                yield item
        finally:
            self.unsubscribe(queue)

    def close(self) -> None:
        """Close the channel and wake up every subscriber. Safe to call repeatedly."""
        if self._closed:
            return
        self._closed = True
        for queue in self._queues:
            try:
                queue.put_nowait(CHANNEL_CLOSED)
            except asyncio.QueueFull:
                # make room so the subscriber still sees the close marker
                queue.get_nowait()
                queue.put_nowait(CHANNEL_CLOSED)
        self._queues.clear()
        self._callbacks.clear()


class EventHub:
    """Fans many session channels into one subscribable channel."""

    def __init__(self, maxsize: int = 0):
        self._channel = EventChannel(maxsize=maxsize)
        self._forwarders: dict[str, tuple[EventChannel, asyncio.Queue, asyncio.Task]] = {}

    @property
    def channel(self) -> EventChannel:
        return self._channel

    @property
    def attached(self) -> list[str]:
        return list(self._forwarders)

    def attach(self, key: str, channel: EventChannel) -> None:
        """Start forwarding ``channel`` into the hub. Requires a running event loop."""
        self.detach(key)
        queue = channel.subscribe()
        task = asyncio.create_task(self._forward(key, queue), name=f"event-forward-{key}")
        self._forwarders[key] = (channel, queue, task)

    def detach(self, key: str) -> None:
        entry = self._forwarders.pop(key, None)
        if entry is None:
            return
        channel, queue, task = entry
        channel.unsubscribe(queue)
        task.cancel()

    async def _forward(self, key: str, queue: "asyncio.Queue[QueueItem]") -> None:
        while True:
            item = await queue.get()
            if isinstance(item, _ChannelClosed):
                logger.debug(f"Channel {key} closed, stopping forwarder")
                self._forwarders.pop(key, None)
                return
            self._channel.publish(item)

    def publish(self, event: SessionEvent) -> None:
        """Publish an event that does not belong to a single session."""
        self._channel.publish(event)

    def subscribe(self) -> "asyncio.Queue[QueueItem]":
        return self._channel.subscribe()

    def unsubscribe(self, queue: "asyncio.Queue[QueueItem]") -> None:
        self._channel.unsubscribe(queue)

    def add_callback(self, callback: EventCallback) -> None:
        self._channel.add_callback(callback)

    def stream(self) -> AsyncIterator[SessionEvent]:
        return self._channel.stream()

    async def close(self) -> None:
        """Cancel every forwarder and close the hub channel."""
        tasks = []
        for key in list(self._forwarders):
            tasks.append(self._forwarders[key][2])
            self.detach(key)
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._channel.close()
