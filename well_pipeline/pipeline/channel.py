"""
Bounded Channel

A capacity-bounded queue with a reserve-then-send protocol. A producer
must hold a permit before it starts preparing an item; the slot stays
taken until the consumer receives the item or the permit is released
unused. This is the only backpressure point of the pipeline.
"""

import asyncio
from collections import deque
from typing import Any, Deque, Generic, Optional, TypeVar

from well_pipeline.core.exceptions import ChannelClosedError
from well_pipeline.core.metrics import channel_occupancy_gauge

T = TypeVar("T")


class Permit(Generic[T]):
    """The right to put exactly one item into a BoundedChannel."""

    def __init__(self, channel: "BoundedChannel[T]"):
        self._channel = channel
        self._used = False

    def send(self, item: T):
        if self._used:
            raise RuntimeError("Permit already used")
        self._used = True
        self._channel._put(item)

    def release(self):
        """Give the slot back without sending. Safe to call more than once."""
        if not self._used:
            self._used = True
            self._channel._release_slot()

    @property
    def used(self) -> bool:
        return self._used


class BoundedChannel(Generic[T]):
    """Single consumer channel holding at most `capacity` reserved or queued items."""

    def __init__(self, capacity: int):
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self.capacity = capacity
        self._slots = asyncio.Semaphore(capacity)
        self._items: Deque[T] = deque()
        self._item_ready = asyncio.Event()
        self._occupied = 0
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def occupancy(self) -> int:
        """Slots currently reserved by a permit or filled by a queued item."""
        return self._occupied

    def __len__(self) -> int:
        return len(self._items)

    async def reserve(self) -> Permit[T]:
        """Wait for a free slot. Raises ChannelClosedError once the channel is closed."""
        if self._closed:
            raise ChannelClosedError()
        await self._slots.acquire()
        if self._closed:
            self._slots.release()
            raise ChannelClosedError()
        self._occupied += 1
        channel_occupancy_gauge.set(self._occupied)
        return Permit(self)

    async def receive(self) -> T:
        """Wait for the next item. Raises ChannelClosedError once closed and drained."""
        while not self._items:
            if self._closed:
                raise ChannelClosedError()
            self._item_ready.clear()
            await self._item_ready.wait()
        return self._take()

    def receive_nowait(self) -> Optional[T]:
        """Return the next item if one is already queued, else None."""
        if not self._items:
            return None
        return self._take()

    def close(self):
        """Permanently close the channel, waking any waiting receiver."""
        self._closed = True
        self._item_ready.set()

    def _take(self) -> T:
        item = self._items.popleft()
        self._release_slot()
        return item

    def _put(self, item: Any):
        if self._closed:
            self._release_slot()
            raise ChannelClosedError()
        self._items.append(item)
        self._item_ready.set()

    def _release_slot(self):
        self._occupied -= 1
        channel_occupancy_gauge.set(self._occupied)
        self._slots.release()
