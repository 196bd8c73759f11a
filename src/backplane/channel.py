"""
Ordered event channel with per-key coalescing.

All producers funnel into one EventChannel; the dispatcher is its only
consumer. The channel lives on the asyncio loop: coroutines call put(),
reader threads call put_threadsafe(), which hops onto the loop first.

Backpressure:
  - Events without a coalesce key (inventory deltas, log lines, commands)
    are queued in arrival order and never dropped
  - An event with a coalesce key replaces any pending event with the same
    key and takes its place at the back of the queue, so a slow consumer
    only ever sees the newest stats sample per container
"""

import asyncio
import itertools
import logging
from collections import OrderedDict
from typing import Callable, List, Optional

from .events import Event

logger = logging.getLogger(__name__)


class ChannelClosed(Exception):
    """Raised by get() once the channel is closed and empty."""


class EventChannel:
    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None):
        self._queue: "OrderedDict[object, Event]" = OrderedDict()
        self._seq = itertools.count()
        self._ready = asyncio.Event()
        self._loop = loop
        self._closed = False
        self.coalesced = 0

    def bind(self, loop: asyncio.AbstractEventLoop) -> None:
        self._loop = loop

    @property
    def pending(self) -> int:
        return len(self._queue)

    @property
    def closed(self) -> bool:
        return self._closed

    def put(self, event: Event) -> None:
        """Enqueue from the loop thread."""
        if self._closed:
            return
        key = event.coalesce_key
        if key is None:
            key = ("seq", next(self._seq))
        elif key in self._queue:
            del self._queue[key]
            self.coalesced += 1
        self._queue[key] = event
        self._ready.set()

    def put_threadsafe(self, event: Event) -> None:
        """Enqueue from a worker thread."""
        if self._loop is None:
            raise RuntimeError("EventChannel is not bound to a loop")
        try:
            self._loop.call_soon_threadsafe(self.put, event)
        except RuntimeError:
            # Loop already closed during shutdown
            logger.debug("Dropped %s, loop closed", type(event).__name__)

    def drain(self, limit: Optional[int] = None) -> List[Event]:
        """Pop up to ``limit`` pending events without waiting."""
        batch: List[Event] = []
        while self._queue and (limit is None or len(batch) < limit):
            _, event = self._queue.popitem(last=False)
            batch.append(event)
        if not self._queue:
            self._ready.clear()
        return batch

    async def get(self) -> Event:
        while not self._queue:
            if self._closed:
                raise ChannelClosed()
            self._ready.clear()
            await self._ready.wait()
        return self.drain(1)[0]

    async def wait(self, timeout: Optional[float] = None) -> bool:
        """Wait until something is pending. Returns False on timeout."""
        if self._queue:
            return True
        if self._closed:
            raise ChannelClosed()
        self._ready.clear()
        try:
            await asyncio.wait_for(self._ready.wait(), timeout)
        except asyncio.TimeoutError:
            return False
        return bool(self._queue)

    def discard(self, predicate: Callable[[Event], bool]) -> int:
        """Drop pending events matching predicate; returns how many."""
        doomed = [k for k, e in self._queue.items() if predicate(e)]
        for key in doomed:
            del self._queue[key]
        if not self._queue:
            self._ready.clear()
        return len(doomed)

    def close(self) -> None:
        self._closed = True
        self._ready.set()
