"""Per-observer outbound push channels."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from typing import cast

from pydelivery.exceptions import SubscriptionLostError
from pydelivery.models.subscription import Notification

_logger = logging.getLogger(__name__)

_CLOSED = object()


class ObserverChannel:
    """Bounded, non-blocking buffer between fan-out and one observer.

    ``push`` never waits: when the buffer is full it either evicts the
    oldest buffered notification (``drop_oldest``) or discards the incoming
    one (``drop_new``). A slow observer therefore loses notifications
    instead of stalling fan-out; it reconciles with a fresh ``get``.

    Every read reports activity to the registry, so an observer that keeps
    draining its channel, or is parked waiting on it, counts as alive.

    Usage::

        async for notification in channel:
            send(notification.to_wire())
    """

    def __init__(
        self,
        observer_id: str,
        *,
        capacity: int = 100,
        overflow_policy: str = "drop_oldest",
    ) -> None:
        self.observer_id = observer_id
        self._overflow_policy = overflow_policy
        # One extra slot so the close marker always fits.
        self._queue: asyncio.Queue[object] = asyncio.Queue(maxsize=capacity + 1)
        self._capacity = capacity
        self._closed = False
        self._waiting = 0
        self._on_read: Callable[[], object] | None = None
        self.dropped = 0

    @property
    def closed(self) -> bool:
        return self._closed

    def pending(self) -> int:
        return self._queue.qsize()

    @property
    def has_waiting_reader(self) -> bool:
        return self._waiting > 0

    def on_read(self, callback: Callable[[], object] | None) -> None:
        """Register the callback invoked whenever the observer reads."""
        self._on_read = callback

    def _mark_read(self) -> None:
        if self._on_read is not None:
            self._on_read()

    def push(self, notification: Notification) -> bool:
        """Buffer *notification*; return ``False`` if it was discarded on overflow.

        Raises :class:`SubscriptionLostError` once the channel is closed.
        """
        if self._closed:
            raise SubscriptionLostError(self.observer_id)
        if self._queue.qsize() >= self._capacity:
            self.dropped += 1
            if self._overflow_policy == "drop_new":
                _logger.debug("Channel %s full, dropping incoming %s", self.observer_id, notification.entity_id)
                return False
            evicted = self._queue.get_nowait()
            if isinstance(evicted, Notification):
                _logger.debug("Channel %s full, evicted %s #%d", self.observer_id, evicted.entity_id, evicted.sequence)
        self._queue.put_nowait(notification)
        return True

    async def get(self) -> Notification:
        """Wait for the next notification.

        Raises :class:`SubscriptionLostError` when the channel is closed.
        """
        if self._closed and self._queue.empty():
            raise SubscriptionLostError(self.observer_id)
        self._mark_read()
        self._waiting += 1
        try:
            item = await self._queue.get()
        finally:
            self._waiting -= 1
        self._mark_read()
        if item is _CLOSED:
            raise SubscriptionLostError(self.observer_id)
        return cast(Notification, item)

    def get_nowait(self) -> Notification | None:
        """Return a buffered notification, or ``None`` when nothing is buffered."""
        self._mark_read()
        if self._queue.empty():
            return None
        item = self._queue.get_nowait()
        if item is _CLOSED:
            self._queue.put_nowait(_CLOSED)
            return None
        return cast(Notification, item)

    def close(self) -> None:
        """Close the channel, discarding anything still buffered and waking the reader."""
        if self._closed:
            return
        self._closed = True
        while not self._queue.empty():
            self._queue.get_nowait()
        self._queue.put_nowait(_CLOSED)

    def __aiter__(self) -> ObserverChannel:
        return self

    async def __anext__(self) -> Notification:
        try:
            return await self.get()
        except SubscriptionLostError:
            raise StopAsyncIteration from None
