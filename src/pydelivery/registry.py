"""In-process subscription registry.

Tracks which connected observers watch which targets. Entries are
ephemeral: created on connect/subscribe, removed on unsubscribe,
disconnect, or when the reaper finds an observer idle for longer than
the configured timeout. Reading from the channel, subscribing and
``touch`` all count as activity; an observer parked on ``channel.get()``
is never idle. Nothing here is persisted.

All methods are synchronous and never await, so each call is atomic on
the event loop.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from pydelivery.channels import ObserverChannel
from pydelivery.exceptions import RejectedError
from pydelivery.models._base import utcnow
from pydelivery.models.entities import EntityKind
from pydelivery.models.subscription import Subscription, SubscriptionTarget

_logger = logging.getLogger(__name__)


@dataclass(slots=True)
class _ObserverEntry:
    channel: ObserverChannel
    last_seen: datetime
    handles: set[str] = field(default_factory=set)


class SubscriptionRegistry:
    def __init__(
        self,
        *,
        clock: Callable[[], datetime] = utcnow,
        idle_timeout: timedelta = timedelta(seconds=60),
    ) -> None:
        self._clock = clock
        self._idle_timeout = idle_timeout
        self._observers: dict[str, _ObserverEntry] = {}
        self._subscriptions: dict[str, Subscription] = {}
        self._by_target: dict[SubscriptionTarget, set[str]] = {}

    def __len__(self) -> int:
        return len(self._subscriptions)

    @property
    def observer_count(self) -> int:
        return len(self._observers)

    # ------------------------------------------------------------------
    # Observer lifecycle
    # ------------------------------------------------------------------

    def connect(self, observer_id: str, channel: ObserverChannel) -> None:
        """Register *observer_id* with its push channel.

        Reconnecting replaces the previous channel (which is closed) and
        drops the previous subscriptions; the observer re-subscribes and
        reconciles with fresh reads.
        """
        if observer_id in self._observers:
            self.disconnect(observer_id)
        self._observers[observer_id] = _ObserverEntry(channel=channel, last_seen=self._clock())
        channel.on_read(lambda: self.touch(observer_id))
        _logger.debug("Observer %s connected", observer_id)

    def disconnect(self, observer_id: str) -> int:
        """Drop every subscription of *observer_id* and close its channel.

        Returns the number of subscriptions removed.
        """
        entry = self._observers.pop(observer_id, None)
        if entry is None:
            return 0
        for handle in list(entry.handles):
            self._remove_handle(handle)
        entry.channel.on_read(None)
        entry.channel.close()
        _logger.debug("Observer %s disconnected (%d subscriptions)", observer_id, len(entry.handles))
        return len(entry.handles)

    def disconnect_all(self) -> int:
        """Disconnect every observer; returns how many were connected."""
        observers = list(self._observers)
        for observer_id in observers:
            self.disconnect(observer_id)
        return len(observers)

    def is_connected(self, observer_id: str) -> bool:
        return observer_id in self._observers

    def channel_for(self, observer_id: str) -> ObserverChannel | None:
        entry = self._observers.get(observer_id)
        return entry.channel if entry is not None else None

    def touch(self, observer_id: str) -> bool:
        """Refresh the observer's last-seen timestamp (heartbeat)."""
        entry = self._observers.get(observer_id)
        if entry is None:
            return False
        entry.last_seen = self._clock()
        return True

    def reap(self, now: datetime | None = None) -> list[str]:
        """Disconnect observers idle for longer than the timeout; return their ids.

        An observer with a reader waiting on its channel is kept regardless
        of when it last read.
        """
        current = now if now is not None else self._clock()
        cutoff = current - self._idle_timeout
        stale = [
            observer_id
            for observer_id, entry in self._observers.items()
            if entry.last_seen < cutoff and not entry.channel.has_waiting_reader
        ]
        for observer_id in stale:
            self.disconnect(observer_id)
        if stale:
            _logger.warning("Reaped %d idle observers: %s", len(stale), stale)
        return stale

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    def subscribe(self, observer_id: str, target: SubscriptionTarget) -> Subscription:
        entry = self._observers.get(observer_id)
        if entry is None:
            raise RejectedError("observer is not connected", field="observer_id")
        subscription = Subscription(observer_id=observer_id, target=target)
        self._subscriptions[subscription.handle] = subscription
        self._by_target.setdefault(target, set()).add(subscription.handle)
        entry.handles.add(subscription.handle)
        entry.last_seen = self._clock()
        _logger.debug("Observer %s subscribed to %s %s", observer_id, target.kind, target.target_id or "*")
        return subscription

    def unsubscribe(self, handle: str | Subscription) -> bool:
        """Release a subscription. Unknown handles are a no-op returning ``False``."""
        key = handle.handle if isinstance(handle, Subscription) else handle
        subscription = self._remove_handle(key)
        if subscription is None:
            return False
        entry = self._observers.get(subscription.observer_id)
        if entry is not None:
            entry.handles.discard(key)
        return True

    def _remove_handle(self, handle: str) -> Subscription | None:
        subscription = self._subscriptions.pop(handle, None)
        if subscription is None:
            return None
        handles = self._by_target.get(subscription.target)
        if handles is not None:
            handles.discard(handle)
            if not handles:
                del self._by_target[subscription.target]
        return subscription

    def subscriptions_for(self, observer_id: str) -> list[Subscription]:
        entry = self._observers.get(observer_id)
        if entry is None:
            return []
        return [self._subscriptions[handle] for handle in entry.handles if handle in self._subscriptions]

    def resolve(self, kind: EntityKind, entity_id: str) -> list[str]:
        """Observers interested in a mutation of ``(kind, entity_id)``.

        Driver mutations match that driver's subscribers plus all-drivers
        subscribers; delivery mutations match that delivery's subscribers
        plus all-deliveries subscribers. Each observer appears once; the
        order is unspecified.
        """
        if kind == EntityKind.DRIVER:
            targets = (SubscriptionTarget.driver(entity_id), SubscriptionTarget.all_drivers())
        elif kind == EntityKind.DELIVERY:
            targets = (SubscriptionTarget.delivery(entity_id), SubscriptionTarget.all_deliveries())
        else:
            return []

        observers: set[str] = set()
        for target in targets:
            for handle in self._by_target.get(target, ()):
                observers.add(self._subscriptions[handle].observer_id)
        return list(observers)
