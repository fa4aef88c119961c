"""Change fan-out engine.

Turns "entity X changed" signals into pushes on the channels of every
interested observer.
"""

from __future__ import annotations

import logging
from typing import Protocol

from pydelivery._locks import KeyedLocks
from pydelivery._redact import redact_entity
from pydelivery.exceptions import NotFoundError, StoreError, SubscriptionLostError
from pydelivery.models.entities import Entity, EntityKind
from pydelivery.models.subscription import Notification
from pydelivery.registry import SubscriptionRegistry
from pydelivery.store.base import EntityStore

_logger = logging.getLogger(__name__)


class NotificationBridge(Protocol):
    """Cross-process relay for change signals (see :mod:`pydelivery._mqtt`)."""

    def publish(self, kind: EntityKind, entity_id: str) -> None:
        ...


class FanoutEngine:
    """Push committed changes to subscribed observers.

    ``notify`` never forwards caller-supplied state: it re-reads the entity
    from the store so observers always receive the post-commit value.
    Dispatches for the same ``(kind, id)`` are serialized, so one observer
    sees notifications for an entity in commit order. Push failures are
    logged and swallowed here; the mutation that triggered them already
    succeeded.
    """

    def __init__(
        self,
        store: EntityStore,
        registry: SubscriptionRegistry,
        *,
        bridge: NotificationBridge | None = None,
    ) -> None:
        self._store = store
        self._registry = registry
        self._bridge = bridge
        self._dispatch_locks = KeyedLocks()
        self._sequences: dict[tuple[EntityKind, str], int] = {}

    def attach_bridge(self, bridge: NotificationBridge | None) -> None:
        self._bridge = bridge

    async def notify(self, kind: EntityKind, entity_id: str) -> int:
        """Dispatch locally and relay the signal to other processes.

        Returns the number of local observers that received the push.
        """
        delivered = await self.dispatch(kind, entity_id)
        bridge = self._bridge
        if bridge is not None:
            try:
                bridge.publish(kind, entity_id)
            except Exception:
                _logger.warning("Bridge publish failed for %s %s", kind, entity_id, exc_info=True)
        return delivered

    async def dispatch(self, kind: EntityKind, entity_id: str) -> int:
        """Re-read ``(kind, entity_id)`` and push it to local observers only."""
        key = (kind, entity_id)
        async with self._dispatch_locks.hold(key):
            entity: Entity | None
            try:
                entity = await self._store.get(kind, entity_id)
            except NotFoundError:
                entity = None
            except StoreError:
                _logger.warning("Fan-out re-read failed for %s %s", kind, entity_id, exc_info=True)
                return 0

            # Kept across tombstones so a recreated id continues the count.
            sequence = self._sequences.get(key, 0) + 1
            self._sequences[key] = sequence

            observers = self._registry.resolve(kind, entity_id)
            if not observers:
                return 0

            notification = Notification(
                kind=kind,
                entity_id=entity_id,
                sequence=sequence,
                entity=entity,
                deleted=entity is None,
            )
            if _logger.isEnabledFor(logging.DEBUG):
                _logger.debug(
                    "Dispatching %s %s #%d to %d observers: %s",
                    kind,
                    entity_id,
                    sequence,
                    len(observers),
                    redact_entity(entity),
                )

            delivered = 0
            for observer_id in observers:
                channel = self._registry.channel_for(observer_id)
                if channel is None:
                    continue
                try:
                    if channel.push(notification):
                        delivered += 1
                except SubscriptionLostError:
                    _logger.warning("Observer %s lost its channel; evicting", observer_id)
                    self._registry.disconnect(observer_id)
                except Exception:
                    _logger.warning("Push to observer %s failed", observer_id, exc_info=True)
            return delivered
