"""Delivery lifecycle state machine.

Legal transitions::

    PENDING ----> IN_PROGRESS ----> DELIVERED
       |               |
       +---------------+----------> CANCELLED

DELIVERED and CANCELLED are terminal: neither the status nor the driver
assignment of a terminal delivery changes again.

Locks are always taken in the order customer -> delivery -> driver, so
concurrent operations on overlapping ids cannot deadlock.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from datetime import datetime
from typing import Any

from pydelivery._locks import KeyedLocks
from pydelivery._normalize import position_from
from pydelivery.exceptions import InvalidTransitionError, RejectedError, StoreError, TransitionFailedError
from pydelivery.fanout import FanoutEngine
from pydelivery.models._base import Position, utcnow
from pydelivery.models.entities import Customer, Delivery, DeliveryStatus, Driver, EntityKind
from pydelivery.store.base import EntityStore, expect, get_as, list_as

_logger = logging.getLogger(__name__)

TRANSITIONS: dict[DeliveryStatus, frozenset[DeliveryStatus]] = {
    DeliveryStatus.PENDING: frozenset({DeliveryStatus.IN_PROGRESS, DeliveryStatus.CANCELLED}),
    DeliveryStatus.IN_PROGRESS: frozenset({DeliveryStatus.DELIVERED, DeliveryStatus.CANCELLED}),
    DeliveryStatus.DELIVERED: frozenset(),
    DeliveryStatus.CANCELLED: frozenset(),
}


def is_valid_transition(current: DeliveryStatus, requested: DeliveryStatus) -> bool:
    return requested in TRANSITIONS.get(current, frozenset())


def _coerce_status(value: Any) -> DeliveryStatus:
    try:
        return DeliveryStatus(str(value).upper())
    except ValueError as exc:
        raise RejectedError(f"unknown delivery status {value!r}", field="status") from exc


class DeliveryStateMachine:
    def __init__(
        self,
        store: EntityStore,
        fanout: FanoutEngine,
        locks: KeyedLocks,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._fanout = fanout
        self._locks = locks
        self._clock = clock

    async def _commit(self, delivery: Delivery, requested: Any, fields: Mapping[str, Any]) -> Delivery:
        payload = dict(fields)
        payload["updated_at"] = self._clock()
        try:
            updated = await self._store.update(EntityKind.DELIVERY, delivery.id, payload)
        except StoreError as exc:
            _logger.warning("Commit of %s for delivery %s failed: %s", requested, delivery.id, exc)
            raise TransitionFailedError(delivery.id, requested) from exc
        return expect(updated, Delivery)

    async def active_deliveries_for_driver(self, driver_id: str) -> list[Delivery]:
        """Non-terminal deliveries referencing *driver_id*."""
        deliveries = await list_as(self._store, Delivery, where={"driver_id": driver_id})
        return [delivery for delivery in deliveries if not delivery.is_terminal]

    async def create(
        self,
        customer_id: str,
        origin_address: str,
        destination_address: str,
        driver_id: str | None = None,
    ) -> Delivery:
        """Create a delivery in ``PENDING``.

        Raises :class:`NotFoundError` if the customer (or the given driver)
        does not exist.
        """
        async with self._locks.hold((EntityKind.CUSTOMER, customer_id)):
            customer = await get_as(self._store, Customer, customer_id)
            fields: dict[str, Any] = {
                "customer_id": customer_id,
                "customer_name": customer.name,
                "origin_address": origin_address,
                "destination_address": destination_address,
                "status": DeliveryStatus.PENDING,
                "created_at": self._clock(),
            }
            if driver_id is None:
                created = await self._store.create(EntityKind.DELIVERY, fields)
            else:
                async with self._locks.hold((EntityKind.DRIVER, driver_id)):
                    await get_as(self._store, Driver, driver_id)
                    fields["driver_id"] = driver_id
                    created = await self._store.create(EntityKind.DELIVERY, fields)

        delivery = expect(created, Delivery)
        _logger.info("Created delivery %s for customer %s (driver=%s)", delivery.id, customer_id, driver_id)
        async with self._locks.hold((EntityKind.DELIVERY, delivery.id)):
            await self._fanout.notify(EntityKind.DELIVERY, delivery.id)
        return delivery

    async def transition(
        self,
        delivery_id: str,
        requested: DeliveryStatus | str,
        final_position: Any = None,
        *,
        origin_position: Position | None = None,
        destination_position: Position | None = None,
    ) -> Delivery:
        """Move a delivery to *requested*.

        Guards:

        * ``IN_PROGRESS`` needs an assigned driver with no other delivery
          in progress. Geocoded ``origin_position``/``destination_position``
          may be stamped with it.
        * ``DELIVERED`` needs *final_position*, which is stamped atomically
          with the status change.
        * ``CANCELLED`` is unconditional from any non-terminal state.

        Raises :class:`InvalidTransitionError` for transitions outside the
        table, :class:`RejectedError` when a guard fails, and
        :class:`TransitionFailedError` when the store commit fails. Only a
        committed transition is signalled to fan-out.
        """
        target = _coerce_status(requested)
        if final_position is not None and target != DeliveryStatus.DELIVERED:
            raise RejectedError("only a DELIVERED transition takes a final position", field="final_position")
        if (origin_position is not None or destination_position is not None) and target != DeliveryStatus.IN_PROGRESS:
            raise RejectedError("trip coordinates are only stamped when the trip starts", field="origin_position")

        async with self._locks.hold((EntityKind.DELIVERY, delivery_id)):
            delivery = await get_as(self._store, Delivery, delivery_id)
            if not is_valid_transition(delivery.status, target):
                raise InvalidTransitionError(delivery.status, target, delivery_id=delivery_id)

            fields: dict[str, Any] = {"status": target}

            if target == DeliveryStatus.IN_PROGRESS:
                driver_id = delivery.driver_id
                if driver_id is None:
                    raise RejectedError("delivery has no driver assigned", field="driver_id")
                if origin_position is not None:
                    fields["origin_position"] = origin_position
                if destination_position is not None:
                    fields["destination_position"] = destination_position
                async with self._locks.hold((EntityKind.DRIVER, driver_id)):
                    await get_as(self._store, Driver, driver_id)
                    busy = await self._store.list(
                        EntityKind.DELIVERY,
                        where={"driver_id": driver_id, "status": DeliveryStatus.IN_PROGRESS},
                    )
                    others = [record.id for record in busy if record.id != delivery_id]
                    if others:
                        raise RejectedError(
                            f"driver {driver_id} is already on active delivery {others[0]}",
                            field="driver_id",
                        )
                    updated = await self._commit(delivery, target, fields)
            else:
                if target == DeliveryStatus.DELIVERED:
                    if final_position is None:
                        raise RejectedError("a final position is required to deliver", field="final_position")
                    fields["final_position"] = position_from(final_position, prefix="final_position.")
                updated = await self._commit(delivery, target, fields)

            _logger.info("Delivery %s %s -> %s", delivery_id, delivery.status, target)
            await self._fanout.notify(EntityKind.DELIVERY, delivery_id)
        return updated

    async def assign_driver(self, delivery_id: str, driver_id: str) -> Delivery:
        """Assign a driver to a pending, unassigned delivery.

        Reassignment must go through :meth:`unassign_driver` first; an
        existing assignment is never overwritten.
        """
        async with self._locks.hold((EntityKind.DELIVERY, delivery_id)):
            delivery = await get_as(self._store, Delivery, delivery_id)
            if delivery.status != DeliveryStatus.PENDING:
                raise RejectedError(f"cannot assign a driver to a {delivery.status} delivery", field="status")
            if delivery.driver_id == driver_id:
                return delivery
            if delivery.driver_id is not None:
                raise RejectedError(
                    f"delivery is assigned to {delivery.driver_id}; unassign first",
                    field="driver_id",
                )
            async with self._locks.hold((EntityKind.DRIVER, driver_id)):
                await get_as(self._store, Driver, driver_id)
                updated = await self._commit(delivery, "assign", {"driver_id": driver_id})
            _logger.info("Delivery %s assigned to driver %s", delivery_id, driver_id)
            await self._fanout.notify(EntityKind.DELIVERY, delivery_id)
        return updated

    async def unassign_driver(self, delivery_id: str) -> Delivery:
        async with self._locks.hold((EntityKind.DELIVERY, delivery_id)):
            delivery = await get_as(self._store, Delivery, delivery_id)
            if delivery.status != DeliveryStatus.PENDING:
                raise RejectedError(f"cannot unassign the driver of a {delivery.status} delivery", field="status")
            if delivery.driver_id is None:
                return delivery
            updated = await self._commit(delivery, "unassign", {"driver_id": None})
            _logger.info("Delivery %s unassigned from driver %s", delivery_id, delivery.driver_id)
            await self._fanout.notify(EntityKind.DELIVERY, delivery_id)
        return updated
