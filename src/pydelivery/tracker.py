"""High-level async facade over the delivery tracking core."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import uuid
from collections.abc import Callable, Mapping
from datetime import datetime, timedelta
from typing import Any

import aiohttp

from pydelivery._crypto.hashing import hash_credential, verify_credential
from pydelivery._locks import KeyedLocks
from pydelivery._mqtt import MqttBridge
from pydelivery._transport import JsonTransport
from pydelivery.channels import ObserverChannel
from pydelivery.config import TrackerConfig
from pydelivery.exceptions import ConfigError, DeliveryError, NotFoundError, OracleError, RejectedError
from pydelivery.fanout import FanoutEngine
from pydelivery.lifecycle import DeliveryStateMachine
from pydelivery.location import LocationUpdater
from pydelivery.models._base import ContactInfo, Position, utcnow
from pydelivery.models.entities import (
    Admin,
    Customer,
    Delivery,
    DeliveryStatus,
    DeliveryView,
    Driver,
    Entity,
    EntityKind,
    sort_newest_first,
)
from pydelivery.models.subscription import PositionAck, Subscription, SubscriptionTarget
from pydelivery.oracles import DirectionsOracle, GeocodingOracle, NominatimGeocoder, OsrmDirections, Route
from pydelivery.registry import SubscriptionRegistry
from pydelivery.store.base import EntityStore, expect, get_as, list_as
from pydelivery.store.file import FileEntityStore
from pydelivery.store.fixtures import seed_fixtures
from pydelivery.store.memory import InMemoryEntityStore

_logger = logging.getLogger(__name__)

_CONTACT_FIELDS = frozenset({"email", "phone", "address"})
_PERSON_FIELDS = frozenset({"name"}) | _CONTACT_FIELDS
_DELIVERY_EDITABLE_FIELDS = frozenset({"origin_address", "destination_address"})
_NOT_STARTED = "Tracker not started. Use 'async with DeliveryTracker(...) as tracker:'"


def _person_fields(name: str, contact: ContactInfo | None, extra: Mapping[str, Any]) -> dict[str, Any]:
    unknown = set(extra) - _CONTACT_FIELDS
    if unknown:
        raise RejectedError("unknown contact field", field=sorted(unknown)[0])
    contact_values = contact.model_dump() if contact is not None else {}
    for key in _CONTACT_FIELDS:
        if key in extra and extra[key] is not None:
            contact_values[key] = extra[key]
    return {"name": name, "contact": contact_values}


def _person_patch(existing: Driver | Customer | Admin, changes: Mapping[str, Any]) -> dict[str, Any]:
    unknown = set(changes) - _PERSON_FIELDS - {"contact"}
    if unknown:
        raise RejectedError("field cannot be edited here", field=sorted(unknown)[0])
    patch: dict[str, Any] = {}
    if "name" in changes:
        patch["name"] = changes["name"]
    contact_updates = {key: changes[key] for key in _CONTACT_FIELDS if key in changes}
    if "contact" in changes or contact_updates:
        base = changes.get("contact", existing.contact)
        base_values = base.model_dump() if isinstance(base, ContactInfo) else dict(base)
        base_values.update(contact_updates)
        patch["contact"] = base_values
    return patch


class DeliveryTracker:
    """Async facade for the delivery tracking core.

    Wires the entity store, location updater, delivery state machine,
    subscription registry and fan-out engine together, and owns their
    background resources (reaper task, MQTT bridge, oracle HTTP session).

    Usage::

        async with DeliveryTracker(TrackerConfig.from_env()) as tracker:
            channel = tracker.connect("admin-1")
            tracker.subscribe("admin-1", SubscriptionTarget.all_drivers())
            await tracker.report_position("d1", -6.2, 106.8, observed_at=time.time())
            async for notification in channel:
                send(notification.to_wire())

    Observers that read from their channel stay connected. One that stops
    reading must call :meth:`touch` within ``subscription_idle_timeout`` or
    the reaper disconnects it.
    """

    def __init__(
        self,
        config: TrackerConfig | None = None,
        *,
        store: EntityStore | None = None,
        geocoder: GeocodingOracle | None = None,
        directions: DirectionsOracle | None = None,
        http_session: aiohttp.ClientSession | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._config = config or TrackerConfig()
        self._clock = clock
        self._store = store
        self._geocoder = geocoder
        self._directions = directions
        self._external_session = http_session is not None
        self._http_session = http_session
        self._node_id = self._config.node_id or uuid.uuid4().hex[:12]
        self._registry = SubscriptionRegistry(
            clock=clock,
            idle_timeout=timedelta(seconds=self._config.subscription_idle_timeout),
        )
        self._locks = KeyedLocks()
        self._fanout: FanoutEngine | None = None
        self._locations: LocationUpdater | None = None
        self._lifecycle: DeliveryStateMachine | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._bridge: MqttBridge | None = None
        self._reaper: asyncio.Task[None] | None = None
        self._background: set[asyncio.Task[Any]] = set()

    # ------------------------------------------------------------------
    # Context manager lifecycle
    # ------------------------------------------------------------------

    async def __aenter__(self) -> DeliveryTracker:
        self._loop = asyncio.get_running_loop()
        if self._store is None:
            if self._config.storage_path:
                self._store = await FileEntityStore.open(self._config.storage_path)
            else:
                self._store = InMemoryEntityStore()
        if self._config.seed_fixtures:
            await seed_fixtures(self._store)

        self._fanout = FanoutEngine(self._store, self._registry)
        self._locations = LocationUpdater(
            self._store,
            self._fanout,
            self._locks,
            min_interval=timedelta(seconds=self._config.position_min_interval),
        )
        self._lifecycle = DeliveryStateMachine(self._store, self._fanout, self._locks, clock=self._clock)

        self._start_oracles()
        await self._start_bridge()
        if self._config.reaper_interval > 0:
            self._reaper = asyncio.create_task(self._reap_forever(self._config.reaper_interval))
        _logger.info("Delivery tracker started (node=%s)", self._node_id)
        return self

    async def __aexit__(self, *exc: Any) -> None:
        if self._reaper is not None:
            self._reaper.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._reaper
            self._reaper = None
        await self._stop_bridge()
        for task in list(self._background):
            task.cancel()
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)
        self._background.clear()
        self._registry.disconnect_all()
        if not self._external_session and self._http_session is not None:
            await self._http_session.close()
            self._http_session = None
        self._loop = None
        _logger.info("Delivery tracker stopped (node=%s)", self._node_id)

    def _start_oracles(self) -> None:
        config = self._config
        if self._geocoder is None and config.geocoder_url:
            self._geocoder = NominatimGeocoder(self._transport(), config.geocoder_url)
        if self._directions is None and config.directions_url:
            self._directions = OsrmDirections(
                self._transport(),
                config.directions_url,
                profile=config.directions_profile,
            )

    def _transport(self) -> JsonTransport:
        if self._http_session is None:
            self._http_session = aiohttp.ClientSession()
        return JsonTransport(self._http_session, timeout=self._config.oracle_timeout)

    async def _start_bridge(self) -> None:
        """Best-effort bridge startup; a broker outage must not stop local fan-out."""
        if not self._config.bridge_enabled:
            return
        loop = self._require_loop()
        bridge = MqttBridge(
            loop=loop,
            node_id=self._node_id,
            on_remote_change=self._on_remote_change,
            topic_prefix=self._config.bridge_topic_prefix,
            keepalive=self._config.bridge_keepalive,
            logger=_logger,
        )
        try:
            await loop.run_in_executor(None, bridge.start, self._config.bridge_host, self._config.bridge_port)
        except Exception:
            _logger.warning("MQTT bridge start failed; continuing process-local", exc_info=True)
            return
        self._bridge = bridge
        self._require_fanout().attach_bridge(bridge)

    async def _stop_bridge(self) -> None:
        bridge = self._bridge
        self._bridge = None
        if self._fanout is not None:
            self._fanout.attach_bridge(None)
        if bridge is None:
            return
        try:
            await self._require_loop().run_in_executor(None, bridge.stop)
        except Exception:
            _logger.debug("MQTT bridge stop failed", exc_info=True)

    def _on_remote_change(self, kind: EntityKind, entity_id: str) -> None:
        """Handle a change committed by another process (runs on the loop thread)."""
        fanout = self._fanout
        if fanout is None:
            return
        task = asyncio.ensure_future(fanout.dispatch(kind, entity_id))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _reap_forever(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            self._registry.reap()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _require_loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None:
            raise DeliveryError(_NOT_STARTED)
        return self._loop

    def _require_store(self) -> EntityStore:
        if self._store is None or self._loop is None:
            raise DeliveryError(_NOT_STARTED)
        return self._store

    def _require_fanout(self) -> FanoutEngine:
        if self._fanout is None:
            raise DeliveryError(_NOT_STARTED)
        return self._fanout

    def _require_lifecycle(self) -> DeliveryStateMachine:
        if self._lifecycle is None:
            raise DeliveryError(_NOT_STARTED)
        return self._lifecycle

    def _require_locations(self) -> LocationUpdater:
        if self._locations is None:
            raise DeliveryError(_NOT_STARTED)
        return self._locations

    @property
    def config(self) -> TrackerConfig:
        return self._config

    @property
    def node_id(self) -> str:
        return self._node_id

    @property
    def store(self) -> EntityStore:
        return self._require_store()

    @property
    def registry(self) -> SubscriptionRegistry:
        return self._registry

    @property
    def fanout(self) -> FanoutEngine:
        return self._require_fanout()

    async def get(self, kind: EntityKind, entity_id: str) -> Entity:
        """Fresh read of any entity; observers use this to reconcile after missed pushes."""
        return await self._require_store().get(kind, entity_id)

    # ------------------------------------------------------------------
    # Drivers
    # ------------------------------------------------------------------

    async def create_driver(self, name: str, *, contact: ContactInfo | None = None, **contact_fields: Any) -> Driver:
        store = self._require_store()
        driver = expect(await store.create(EntityKind.DRIVER, _person_fields(name, contact, contact_fields)), Driver)
        async with self._locks.hold((EntityKind.DRIVER, driver.id)):
            await self._require_fanout().notify(EntityKind.DRIVER, driver.id)
        return driver

    async def get_driver(self, driver_id: str) -> Driver:
        return await get_as(self._require_store(), Driver, driver_id)

    async def list_drivers(self) -> list[Driver]:
        return await list_as(self._require_store(), Driver)

    async def update_driver(self, driver_id: str, **changes: Any) -> Driver:
        """Edit a driver's profile. Position changes go through :meth:`report_position`."""
        store = self._require_store()
        async with self._locks.hold((EntityKind.DRIVER, driver_id)):
            existing = await self.get_driver(driver_id)
            driver = await store.update(EntityKind.DRIVER, driver_id, _person_patch(existing, changes))
            await self._require_fanout().notify(EntityKind.DRIVER, driver_id)
        return expect(driver, Driver)

    async def delete_driver(self, driver_id: str) -> None:
        """Delete a driver that has no pending or in-progress deliveries."""
        store = self._require_store()
        async with self._locks.hold((EntityKind.DRIVER, driver_id)):
            await self.get_driver(driver_id)
            active = await self._require_lifecycle().active_deliveries_for_driver(driver_id)
            if active:
                raise RejectedError(
                    f"driver has {len(active)} active deliveries ({active[0].id})",
                    field="driver_id",
                )
            await store.delete(EntityKind.DRIVER, driver_id)
            _logger.info("Deleted driver %s", driver_id)
            await self._require_fanout().notify(EntityKind.DRIVER, driver_id)

    async def report_position(
        self,
        driver_id: str,
        latitude: Any,
        longitude: Any,
        observed_at: Any = None,
    ) -> PositionAck:
        """Apply a driver position report; ``observed_at`` defaults to now."""
        self._require_store()
        when = observed_at if observed_at is not None else self._clock()
        return await self._require_locations().report_position(driver_id, latitude, longitude, when)

    # ------------------------------------------------------------------
    # Customers
    # ------------------------------------------------------------------

    async def _ensure_unique_email(self, email: str | None, *, exclude_id: str | None = None) -> None:
        if not email:
            return
        normalized = email.strip().lower()
        clashes = await self._require_store().list(
            EntityKind.CUSTOMER,
            predicate=lambda record: isinstance(record, Customer)
            and record.contact.email == normalized
            and record.id != exclude_id,
        )
        if clashes:
            raise RejectedError("email is already registered", field="email")

    async def create_customer(
        self,
        name: str,
        *,
        contact: ContactInfo | None = None,
        **contact_fields: Any,
    ) -> Customer:
        """Register a customer (self-registration or by an admin)."""
        fields = _person_fields(name, contact, contact_fields)
        store = self._require_store()
        async with self._locks.hold("customer-emails"):
            await self._ensure_unique_email(fields["contact"].get("email"))
            customer = expect(await store.create(EntityKind.CUSTOMER, fields), Customer)
        _logger.info("Registered customer %s", customer.id)
        return customer

    async def get_customer(self, customer_id: str) -> Customer:
        return await get_as(self._require_store(), Customer, customer_id)

    async def list_customers(self) -> list[Customer]:
        return await list_as(self._require_store(), Customer)

    async def update_customer(self, customer_id: str, **changes: Any) -> Customer:
        store = self._require_store()
        async with self._locks.hold((EntityKind.CUSTOMER, customer_id)):
            existing = await self.get_customer(customer_id)
            patch = _person_patch(existing, changes)
            async with self._locks.hold("customer-emails"):
                if "contact" in patch:
                    await self._ensure_unique_email(patch["contact"].get("email"), exclude_id=customer_id)
                customer = await store.update(EntityKind.CUSTOMER, customer_id, patch)
        return expect(customer, Customer)

    async def delete_customer(self, customer_id: str) -> None:
        """Delete a customer that has no pending or in-progress deliveries."""
        store = self._require_store()
        async with self._locks.hold((EntityKind.CUSTOMER, customer_id)):
            await self.get_customer(customer_id)
            open_deliveries = await store.list(
                EntityKind.DELIVERY,
                where={"customer_id": customer_id},
                predicate=lambda record: isinstance(record, Delivery) and not record.is_terminal,
            )
            if open_deliveries:
                raise RejectedError(
                    f"customer has {len(open_deliveries)} active deliveries",
                    field="customer_id",
                )
            await store.delete(EntityKind.CUSTOMER, customer_id)
        _logger.info("Deleted customer %s", customer_id)

    # ------------------------------------------------------------------
    # Admins
    # ------------------------------------------------------------------

    async def get_admin(self, admin_id: str) -> Admin:
        return await get_as(self._require_store(), Admin, admin_id)

    async def list_admins(self) -> list[Admin]:
        return await list_as(self._require_store(), Admin)

    async def update_admin(self, admin_id: str, *, credential: str | None = None, **changes: Any) -> Admin:
        """Edit an admin's name and contact fields, or rotate the credential."""
        if credential is not None and not credential:
            raise RejectedError("credential must be non-empty", field="credential")
        store = self._require_store()
        async with self._locks.hold("admins"):
            existing = await self.get_admin(admin_id)
            patch = _person_patch(existing, changes)
            if credential is not None:
                patch["credential_hash"] = await asyncio.to_thread(hash_credential, credential)
            admin = expect(await store.update(EntityKind.ADMIN, admin_id, patch), Admin)
        _logger.info("Updated admin %s (fields=%s)", admin_id, sorted(patch))
        return admin

    async def create_admin(
        self,
        name: str,
        credential: str,
        *,
        created_by: str | None = None,
        contact: ContactInfo | None = None,
        **contact_fields: Any,
    ) -> Admin:
        """Create an admin.

        ``created_by`` must name an existing admin, except for the very
        first (bootstrap) admin. Only a salted hash of *credential* is stored.
        """
        if not credential:
            raise RejectedError("credential must be non-empty", field="credential")
        store = self._require_store()
        async with self._locks.hold("admins"):
            existing = await self.list_admins()
            if existing:
                if created_by is None:
                    raise RejectedError("admins can only be created by an existing admin", field="created_by")
                await get_as(store, Admin, created_by)
            fields = _person_fields(name, contact, contact_fields)
            fields["credential_hash"] = await asyncio.to_thread(hash_credential, credential)
            admin = expect(await store.create(EntityKind.ADMIN, fields), Admin)
        _logger.info("Created admin %s (by %s)", admin.id, created_by or "bootstrap")
        return admin

    async def verify_admin_credential(self, admin_id: str, credential: str) -> bool:
        try:
            admin = await self.get_admin(admin_id)
        except NotFoundError:
            return False
        return await asyncio.to_thread(verify_credential, credential, admin.credential_hash)

    async def delete_admin(self, admin_id: str) -> None:
        """Delete an admin; the last remaining admin cannot be removed."""
        store = self._require_store()
        async with self._locks.hold("admins"):
            await self.get_admin(admin_id)
            if len(await self.list_admins()) <= 1:
                raise RejectedError("cannot delete the last admin", field="admin_id")
            await store.delete(EntityKind.ADMIN, admin_id)

    # ------------------------------------------------------------------
    # Deliveries
    # ------------------------------------------------------------------

    async def create_delivery(
        self,
        customer_id: str,
        origin_address: str,
        destination_address: str,
        driver_id: str | None = None,
    ) -> Delivery:
        self._require_store()
        return await self._require_lifecycle().create(customer_id, origin_address, destination_address, driver_id)

    async def get_delivery(self, delivery_id: str) -> Delivery:
        return await get_as(self._require_store(), Delivery, delivery_id)

    async def list_deliveries(self, *, status: DeliveryStatus | None = None) -> list[Delivery]:
        """All deliveries, newest first, optionally filtered by status."""
        where = {"status": status} if status is not None else None
        return sort_newest_first(await list_as(self._require_store(), Delivery, where=where))

    async def list_delivery_views(self, *, status: DeliveryStatus | None = None) -> list[DeliveryView]:
        """Like :meth:`list_deliveries`, with driver and customer records attached."""
        deliveries = await self.list_deliveries(status=status)
        drivers = {driver.id: driver for driver in await self.list_drivers()}
        customers = {customer.id: customer for customer in await self.list_customers()}
        return [
            DeliveryView(
                delivery=delivery,
                driver=drivers.get(delivery.driver_id) if delivery.driver_id else None,
                customer=customers.get(delivery.customer_id),
            )
            for delivery in deliveries
        ]

    async def deliveries_for_driver(self, driver_id: str) -> list[Delivery]:
        return sort_newest_first(await list_as(self._require_store(), Delivery, where={"driver_id": driver_id}))

    async def latest_delivery_for_customer(self, customer_id: str) -> Delivery | None:
        ordered = sort_newest_first(await list_as(self._require_store(), Delivery, where={"customer_id": customer_id}))
        return ordered[0] if ordered else None

    async def update_delivery(self, delivery_id: str, **changes: Any) -> Delivery:
        """Edit the addresses of a pending delivery.

        Status and driver changes go through :meth:`transition_delivery`,
        :meth:`assign_driver` and :meth:`unassign_driver`.
        """
        unknown = set(changes) - _DELIVERY_EDITABLE_FIELDS
        if unknown:
            raise RejectedError("field cannot be edited here", field=sorted(unknown)[0])
        store = self._require_store()
        async with self._locks.hold((EntityKind.DELIVERY, delivery_id)):
            delivery = await self.get_delivery(delivery_id)
            if delivery.status != DeliveryStatus.PENDING:
                raise RejectedError(f"cannot edit a {delivery.status} delivery", field="status")
            updated = await store.update(EntityKind.DELIVERY, delivery_id, {**changes, "updated_at": self._clock()})
            await self._require_fanout().notify(EntityKind.DELIVERY, delivery_id)
        return expect(updated, Delivery)

    async def _geocode(self, address: str) -> Position | None:
        geocoder = self._geocoder
        if geocoder is None:
            return None
        try:
            return await geocoder.geocode(address)
        except OracleError as exc:
            _logger.warning("Geocoding %r failed: %s", address, exc)
            return None

    async def transition_delivery(
        self,
        delivery_id: str,
        new_status: DeliveryStatus | str,
        final_position: Any = None,
    ) -> Delivery:
        """Request a status change; see :meth:`DeliveryStateMachine.transition`.

        Starting a trip geocodes the origin and destination first when a
        geocoder is configured. A geocoding failure does not block the trip.
        """
        lifecycle = self._require_lifecycle()
        origin_position: Position | None = None
        destination_position: Position | None = None
        if str(new_status).upper() == DeliveryStatus.IN_PROGRESS and self._geocoder is not None:
            delivery = await self.get_delivery(delivery_id)
            if delivery.status == DeliveryStatus.PENDING:
                origin_position, destination_position = await asyncio.gather(
                    self._geocode(delivery.origin_address),
                    self._geocode(delivery.destination_address),
                )
        return await lifecycle.transition(
            delivery_id,
            new_status,
            final_position,
            origin_position=origin_position,
            destination_position=destination_position,
        )

    async def assign_driver(self, delivery_id: str, driver_id: str) -> Delivery:
        return await self._require_lifecycle().assign_driver(delivery_id, driver_id)

    async def unassign_driver(self, delivery_id: str) -> Delivery:
        return await self._require_lifecycle().unassign_driver(delivery_id)

    async def route_preview(self, delivery_id: str) -> Route:
        """Advisory route from the driver's position via origin to destination."""
        directions = self._directions
        if directions is None:
            raise ConfigError("No directions oracle configured")
        delivery = await self.get_delivery(delivery_id)
        origin = delivery.origin_position or await self._geocode(delivery.origin_address)
        destination = delivery.destination_position or await self._geocode(delivery.destination_address)
        if origin is None or destination is None:
            raise RejectedError("origin/destination could not be resolved to coordinates", field="origin_address")
        start: Position | None = None
        if delivery.driver_id is not None:
            with contextlib.suppress(NotFoundError):
                start = (await self.get_driver(delivery.driver_id)).position
        return await directions.route(start, origin, destination)

    # ------------------------------------------------------------------
    # Observers
    # ------------------------------------------------------------------

    def connect(self, observer_id: str) -> ObserverChannel:
        """Open a push channel for *observer_id* (identity is trusted as given)."""
        channel = ObserverChannel(
            observer_id,
            capacity=self._config.channel_capacity,
            overflow_policy=self._config.overflow_policy,
        )
        self._registry.connect(observer_id, channel)
        return channel

    def disconnect(self, observer_id: str) -> None:
        self._registry.disconnect(observer_id)

    def touch(self, observer_id: str) -> bool:
        """Heartbeat for observers that are not reading from their channel."""
        return self._registry.touch(observer_id)

    def subscribe(self, observer_id: str, target: SubscriptionTarget) -> Subscription:
        return self._registry.subscribe(observer_id, target)

    def unsubscribe(self, handle: str | Subscription) -> bool:
        return self._registry.unsubscribe(handle)
