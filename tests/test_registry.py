from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta

import pytest

from pydelivery.channels import ObserverChannel
from pydelivery.exceptions import RejectedError
from pydelivery.models import EntityKind, SubscriptionTarget
from pydelivery.registry import SubscriptionRegistry


class _Clock:
    def __init__(self) -> None:
        self.now = datetime(2026, 1, 1, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


def _registry(clock: _Clock | None = None) -> SubscriptionRegistry:
    return SubscriptionRegistry(clock=clock or _Clock(), idle_timeout=timedelta(seconds=60))


def test_subscribe_requires_connected_observer() -> None:
    registry = _registry()
    with pytest.raises(RejectedError) as exc_info:
        registry.subscribe("ghost", SubscriptionTarget.driver("d1"))
    assert exc_info.value.field == "observer_id"


def test_resolve_driver_includes_all_drivers_subscribers() -> None:
    registry = _registry()
    for observer_id in ("customer", "admin", "other"):
        registry.connect(observer_id, ObserverChannel(observer_id))
    registry.subscribe("customer", SubscriptionTarget.driver("d1"))
    registry.subscribe("admin", SubscriptionTarget.all_drivers())
    registry.subscribe("other", SubscriptionTarget.driver("d2"))

    assert sorted(registry.resolve(EntityKind.DRIVER, "d1")) == ["admin", "customer"]
    assert sorted(registry.resolve(EntityKind.DRIVER, "d2")) == ["admin", "other"]


def test_resolve_delivery_includes_all_deliveries_subscribers() -> None:
    registry = _registry()
    registry.connect("customer", ObserverChannel("customer"))
    registry.connect("admin", ObserverChannel("admin"))
    registry.subscribe("customer", SubscriptionTarget.delivery("del1"))
    registry.subscribe("admin", SubscriptionTarget.all_deliveries())

    assert sorted(registry.resolve(EntityKind.DELIVERY, "del1")) == ["admin", "customer"]
    assert registry.resolve(EntityKind.DELIVERY, "del2") == ["admin"]
    assert registry.resolve(EntityKind.CUSTOMER, "c1") == []


def test_resolve_deduplicates_observer() -> None:
    registry = _registry()
    registry.connect("admin", ObserverChannel("admin"))
    registry.subscribe("admin", SubscriptionTarget.driver("d1"))
    registry.subscribe("admin", SubscriptionTarget.driver("d1"))
    registry.subscribe("admin", SubscriptionTarget.all_drivers())

    assert registry.resolve(EntityKind.DRIVER, "d1") == ["admin"]
    assert len(registry) == 3


def test_unsubscribe_unknown_handle_is_noop() -> None:
    registry = _registry()
    registry.connect("obs", ObserverChannel("obs"))
    subscription = registry.subscribe("obs", SubscriptionTarget.driver("d1"))

    assert registry.unsubscribe(subscription) is True
    assert registry.unsubscribe(subscription.handle) is False
    assert registry.unsubscribe("missing") is False
    assert registry.resolve(EntityKind.DRIVER, "d1") == []


def test_disconnect_removes_all_subscriptions_and_closes_channel() -> None:
    registry = _registry()
    channel = ObserverChannel("obs")
    registry.connect("obs", channel)
    registry.subscribe("obs", SubscriptionTarget.driver("d1"))
    registry.subscribe("obs", SubscriptionTarget.all_deliveries())

    assert registry.disconnect("obs") == 2
    assert channel.closed
    assert len(registry) == 0
    assert registry.resolve(EntityKind.DELIVERY, "x") == []
    assert registry.disconnect("obs") == 0


def test_reconnect_replaces_channel_and_drops_old_subscriptions() -> None:
    registry = _registry()
    old = ObserverChannel("obs")
    registry.connect("obs", old)
    registry.subscribe("obs", SubscriptionTarget.driver("d1"))

    new = ObserverChannel("obs")
    registry.connect("obs", new)

    assert old.closed
    assert registry.channel_for("obs") is new
    assert registry.subscriptions_for("obs") == []


def test_reap_evicts_only_idle_observers() -> None:
    clock = _Clock()
    registry = _registry(clock)
    registry.connect("idle", ObserverChannel("idle"))
    registry.connect("busy", ObserverChannel("busy"))
    registry.subscribe("idle", SubscriptionTarget.all_drivers())

    clock.advance(45)
    assert registry.touch("busy") is True
    clock.advance(30)

    assert registry.reap() == ["idle"]
    assert registry.is_connected("busy")
    assert not registry.is_connected("idle")
    assert registry.resolve(EntityKind.DRIVER, "d1") == []
    assert registry.touch("idle") is False


def test_disconnect_all() -> None:
    registry = _registry()
    registry.connect("a", ObserverChannel("a"))
    registry.connect("b", ObserverChannel("b"))

    assert registry.disconnect_all() == 2
    assert registry.observer_count == 0


def test_draining_channel_keeps_observer_alive() -> None:
    clock = _Clock()
    registry = _registry(clock)
    channel = ObserverChannel("admin")
    registry.connect("admin", channel)
    registry.subscribe("admin", SubscriptionTarget.all_drivers())

    for _ in range(7):
        clock.advance(10)
        channel.get_nowait()
        assert registry.reap() == []

    assert registry.is_connected("admin")
    assert not channel.closed


@pytest.mark.asyncio
async def test_observer_waiting_on_channel_is_not_reaped() -> None:
    clock = _Clock()
    registry = _registry(clock)
    channel = ObserverChannel("customer")
    registry.connect("customer", channel)
    reader = asyncio.create_task(channel.get())
    await asyncio.sleep(0)

    clock.advance(300)
    assert registry.reap() == []

    reader.cancel()
    with pytest.raises(asyncio.CancelledError):
        await reader
    assert registry.reap() == ["customer"]


def test_old_channel_reads_do_not_refresh_reconnected_observer() -> None:
    clock = _Clock()
    registry = _registry(clock)
    old = ObserverChannel("obs")
    registry.connect("obs", old)
    registry.connect("obs", ObserverChannel("obs"))

    clock.advance(90)
    old.get_nowait()

    assert registry.reap() == ["obs"]
