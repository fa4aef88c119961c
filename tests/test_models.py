"""Tests for the pydantic entity and subscription models."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest
from pydantic import ValidationError

from pydelivery.models import (
    Admin,
    ContactInfo,
    Customer,
    Delivery,
    DeliveryStatus,
    Driver,
    EntityKind,
    Notification,
    Position,
    SubscriptionTarget,
    TargetKind,
    parse_timestamp,
)

# ------------------------------------------------------------------
# Timestamps
# ------------------------------------------------------------------


class TestParseTimestamp:
    def test_epoch_seconds(self) -> None:
        assert parse_timestamp(1_700_000_000) == datetime.fromtimestamp(1_700_000_000, tz=UTC)

    def test_epoch_milliseconds(self) -> None:
        assert parse_timestamp(1_700_000_000_000) == datetime.fromtimestamp(1_700_000_000, tz=UTC)

    def test_naive_datetime_assumed_utc(self) -> None:
        parsed = parse_timestamp(datetime(2024, 5, 1, 12, 0))
        assert parsed == datetime(2024, 5, 1, 12, 0, tzinfo=UTC)

    def test_none_passthrough(self) -> None:
        assert parse_timestamp(None) is None

    def test_iso_string_with_zone_normalized_to_utc(self) -> None:
        parsed = parse_timestamp("2026-10-19T12:15:12.509375Z")
        assert parsed == datetime(2026, 10, 19, 12, 15, 12, 509375, tzinfo=UTC)
        assert parsed is not None and parsed.utcoffset() == timedelta(0)

    def test_iso_string_with_offset(self) -> None:
        assert parse_timestamp("2026-10-19T19:15:00+07:00") == datetime(2026, 10, 19, 12, 15, tzinfo=UTC)

    def test_naive_iso_string_assumed_utc(self) -> None:
        assert parse_timestamp("2026-10-19T12:15:00") == datetime(2026, 10, 19, 12, 15, tzinfo=UTC)

    def test_dumped_json_timestamp_validates_back(self) -> None:
        driver = Driver(id="d1", name="Rudi", position_observed_at=datetime(2026, 1, 1, tzinfo=UTC))
        assert Driver.model_validate_json(driver.model_dump_json()) == driver

    @pytest.mark.parametrize("value", [True, "yesterday", "", float("nan"), float("inf"), [1]])
    def test_rejects_non_numeric(self, value: object) -> None:
        with pytest.raises(ValueError):
            parse_timestamp(value)


# ------------------------------------------------------------------
# Position / contact
# ------------------------------------------------------------------


class TestPosition:
    def test_bounds_inclusive(self) -> None:
        assert Position(latitude=90, longitude=-180).as_lat_lng() == (90.0, -180.0)

    def test_out_of_range_rejected(self) -> None:
        with pytest.raises(ValidationError):
            Position(latitude=95, longitude=10)

    def test_nan_rejected(self) -> None:
        with pytest.raises(ValidationError):
            Position(latitude=float("nan"), longitude=10)

    def test_lng_lat_order(self) -> None:
        assert Position(latitude=-6.2, longitude=106.8).as_lng_lat() == (106.8, -6.2)

    def test_frozen(self) -> None:
        pos = Position(latitude=1, longitude=2)
        with pytest.raises(ValidationError):
            pos.latitude = 3  # type: ignore[misc]


def test_contact_email_is_lowercased_and_stripped() -> None:
    contact = ContactInfo(email="  Dewi.P@Example.COM ")
    assert contact.email == "dewi.p@example.com"


# ------------------------------------------------------------------
# Entities
# ------------------------------------------------------------------


def test_driver_defaults() -> None:
    driver = Driver(name="Rudi")
    assert driver.kind == EntityKind.DRIVER
    assert driver.position is None
    assert driver.position_observed_at is None
    assert len(driver.id) == 32


def test_blank_name_rejected() -> None:
    with pytest.raises(ValidationError):
        Customer(name="   ")


def test_unknown_field_rejected() -> None:
    with pytest.raises(ValidationError):
        Customer(name="Dewi", loyalty_points=3)  # type: ignore[call-arg]


def test_admin_repr_hides_credential_hash() -> None:
    admin = Admin(name="Root", credential_hash="scrypt$secret")
    assert "scrypt$secret" not in repr(admin)


def test_delivery_requires_addresses() -> None:
    with pytest.raises(ValidationError):
        Delivery(customer_id="c1", origin_address="", destination_address="B")


@pytest.mark.parametrize(
    ("status", "terminal"),
    [
        (DeliveryStatus.PENDING, False),
        (DeliveryStatus.IN_PROGRESS, False),
        (DeliveryStatus.DELIVERED, True),
        (DeliveryStatus.CANCELLED, True),
    ],
)
def test_delivery_terminal_statuses(status: DeliveryStatus, terminal: bool) -> None:
    delivery = Delivery(customer_id="c1", origin_address="A", destination_address="B", status=status)
    assert delivery.is_terminal is terminal


# ------------------------------------------------------------------
# Subscriptions / notifications
# ------------------------------------------------------------------


class TestSubscriptionTarget:
    def test_single_entity_target_requires_id(self) -> None:
        with pytest.raises(ValidationError):
            SubscriptionTarget(kind=TargetKind.DRIVER)

    def test_fleet_target_rejects_id(self) -> None:
        with pytest.raises(ValidationError):
            SubscriptionTarget(kind=TargetKind.ALL_DRIVERS, target_id="d1")

    def test_targets_are_hashable_and_equal_by_value(self) -> None:
        assert SubscriptionTarget.driver("d1") == SubscriptionTarget(kind=TargetKind.DRIVER, target_id="d1")
        assert len({SubscriptionTarget.all_deliveries(), SubscriptionTarget.all_deliveries()}) == 1


def test_notification_wire_form_carries_entity_snapshot() -> None:
    driver = Driver(id="d1", name="Rudi", position=Position(latitude=-6.2, longitude=106.8))
    wire = Notification(kind=EntityKind.DRIVER, entity_id="d1", sequence=3, entity=driver).to_wire()

    assert wire["kind"] == "driver"
    assert wire["sequence"] == 3
    assert wire["deleted"] is False
    assert wire["entity"]["kind"] == "driver"
    assert wire["entity"]["position"] == {"latitude": -6.2, "longitude": 106.8}


def test_tombstone_notification_has_no_entity() -> None:
    wire = Notification(kind=EntityKind.DELIVERY, entity_id="x", sequence=1, deleted=True).to_wire()
    assert wire["entity"] is None
    assert wire["deleted"] is True
