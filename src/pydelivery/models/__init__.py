"""Typed records for the pydelivery core."""

from pydelivery.models._base import ContactInfo, Position, parse_timestamp
from pydelivery.models.entities import (
    ACTIVE_STATUSES,
    Admin,
    Customer,
    Delivery,
    DeliveryStatus,
    DeliveryView,
    Driver,
    Entity,
    EntityKind,
    EntityRecord,
)
from pydelivery.models.subscription import (
    Notification,
    PositionAck,
    Subscription,
    SubscriptionTarget,
    TargetKind,
)

__all__ = [
    "ACTIVE_STATUSES",
    "Admin",
    "ContactInfo",
    "Customer",
    "Delivery",
    "DeliveryStatus",
    "DeliveryView",
    "Driver",
    "Entity",
    "EntityKind",
    "EntityRecord",
    "Notification",
    "Position",
    "PositionAck",
    "Subscription",
    "SubscriptionTarget",
    "TargetKind",
    "parse_timestamp",
]
