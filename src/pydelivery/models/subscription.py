"""Subscription and push-notification models."""

from __future__ import annotations

import uuid
from datetime import datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator

from pydelivery.models._base import Timestamp, utcnow
from pydelivery.models.entities import EntityKind, EntityRecord


class TargetKind(StrEnum):
    DELIVERY = "delivery"
    DRIVER = "driver"
    ALL_DRIVERS = "all_drivers"
    ALL_DELIVERIES = "all_deliveries"

    @property
    def needs_id(self) -> bool:
        return self in (TargetKind.DELIVERY, TargetKind.DRIVER)


class SubscriptionTarget(BaseModel):
    """What an observer wants to watch.

    ``target_id`` is required for single-entity targets and must be
    absent for the fleet-wide ones.
    """

    model_config = ConfigDict(frozen=True)

    kind: TargetKind
    target_id: str | None = None

    @model_validator(mode="after")
    def _check_target_id(self) -> SubscriptionTarget:
        if self.kind.needs_id and not self.target_id:
            raise ValueError(f"{self.kind} target requires target_id")
        if not self.kind.needs_id and self.target_id is not None:
            raise ValueError(f"{self.kind} target does not take target_id")
        return self

    @classmethod
    def delivery(cls, delivery_id: str) -> SubscriptionTarget:
        return cls(kind=TargetKind.DELIVERY, target_id=delivery_id)

    @classmethod
    def driver(cls, driver_id: str) -> SubscriptionTarget:
        return cls(kind=TargetKind.DRIVER, target_id=driver_id)

    @classmethod
    def all_drivers(cls) -> SubscriptionTarget:
        return cls(kind=TargetKind.ALL_DRIVERS)

    @classmethod
    def all_deliveries(cls) -> SubscriptionTarget:
        return cls(kind=TargetKind.ALL_DELIVERIES)


class Subscription(BaseModel):
    """Handle returned by ``subscribe``; pass it back to ``unsubscribe``."""

    model_config = ConfigDict(frozen=True)

    handle: str = Field(default_factory=lambda: uuid.uuid4().hex)
    observer_id: str
    target: SubscriptionTarget
    created_at: Timestamp = Field(default_factory=utcnow)


class Notification(BaseModel):
    """One pushed state change.

    ``entity`` is the authoritative post-commit snapshot re-read from the
    store. When the entity no longer exists ``deleted`` is ``True`` and
    ``entity`` is ``None``. ``sequence`` increases strictly per
    ``(kind, entity_id)`` in commit order.
    """

    model_config = ConfigDict(frozen=True)

    kind: EntityKind
    entity_id: str
    sequence: int
    entity: EntityRecord | None = None
    deleted: bool = False
    emitted_at: datetime = Field(default_factory=utcnow)

    def to_wire(self) -> dict[str, Any]:
        """JSON-safe dict for a long-lived push connection."""
        return self.model_dump(mode="json")


class PositionAck(BaseModel):
    """Result of a position report that passed validation.

    ``applied`` is ``False`` for stale (older than the stored observation)
    or throttled reports; those are accepted but change nothing.
    """

    model_config = ConfigDict(frozen=True)

    driver_id: str
    applied: bool
    observed_at: datetime
    reason: str | None = None
