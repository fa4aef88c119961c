"""Entity records owned by the entity store.

Driver, Customer and Admin are a tagged variant: three flat records that
share a :class:`ContactInfo` component and carry a ``kind`` tag, rather
than a class hierarchy. :data:`EntityRecord` is the discriminated union
over all four record kinds.
"""

from __future__ import annotations

import uuid
from enum import StrEnum
from typing import Annotated, Literal

from pydantic import AfterValidator, Field, field_validator

from pydelivery.models._base import ContactInfo, DeliveryBaseModel, Position, Timestamp, utcnow


class EntityKind(StrEnum):
    DRIVER = "driver"
    CUSTOMER = "customer"
    ADMIN = "admin"
    DELIVERY = "delivery"


class DeliveryStatus(StrEnum):
    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    DELIVERED = "DELIVERED"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self in (DeliveryStatus.DELIVERED, DeliveryStatus.CANCELLED)


ACTIVE_STATUSES: frozenset[DeliveryStatus] = frozenset({DeliveryStatus.PENDING, DeliveryStatus.IN_PROGRESS})


def new_entity_id() -> str:
    return uuid.uuid4().hex


def _require_name(value: str) -> str:
    if not value:
        raise ValueError("name must be non-empty")
    return value


Name = Annotated[str, AfterValidator(_require_name)]


class Driver(DeliveryBaseModel):
    """A driver and their last accepted position report.

    ``position`` and ``position_observed_at`` stay ``None`` until the
    first report is accepted.
    """

    kind: Literal[EntityKind.DRIVER] = EntityKind.DRIVER
    id: str = Field(default_factory=new_entity_id)
    name: Name
    contact: ContactInfo = Field(default_factory=ContactInfo)
    position: Position | None = None
    position_observed_at: Timestamp | None = None
    created_at: Timestamp = Field(default_factory=utcnow)


class Customer(DeliveryBaseModel):
    kind: Literal[EntityKind.CUSTOMER] = EntityKind.CUSTOMER
    id: str = Field(default_factory=new_entity_id)
    name: Name
    contact: ContactInfo = Field(default_factory=ContactInfo)
    created_at: Timestamp = Field(default_factory=utcnow)


class Admin(DeliveryBaseModel):
    """An administrator.

    Only a salted hash of the credential is ever stored; see
    :mod:`pydelivery._crypto.hashing`.
    """

    kind: Literal[EntityKind.ADMIN] = EntityKind.ADMIN
    id: str = Field(default_factory=new_entity_id)
    name: Name
    contact: ContactInfo = Field(default_factory=ContactInfo)
    credential_hash: str = Field(..., repr=False)
    created_at: Timestamp = Field(default_factory=utcnow)


class Delivery(DeliveryBaseModel):
    """A delivery job.

    ``customer_name`` is a display-only copy of the customer's name taken
    at creation time; the customer record stays authoritative.
    ``final_position`` is set only on the transition to ``DELIVERED``.
    ``origin_position``/``destination_position`` are filled from the
    geocoder when the trip starts, if one is configured.
    """

    kind: Literal[EntityKind.DELIVERY] = EntityKind.DELIVERY
    id: str = Field(default_factory=new_entity_id)
    customer_id: str
    customer_name: str = ""
    driver_id: str | None = None
    origin_address: str
    destination_address: str
    status: DeliveryStatus = DeliveryStatus.PENDING
    final_position: Position | None = None
    origin_position: Position | None = None
    destination_position: Position | None = None
    created_at: Timestamp = Field(default_factory=utcnow)
    updated_at: Timestamp | None = None

    @field_validator("origin_address", "destination_address")
    @classmethod
    def _require_address(cls, value: str) -> str:
        if not value:
            raise ValueError("address must be non-empty")
        return value

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal


Entity = Driver | Customer | Admin | Delivery
EntityRecord = Annotated[Entity, Field(discriminator="kind")]

MODEL_BY_KIND: dict[EntityKind, type[Driver] | type[Customer] | type[Admin] | type[Delivery]] = {
    EntityKind.DRIVER: Driver,
    EntityKind.CUSTOMER: Customer,
    EntityKind.ADMIN: Admin,
    EntityKind.DELIVERY: Delivery,
}

# Fields the store assigns itself and a partial update may never touch.
IMMUTABLE_FIELDS: frozenset[str] = frozenset({"kind", "id", "created_at"})


def sort_newest_first(records: list[Delivery]) -> list[Delivery]:
    return sorted(records, key=lambda record: record.created_at, reverse=True)


class DeliveryView(DeliveryBaseModel):
    """A delivery with its driver and customer resolved for list screens.

    ``driver``/``customer`` are ``None`` when unassigned or since deleted.
    """

    delivery: Delivery
    driver: Driver | None = None
    customer: Customer | None = None
