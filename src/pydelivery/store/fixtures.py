"""Demo dataset for mock mode.

Loaded through the regular :class:`~pydelivery.store.base.EntityStore`
interface, so business logic never knows it is running on fixtures.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any

from pydelivery.exceptions import RejectedError
from pydelivery.models.entities import DeliveryStatus, EntityKind
from pydelivery.store.base import EntityStore

_logger = logging.getLogger(__name__)

_SEEDED_AT = datetime(2024, 1, 1, 8, 0, tzinfo=UTC)

FIXTURE_DRIVERS: list[dict[str, Any]] = [
    {
        "id": "d1",
        "name": "Rudi Hartono",
        "contact": {"email": "rudi.h@example.com", "phone": "081200000001", "address": "Jl. Kebon Sirih 10, Jakarta"},
        "position": {"latitude": -6.2088, "longitude": 106.8456},
        "position_observed_at": _SEEDED_AT,
    },
    {
        "id": "d2",
        "name": "Maya Kusuma",
        "contact": {"email": "maya.k@example.com", "phone": "081200000002", "address": "Jl. Thamrin 5, Jakarta"},
        "position": {"latitude": -6.2188, "longitude": 106.8556},
        "position_observed_at": _SEEDED_AT,
    },
]

FIXTURE_CUSTOMERS: list[dict[str, Any]] = [
    {
        "id": "c1",
        "name": "Dewi Pratama",
        "contact": {"email": "dewi.p@example.com", "phone": "085700000001", "address": "Jl. Hayam Wuruk 7, Jakarta"},
    },
    {
        "id": "c2",
        "name": "Agus Salim",
        "contact": {"email": "agus.s@example.com", "phone": "085700000002", "address": "Jl. Asia Afrika 8, Bandung"},
    },
]

FIXTURE_DELIVERIES: list[dict[str, Any]] = [
    {
        "id": "del1",
        "customer_id": "c2",
        "customer_name": "Agus Salim",
        "driver_id": "d1",
        "origin_address": "Monas, Jakarta",
        "destination_address": "Bundaran HI, Jakarta",
        "status": DeliveryStatus.IN_PROGRESS,
    },
    {
        "id": "del2",
        "customer_id": "c1",
        "customer_name": "Dewi Pratama",
        "driver_id": "d2",
        "origin_address": "Blok M, Jakarta",
        "destination_address": "Kota Tua, Jakarta",
        "status": DeliveryStatus.PENDING,
    },
    {
        "id": "del3",
        "customer_id": "c2",
        "customer_name": "Agus Salim",
        "driver_id": "d1",
        "origin_address": "Bandung",
        "destination_address": "Surabaya",
        "status": DeliveryStatus.DELIVERED,
        "final_position": {"latitude": -7.2575, "longitude": 112.7521},
    },
]


async def seed_fixtures(store: EntityStore) -> int:
    """Load the demo dataset, skipping records that already exist.

    Returns the number of records created.
    """
    created = 0
    for kind, rows in (
        (EntityKind.DRIVER, FIXTURE_DRIVERS),
        (EntityKind.CUSTOMER, FIXTURE_CUSTOMERS),
        (EntityKind.DELIVERY, FIXTURE_DELIVERIES),
    ):
        for row in rows:
            try:
                await store.create(kind, row)
            except RejectedError as exc:
                if exc.field != "id":
                    raise
                continue
            created += 1
    _logger.info("Seeded %d fixture records", created)
    return created
