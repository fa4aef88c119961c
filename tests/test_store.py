from __future__ import annotations

import json
from collections.abc import Mapping
from pathlib import Path

import pytest

from pydelivery.exceptions import NotFoundError, RejectedError, StoreError
from pydelivery.models import Delivery, DeliveryStatus, Driver, Entity, EntityKind, Position
from pydelivery.store import FileEntityStore, InMemoryEntityStore, seed_fixtures
from pydelivery.store.base import expect, get_as, list_as


class FailingStore(InMemoryEntityStore):
    """In-memory store whose writes can be made to fail on demand."""

    def __init__(self) -> None:
        super().__init__()
        self.fail_writes = False

    async def _persist(self, kind: EntityKind, records: Mapping[str, Entity]) -> None:
        if self.fail_writes:
            raise StoreError("disk full")


@pytest.mark.asyncio
async def test_create_get_update_delete_roundtrip() -> None:
    store = InMemoryEntityStore()
    driver = await store.create(EntityKind.DRIVER, {"name": "Rudi"})

    assert await store.get(EntityKind.DRIVER, driver.id) == driver

    updated = await store.update(EntityKind.DRIVER, driver.id, {"position": {"latitude": 1, "longitude": 2}})
    assert isinstance(updated, Driver)
    assert updated.position == Position(latitude=1, longitude=2)
    assert updated.name == "Rudi"

    await store.delete(EntityKind.DRIVER, driver.id)
    with pytest.raises(NotFoundError):
        await store.get(EntityKind.DRIVER, driver.id)


@pytest.mark.asyncio
async def test_snapshot_is_not_affected_by_later_updates() -> None:
    store = InMemoryEntityStore()
    before = await store.create(EntityKind.CUSTOMER, {"name": "Dewi"})
    await store.update(EntityKind.CUSTOMER, before.id, {"name": "Dewi P"})

    assert before.name == "Dewi"
    assert (await store.get(EntityKind.CUSTOMER, before.id)).name == "Dewi P"


@pytest.mark.asyncio
async def test_update_rejects_immutable_and_unknown_fields() -> None:
    store = InMemoryEntityStore()
    driver = await store.create(EntityKind.DRIVER, {"name": "Rudi"})

    with pytest.raises(RejectedError) as exc_info:
        await store.update(EntityKind.DRIVER, driver.id, {"id": "other"})
    assert exc_info.value.field == "id"

    with pytest.raises(RejectedError) as exc_info:
        await store.update(EntityKind.DRIVER, driver.id, {"status": "PENDING"})
    assert exc_info.value.field == "status"


@pytest.mark.asyncio
async def test_create_rejects_invalid_fields_with_field_name() -> None:
    store = InMemoryEntityStore()
    with pytest.raises(RejectedError) as exc_info:
        await store.create(EntityKind.DRIVER, {"name": "Rudi", "position": {"latitude": 200, "longitude": 0}})
    assert exc_info.value.field is not None
    assert exc_info.value.field.startswith("position")


@pytest.mark.asyncio
async def test_create_rejects_duplicate_id() -> None:
    store = InMemoryEntityStore()
    await store.create(EntityKind.DRIVER, {"id": "d1", "name": "Rudi"})
    with pytest.raises(RejectedError) as exc_info:
        await store.create(EntityKind.DRIVER, {"id": "d1", "name": "Other"})
    assert exc_info.value.field == "id"


@pytest.mark.asyncio
async def test_list_filters_by_where_and_predicate() -> None:
    store = InMemoryEntityStore()
    await seed_fixtures(store)

    d1 = await store.list(EntityKind.DELIVERY, where={"driver_id": "d1"})
    assert {record.id for record in d1} == {"del1", "del3"}

    open_d1 = await store.list(
        EntityKind.DELIVERY,
        where={"driver_id": "d1"},
        predicate=lambda record: isinstance(record, Delivery) and not record.is_terminal,
    )
    assert [record.id for record in open_d1] == ["del1"]

    with pytest.raises(RejectedError):
        await store.list(EntityKind.DELIVERY, where={"colour": "red"})


@pytest.mark.asyncio
async def test_failed_write_leaves_previous_state_visible() -> None:
    store = FailingStore()
    driver = await store.create(EntityKind.DRIVER, {"name": "Rudi"})
    store.fail_writes = True

    with pytest.raises(StoreError):
        await store.update(EntityKind.DRIVER, driver.id, {"name": "Changed"})
    with pytest.raises(StoreError):
        await store.create(EntityKind.DRIVER, {"name": "New"})

    assert (await store.get(EntityKind.DRIVER, driver.id)).name == "Rudi"
    assert len(await store.list(EntityKind.DRIVER)) == 1


@pytest.mark.asyncio
async def test_seed_fixtures_is_idempotent() -> None:
    store = InMemoryEntityStore()
    first = await seed_fixtures(store)
    second = await seed_fixtures(store)

    assert first == 7
    assert second == 0
    delivered = await store.get(EntityKind.DELIVERY, "del3")
    assert isinstance(delivered, Delivery)
    assert delivered.status == DeliveryStatus.DELIVERED
    assert delivered.final_position is not None


# ------------------------------------------------------------------
# File store
# ------------------------------------------------------------------


@pytest.mark.asyncio
async def test_file_store_persists_across_reopen(tmp_path: Path) -> None:
    store = await FileEntityStore.open(tmp_path)
    await seed_fixtures(store)
    await store.update(EntityKind.DRIVER, "d1", {"position": {"latitude": -6.3, "longitude": 106.9}})

    reopened = await FileEntityStore.open(tmp_path)
    driver = await reopened.get(EntityKind.DRIVER, "d1")

    assert isinstance(driver, Driver)
    assert driver.position == Position(latitude=-6.3, longitude=106.9)
    assert {record.id for record in await reopened.list(EntityKind.DELIVERY)} == {"del1", "del2", "del3"}


@pytest.mark.asyncio
async def test_file_store_writes_one_json_array_per_kind(tmp_path: Path) -> None:
    store = await FileEntityStore.open(tmp_path)
    await store.create(EntityKind.CUSTOMER, {"id": "c9", "name": "Sari", "contact": {"email": "S@x.io"}})

    payload = json.loads((tmp_path / "customers.json").read_text(encoding="utf-8"))
    assert payload[0]["id"] == "c9"
    assert payload[0]["kind"] == "customer"
    assert payload[0]["contact"]["email"] == "s@x.io"
    assert not (tmp_path / "drivers.json").exists()


@pytest.mark.asyncio
async def test_file_store_rejects_mixed_kinds(tmp_path: Path) -> None:
    (tmp_path / "drivers.json").write_text(
        json.dumps([{"kind": "customer", "id": "c1", "name": "Dewi"}]),
        encoding="utf-8",
    )
    with pytest.raises(StoreError):
        await FileEntityStore.open(tmp_path)


@pytest.mark.asyncio
async def test_file_store_rejects_corrupt_file(tmp_path: Path) -> None:
    (tmp_path / "deliveries.json").write_text("{not json", encoding="utf-8")
    with pytest.raises(StoreError):
        await FileEntityStore.open(tmp_path)


@pytest.mark.asyncio
async def test_file_store_sees_commits_from_another_instance(tmp_path: Path) -> None:
    writer = await FileEntityStore.open(tmp_path)
    await writer.create(EntityKind.DRIVER, {"id": "d1", "name": "Rudi"})
    reader = await FileEntityStore.open(tmp_path)

    await writer.update(
        EntityKind.DRIVER,
        "d1",
        {"position": {"latitude": 10, "longitude": 20}, "position_observed_at": 1_700_000_000},
    )
    driver = await reader.get(EntityKind.DRIVER, "d1")

    assert isinstance(driver, Driver)
    assert driver.position == Position(latitude=10, longitude=20)
    assert [record.id for record in await reader.list(EntityKind.DRIVER)] == ["d1"]


@pytest.mark.asyncio
async def test_file_store_writers_do_not_lose_each_others_records(tmp_path: Path) -> None:
    first = await FileEntityStore.open(tmp_path)
    second = await FileEntityStore.open(tmp_path)

    await first.create(EntityKind.CUSTOMER, {"id": "c1", "name": "Dewi"})
    await second.create(EntityKind.CUSTOMER, {"id": "c2", "name": "Sari"})
    await first.update(EntityKind.CUSTOMER, "c2", {"name": "Sari W."})

    payload = json.loads((tmp_path / "customers.json").read_text(encoding="utf-8"))
    assert {record["id"]: record["name"] for record in payload} == {"c1": "Dewi", "c2": "Sari W."}
    reopened = await FileEntityStore.open(tmp_path)
    assert {record.id for record in await reopened.list(EntityKind.CUSTOMER)} == {"c1", "c2"}


@pytest.mark.asyncio
async def test_file_store_delete_by_another_instance_is_visible(tmp_path: Path) -> None:
    first = await FileEntityStore.open(tmp_path)
    await first.create(EntityKind.DRIVER, {"id": "d1", "name": "Rudi"})
    second = await FileEntityStore.open(tmp_path)

    await second.delete(EntityKind.DRIVER, "d1")

    with pytest.raises(NotFoundError):
        await first.get(EntityKind.DRIVER, "d1")


@pytest.mark.asyncio
async def test_typed_accessors_narrow_records() -> None:
    store = InMemoryEntityStore()
    await seed_fixtures(store)

    delivery = await get_as(store, Delivery, "del1")
    assert delivery.id == "del1"
    assert {record.id for record in await list_as(store, Delivery, where={"status": DeliveryStatus.PENDING})} <= {
        "del1",
        "del2",
        "del3",
    }
    with pytest.raises(NotFoundError):
        await get_as(store, Driver, "del1")
    with pytest.raises(StoreError):
        expect(delivery, Driver)
