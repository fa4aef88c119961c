"""Entity store interface and the validation shared by its implementations."""

from __future__ import annotations

from collections.abc import Callable, Mapping, Sequence
from typing import Any, Protocol, TypeVar

from pydantic import ValidationError

from pydelivery.exceptions import RejectedError, StoreError
from pydelivery.models.entities import (
    IMMUTABLE_FIELDS,
    MODEL_BY_KIND,
    Admin,
    Customer,
    Delivery,
    Driver,
    Entity,
    EntityKind,
)

Predicate = Callable[[Entity], bool]
EntityT = TypeVar("EntityT", Driver, Customer, Admin, Delivery)

_KIND_BY_MODEL: dict[type, EntityKind] = {model: kind for kind, model in MODEL_BY_KIND.items()}


class EntityStore(Protocol):
    """Structural store interface used by every core component.

    Implementations own the canonical copy of every entity. Each mutation
    is atomic per entity: readers observe either the old or the new record,
    never a partial write. Records are frozen models, so a returned snapshot
    can be handed to observers without copying.

    ``get``/``update``/``delete`` raise :class:`~pydelivery.exceptions.NotFoundError`
    for an absent id; ``create``/``update`` raise
    :class:`~pydelivery.exceptions.RejectedError` for invalid fields and
    :class:`~pydelivery.exceptions.StoreError` for backend failures.
    """

    async def get(self, kind: EntityKind, entity_id: str) -> Entity:
        ...

    async def list(
        self,
        kind: EntityKind,
        where: Mapping[str, Any] | None = None,
        predicate: Predicate | None = None,
    ) -> Sequence[Entity]:
        ...

    async def create(self, kind: EntityKind, fields: Mapping[str, Any]) -> Entity:
        ...

    async def update(self, kind: EntityKind, entity_id: str, fields: Mapping[str, Any]) -> Entity:
        ...

    async def delete(self, kind: EntityKind, entity_id: str) -> None:
        ...


def _rejected_from_validation(exc: ValidationError) -> RejectedError:
    errors = exc.errors()
    if not errors:
        return RejectedError(str(exc))
    first = errors[0]
    field = ".".join(str(part) for part in first.get("loc", ()) if part != "__root__") or None
    return RejectedError(str(first.get("msg", "invalid value")), field=field)


def build_entity(kind: EntityKind, fields: Mapping[str, Any]) -> Entity:
    """Validate *fields* into a new record of *kind*."""
    model = MODEL_BY_KIND[kind]
    payload = dict(fields)
    declared_kind = payload.pop("kind", kind)
    if declared_kind != kind:
        raise RejectedError(f"record kind {declared_kind!r} does not match {kind!r}", field="kind")
    try:
        return model.model_validate(payload)
    except ValidationError as exc:
        raise _rejected_from_validation(exc) from exc


def apply_partial(entity: Entity, fields: Mapping[str, Any]) -> Entity:
    """Return a re-validated copy of *entity* with *fields* overwritten.

    Keys in *fields* overwrite the stored values field by field; absent
    keys keep their current value.
    """
    model = type(entity)
    for key in fields:
        if key in IMMUTABLE_FIELDS:
            raise RejectedError("field cannot be changed", field=key)
        if key not in model.model_fields:
            raise RejectedError(f"unknown field for {entity.kind}", field=key)
    merged = entity.model_dump()
    merged.update(fields)
    merged.pop("kind", None)
    try:
        return model.model_validate(merged)
    except ValidationError as exc:
        raise _rejected_from_validation(exc) from exc


def matches(entity: Entity, where: Mapping[str, Any] | None, predicate: Predicate | None) -> bool:
    """Equality filter on top-level fields, plus an optional predicate."""
    if where:
        for key, expected in where.items():
            if key not in type(entity).model_fields:
                raise RejectedError(f"unknown filter field for {entity.kind}", field=key)
            if getattr(entity, key) != expected:
                return False
    if predicate is not None and not predicate(entity):
        return False
    return True


def expect(record: Entity, model: type[EntityT]) -> EntityT:
    """Narrow a store record to *model*; any other type is a backend fault."""
    if not isinstance(record, model):
        raise StoreError(f"store returned a {type(record).__name__} where a {model.__name__} was expected")
    return record


async def get_as(store: EntityStore, model: type[EntityT], entity_id: str) -> EntityT:
    """``store.get`` for the kind of *model*, typed as *model*."""
    return expect(await store.get(_KIND_BY_MODEL[model], entity_id), model)


async def list_as(
    store: EntityStore,
    model: type[EntityT],
    where: Mapping[str, Any] | None = None,
    predicate: Predicate | None = None,
) -> list[EntityT]:
    """``store.list`` for the kind of *model*, typed as *model*."""
    records = await store.list(_KIND_BY_MODEL[model], where=where, predicate=predicate)
    return [expect(record, model) for record in records]
