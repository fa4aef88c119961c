"""In-memory entity store.

Used directly for tests and mock mode, and as the read model behind
:class:`~pydelivery.store.file.FileEntityStore`.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Mapping, Sequence
from contextlib import asynccontextmanager
from typing import Any

from pydelivery.exceptions import NotFoundError, RejectedError
from pydelivery.models.entities import Entity, EntityKind
from pydelivery.store.base import Predicate, apply_partial, build_entity, matches

_logger = logging.getLogger(__name__)


class InMemoryEntityStore:
    """Dict-backed store with copy-on-write collections.

    Every mutation builds a new collection for the kind, hands it to
    :meth:`_persist`, and only swaps it in once that succeeds. A failed
    write therefore leaves the previous state fully visible.
    """

    def __init__(self) -> None:
        self._records: dict[EntityKind, dict[str, Entity]] = {kind: {} for kind in EntityKind}
        self._write_locks: dict[EntityKind, asyncio.Lock] = {kind: asyncio.Lock() for kind in EntityKind}

    async def _persist(self, kind: EntityKind, records: Mapping[str, Entity]) -> None:
        """Durability hook; the in-memory store has nothing to write."""

    async def _sync(self, kind: EntityKind) -> None:
        """Bring the read model of *kind* up to date before a read."""

    @asynccontextmanager
    async def _exclusive(self, kind: EntityKind) -> AsyncIterator[None]:
        """Serialize read-modify-write on *kind*."""
        async with self._write_locks[kind]:
            yield

    def _load(self, kind: EntityKind, records: Mapping[str, Entity]) -> None:
        self._records[kind] = dict(records)

    async def get(self, kind: EntityKind, entity_id: str) -> Entity:
        await self._sync(kind)
        record = self._records[kind].get(entity_id)
        if record is None:
            raise NotFoundError(kind, entity_id)
        return record

    async def list(
        self,
        kind: EntityKind,
        where: Mapping[str, Any] | None = None,
        predicate: Predicate | None = None,
    ) -> Sequence[Entity]:
        await self._sync(kind)
        return [record for record in self._records[kind].values() if matches(record, where, predicate)]

    async def create(self, kind: EntityKind, fields: Mapping[str, Any]) -> Entity:
        record = build_entity(kind, fields)
        async with self._exclusive(kind):
            current = self._records[kind]
            if record.id in current:
                raise RejectedError(f"{kind} {record.id!r} already exists", field="id")
            updated = dict(current)
            updated[record.id] = record
            await self._persist(kind, updated)
            self._records[kind] = updated
        _logger.debug("Created %s %s", kind, record.id)
        return record

    async def update(self, kind: EntityKind, entity_id: str, fields: Mapping[str, Any]) -> Entity:
        async with self._exclusive(kind):
            current = self._records[kind]
            existing = current.get(entity_id)
            if existing is None:
                raise NotFoundError(kind, entity_id)
            record = apply_partial(existing, fields)
            updated = dict(current)
            updated[entity_id] = record
            await self._persist(kind, updated)
            self._records[kind] = updated
        _logger.debug("Updated %s %s fields=%s", kind, entity_id, sorted(fields))
        return record

    async def delete(self, kind: EntityKind, entity_id: str) -> None:
        async with self._exclusive(kind):
            current = self._records[kind]
            if entity_id not in current:
                raise NotFoundError(kind, entity_id)
            updated = dict(current)
            del updated[entity_id]
            await self._persist(kind, updated)
            self._records[kind] = updated
        _logger.debug("Deleted %s %s", kind, entity_id)
