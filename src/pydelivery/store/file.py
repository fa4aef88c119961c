"""Durable JSON-file entity store.

One file per entity kind (``drivers.json``, ``deliveries.json``, ...)
holding a JSON array of records keyed by their opaque ``id``. Relations
stay as id references; nothing is embedded across kinds.

Several processes may share one directory (see the MQTT bridge). Each
file is replaced atomically, every read first checks whether the file
changed since it was loaded, and every read-modify-write holds a
per-kind lock file so concurrent writers cannot lose each other's
commits.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import tempfile
from collections.abc import AsyncIterator, Mapping
from contextlib import asynccontextmanager
from pathlib import Path

from filelock import FileLock, Timeout
from pydantic import TypeAdapter, ValidationError

from pydelivery.exceptions import StoreError
from pydelivery.models.entities import Entity, EntityKind, EntityRecord
from pydelivery.store.memory import InMemoryEntityStore

_logger = logging.getLogger(__name__)

_RECORDS_ADAPTER: TypeAdapter[list[Entity]] = TypeAdapter(list[EntityRecord])

_FILE_NAMES: dict[EntityKind, str] = {
    EntityKind.DRIVER: "drivers.json",
    EntityKind.CUSTOMER: "customers.json",
    EntityKind.ADMIN: "admins.json",
    EntityKind.DELIVERY: "deliveries.json",
}

# (inode, mtime_ns, size) of a kind's file, or None when it does not exist.
_Signature = tuple[int, int, int] | None


def _signature_of(stat: os.stat_result) -> tuple[int, int, int]:
    return stat.st_ino, stat.st_mtime_ns, stat.st_size


def _stat(path: Path) -> _Signature:
    try:
        return _signature_of(path.stat())
    except FileNotFoundError:
        return None
    except OSError as exc:
        raise StoreError(f"Cannot stat {path}: {exc}") from exc


def _write_atomic(path: Path, text: str) -> _Signature:
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(text)
            handle.flush()
            os.fsync(handle.fileno())
            signature = _signature_of(os.fstat(handle.fileno()))
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise
    return signature


class FileEntityStore(InMemoryEntityStore):
    """Store that writes every committed collection to disk before exposing it.

    Reads are served from memory and reloaded whenever the backing file
    was replaced by another process. Use :meth:`open` to construct one so
    existing files are loaded first.
    """

    def __init__(self, root: Path, *, lock_timeout: float = 10.0) -> None:
        super().__init__()
        self._root = root
        self._signatures: dict[EntityKind, _Signature] = {}
        self._file_locks: dict[EntityKind, FileLock] = {
            kind: FileLock(root / f".{name}.lock", timeout=lock_timeout, thread_local=False)
            for kind, name in _FILE_NAMES.items()
        }

    @property
    def root(self) -> Path:
        return self._root

    @classmethod
    async def open(cls, root: str | os.PathLike[str], *, lock_timeout: float = 10.0) -> FileEntityStore:
        store = cls(Path(root), lock_timeout=lock_timeout)
        await asyncio.to_thread(store._root.mkdir, parents=True, exist_ok=True)
        for kind in EntityKind:
            await store._reload_if_changed(kind)
        _logger.info("Opened file store at %s", store._root)
        return store

    def _path(self, kind: EntityKind) -> Path:
        return self._root / _FILE_NAMES[kind]

    def _is_current(self, kind: EntityKind, signature: _Signature) -> bool:
        return kind in self._signatures and self._signatures[kind] == signature

    def _read_kind(self, kind: EntityKind) -> tuple[dict[str, Entity], _Signature]:
        path = self._path(kind)
        try:
            with path.open(encoding="utf-8") as handle:
                signature = _signature_of(os.fstat(handle.fileno()))
                raw = handle.read()
        except FileNotFoundError:
            return {}, None
        except OSError as exc:
            raise StoreError(f"Cannot load {path}: {exc}") from exc
        try:
            records = _RECORDS_ADAPTER.validate_json(raw) if raw.strip() else []
        except ValidationError as exc:
            raise StoreError(f"Cannot load {path}: {exc}") from exc
        loaded: dict[str, Entity] = {}
        for record in records:
            if record.kind != kind:
                raise StoreError(f"{path} contains a {record.kind} record")
            loaded[record.id] = record
        return loaded, signature

    async def _reload_if_changed(self, kind: EntityKind) -> None:
        """Reload *kind* from disk if its file changed; caller holds the kind's write lock."""
        if self._is_current(kind, await asyncio.to_thread(_stat, self._path(kind))):
            return
        records, signature = await asyncio.to_thread(self._read_kind, kind)
        if kind in self._signatures:
            _logger.debug("Reloaded %s from %s (%d records)", kind, self._path(kind), len(records))
        self._load(kind, records)
        self._signatures[kind] = signature

    async def _sync(self, kind: EntityKind) -> None:
        if self._is_current(kind, await asyncio.to_thread(_stat, self._path(kind))):
            return
        async with self._write_locks[kind]:
            await self._reload_if_changed(kind)

    @asynccontextmanager
    async def _exclusive(self, kind: EntityKind) -> AsyncIterator[None]:
        async with self._write_locks[kind]:
            lock = self._file_locks[kind]
            try:
                await asyncio.to_thread(lock.acquire)
            except Timeout as exc:
                raise StoreError(f"Timed out waiting for {lock.lock_file}") from exc
            try:
                await self._reload_if_changed(kind)
                yield
            finally:
                await asyncio.to_thread(lock.release)

    async def _persist(self, kind: EntityKind, records: Mapping[str, Entity]) -> None:
        payload = [record.model_dump(mode="json") for record in records.values()]
        text = json.dumps(payload, ensure_ascii=False, indent=2)
        path = self._path(kind)
        try:
            signature = await asyncio.to_thread(_write_atomic, path, text)
        except OSError as exc:
            raise StoreError(f"Cannot write {path}: {exc}") from exc
        self._signatures[kind] = signature
