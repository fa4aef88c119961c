"""Entity store layer.

The store is the single source of truth for every entity. Two
interchangeable implementations exist: an in-memory store (tests and
mock mode) and a durable JSON-file store.
"""

from pydelivery.store.base import EntityStore
from pydelivery.store.file import FileEntityStore
from pydelivery.store.fixtures import seed_fixtures
from pydelivery.store.memory import InMemoryEntityStore

__all__ = ["EntityStore", "FileEntityStore", "InMemoryEntityStore", "seed_fixtures"]
