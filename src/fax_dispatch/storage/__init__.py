"""FaxStore implementations and the config-driven factory."""

from __future__ import annotations

from fax_dispatch.core.config import StorageConfig, StorageKind
from fax_dispatch.storage.memory import InMemoryFaxStore
from fax_dispatch.storage.sqlite import SqliteFaxStore
from fax_dispatch.types.protocols import FaxStore

__all__ = ["InMemoryFaxStore", "SqliteFaxStore", "open_store"]


async def open_store(config: StorageConfig) -> FaxStore:
    """Create and initialize the store selected by ``config.kind``."""
    if config.kind == StorageKind.MEMORY:
        return InMemoryFaxStore()
    store = SqliteFaxStore(config.database_path)
    await store.initialize()
    return store
