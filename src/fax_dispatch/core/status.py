"""Read-side view of live and persisted batch progress."""

from __future__ import annotations

from fax_dispatch.core.dispatcher import BatchDispatcher
from fax_dispatch.types.models import BatchDetails, BatchProgress, BatchRecord
from fax_dispatch.types.protocols import FaxStore

__all__ = ["BatchStatusAggregator"]

DEFAULT_RECENT_LIMIT = 50


class BatchStatusAggregator:
    """Compose dispatcher state and stored rows for polling clients.

    Without a dispatcher (read-only tools) only persisted rows are available.
    """

    def __init__(self, dispatcher: BatchDispatcher | None, store: FaxStore) -> None:
        self._dispatcher: BatchDispatcher | None = dispatcher
        self._store: FaxStore = store

    def current_progress(self) -> BatchProgress | None:
        """Snapshot of the batch being dispatched, or None when idle."""
        if self._dispatcher is None:
            return None
        state = self._dispatcher.current_batch
        if state is None:
            return None
        return state.snapshot()

    async def get_batch_details(self, batch_id: int) -> BatchDetails | None:
        """Persisted batch row with all of its submissions, or None if unknown."""
        batch = await self._store.get_batch(batch_id)
        if batch is None:
            return None
        submissions = await self._store.get_submissions_by_batch(batch_id)
        return BatchDetails(batch=batch, submissions=submissions)

    async def get_recent_batches(self, limit: int = DEFAULT_RECENT_LIMIT) -> list[BatchRecord]:
        if limit < 1:
            msg = "limit must be at least 1"
            raise ValueError(msg)
        return await self._store.get_recent_batches(limit)
