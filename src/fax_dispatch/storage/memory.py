"""In-memory FaxStore, used by tests and dry runs."""

from __future__ import annotations

import asyncio
from collections.abc import Sequence
from dataclasses import replace
from datetime import UTC, date, datetime

from fax_dispatch.core.metrics import merge_metric_buckets
from fax_dispatch.core.state_machine import BatchStatus
from fax_dispatch.errors import StorageError
from fax_dispatch.storage.records import apply_batch_update, apply_submission_update
from fax_dispatch.types.models import (
    ActivityRecord,
    BatchRecord,
    BatchUpdate,
    DocumentActivity,
    MetricBucket,
    SubmissionRecord,
    SubmissionUpdate,
)

__all__ = ["InMemoryFaxStore"]


def _utc_now() -> datetime:
    return datetime.now(UTC)


class InMemoryFaxStore:
    """Dictionary-backed store with the same semantics as the SQLite store.

    Records handed out are copies; mutating them does not change the store.
    """

    def __init__(self) -> None:
        self._lock: asyncio.Lock = asyncio.Lock()
        self._batches: dict[int, BatchRecord] = {}
        self._submissions: dict[int, SubmissionRecord] = {}
        self._ids_by_handle: dict[str, int] = {}
        self._activities: dict[int, ActivityRecord] = {}
        self._metrics: dict[tuple[date, int], MetricBucket] = {}
        self._next_batch_id: int = 1
        self._next_submission_id: int = 1
        self._next_activity_id: int = 1
        self._closed: bool = False

    def _check_open(self) -> None:
        if self._closed:
            msg = "Store is closed"
            raise StorageError(msg)

    async def create_batch(
        self,
        *,
        batch_name: str,
        owner: str,
        total_count: int,
        destination: str,
        file_path: str,
        file_size: int | None,
    ) -> int:
        async with self._lock:
            self._check_open()
            batch_id = self._next_batch_id
            self._next_batch_id += 1
            self._batches[batch_id] = BatchRecord(
                id=batch_id,
                batch_name=batch_name,
                owner=owner,
                total_count=total_count,
                destination=destination,
                file_path=file_path,
                file_size=file_size,
                status=BatchStatus.PENDING,
                created_at=_utc_now(),
            )
            return batch_id

    async def update_batch(self, batch_id: int, update: BatchUpdate) -> BatchRecord:
        async with self._lock:
            self._check_open()
            record = self._batches.get(batch_id)
            if record is None:
                msg = f"Unknown batch: {batch_id}"
                raise StorageError(msg)
            updated = apply_batch_update(record, update)
            self._batches[batch_id] = updated
            return replace(updated)

    async def create_submission(self, record: SubmissionRecord) -> int:
        async with self._lock:
            self._check_open()
            if record.batch_id not in self._batches:
                msg = f"Unknown batch: {record.batch_id}"
                raise StorageError(msg)
            if record.fax_handle in self._ids_by_handle:
                msg = f"Duplicate fax handle: {record.fax_handle}"
                raise StorageError(msg)
            submission_id = self._next_submission_id
            self._next_submission_id += 1
            now = _utc_now()
            self._submissions[submission_id] = replace(
                record,
                id=submission_id,
                queued_at=record.queued_at or now,
                created_at=now,
                updated_at=now,
            )
            self._ids_by_handle[record.fax_handle] = submission_id
            return submission_id

    async def update_submission(self, fax_handle: str, update: SubmissionUpdate) -> SubmissionRecord:
        async with self._lock:
            self._check_open()
            submission_id = self._ids_by_handle.get(fax_handle)
            if submission_id is None:
                msg = f"Unknown fax handle: {fax_handle}"
                raise StorageError(msg)
            updated = apply_submission_update(self._submissions[submission_id], update, _utc_now())
            self._submissions[submission_id] = updated
            return replace(updated)

    async def create_activity(self, submission_id: int, activity: DocumentActivity) -> int:
        async with self._lock:
            self._check_open()
            if submission_id not in self._submissions:
                msg = f"Unknown submission: {submission_id}"
                raise StorageError(msg)
            activity_id = self._next_activity_id
            self._next_activity_id += 1
            self._activities[activity_id] = ActivityRecord(
                id=activity_id,
                submission_id=submission_id,
                activity=activity,
                created_at=_utc_now(),
            )
            return activity_id

    async def upsert_metric_bucket(self, bucket: MetricBucket) -> MetricBucket:
        async with self._lock:
            self._check_open()
            key = (bucket.bucket_date, bucket.hour)
            existing = self._metrics.get(key)
            merged = replace(bucket) if existing is None else merge_metric_buckets(existing, bucket)
            self._metrics[key] = merged
            return replace(merged)

    async def get_batch(self, batch_id: int) -> BatchRecord | None:
        record = self._batches.get(batch_id)
        return replace(record) if record is not None else None

    async def get_submission_by_handle(self, fax_handle: str) -> SubmissionRecord | None:
        submission_id = self._ids_by_handle.get(fax_handle)
        if submission_id is None:
            return None
        return replace(self._submissions[submission_id])

    async def get_submissions_by_batch(self, batch_id: int) -> list[SubmissionRecord]:
        return [replace(s) for s in self._submissions.values() if s.batch_id == batch_id]

    async def get_activities_for_submission(self, submission_id: int) -> list[ActivityRecord]:
        return [replace(a) for a in self._activities.values() if a.submission_id == submission_id]

    async def get_recent_batches(self, limit: int = 50) -> list[BatchRecord]:
        newest_first = sorted(self._batches.values(), key=lambda b: b.id, reverse=True)
        return [replace(b) for b in newest_first[:limit]]

    async def list_submissions_queued_between(self, start: datetime, end: datetime) -> list[SubmissionRecord]:
        return [
            replace(s)
            for s in self._submissions.values()
            if s.queued_at is not None and start <= s.queued_at < end
        ]

    async def get_metric_buckets(self, start: date, end: date) -> Sequence[MetricBucket]:
        selected = [b for key, b in self._metrics.items() if start <= key[0] <= end]
        return [replace(b) for b in sorted(selected, key=lambda b: (b.bucket_date, b.hour))]

    async def close(self) -> None:
        self._closed = True
