"""SQLite-backed FaxStore.

Timestamps are stored as UTC ISO-8601 text with microsecond precision, so
lexical order matches chronological order and range queries on ``queued_at``
work directly in SQL. Read-modify-write sequences (status updates, metric
merges) run under a single asyncio lock.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence
from dataclasses import replace
from datetime import UTC, date, datetime
from pathlib import Path
from typing import Final

import aiosqlite

from fax_dispatch.core.metrics import merge_metric_buckets
from fax_dispatch.core.state_machine import BatchStatus, SubmissionStatus
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
from fax_dispatch.utils.logging import get_logger

__all__ = ["SCHEMA", "SqliteFaxStore"]

SCHEMA: Final[str] = """
CREATE TABLE IF NOT EXISTS fax_batches (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    batch_name TEXT NOT NULL,
    owner TEXT NOT NULL,
    total_count INTEGER NOT NULL,
    completed_count INTEGER NOT NULL DEFAULT 0,
    failed_count INTEGER NOT NULL DEFAULT 0,
    status TEXT NOT NULL DEFAULT 'pending',
    created_at TEXT NOT NULL,
    started_at TEXT,
    completed_at TEXT,
    file_path TEXT NOT NULL,
    file_size INTEGER,
    destination TEXT NOT NULL,
    error_message TEXT
);

CREATE TABLE IF NOT EXISTS fax_submissions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    batch_id INTEGER NOT NULL REFERENCES fax_batches(id) ON DELETE CASCADE,
    fax_handle TEXT NOT NULL UNIQUE,
    send_job_id TEXT,
    document_id TEXT,
    destination TEXT NOT NULL,
    recipient_name TEXT NOT NULL,
    status TEXT NOT NULL,
    condition TEXT,
    priority TEXT NOT NULL DEFAULT 'Normal',
    page_count INTEGER,
    queued_at TEXT,
    conversion_started_at TEXT,
    conversion_completed_at TEXT,
    transmission_started_at TEXT,
    transmission_completed_at TEXT,
    conversion_ms INTEGER,
    transmission_ms INTEGER,
    total_ms INTEGER,
    error_message TEXT,
    retry_count INTEGER NOT NULL DEFAULT 0,
    billing_code1 TEXT NOT NULL DEFAULT '',
    billing_code2 TEXT NOT NULL DEFAULT '',
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS fax_activities (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    submission_id INTEGER NOT NULL REFERENCES fax_submissions(id) ON DELETE CASCADE,
    activity_id TEXT,
    message TEXT NOT NULL,
    activity_timestamp TEXT,
    user_id TEXT,
    user_display_name TEXT,
    condition TEXT,
    status TEXT,
    is_diagnostic INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS fax_metrics (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    metric_date TEXT NOT NULL,
    metric_hour INTEGER NOT NULL,
    total_submitted INTEGER NOT NULL DEFAULT 0,
    total_succeeded INTEGER NOT NULL DEFAULT 0,
    total_failed INTEGER NOT NULL DEFAULT 0,
    total_cancelled INTEGER NOT NULL DEFAULT 0,
    avg_conversion_ms INTEGER,
    avg_transmission_ms INTEGER,
    avg_total_ms INTEGER,
    max_conversion_ms INTEGER,
    max_transmission_ms INTEGER,
    total_pages INTEGER NOT NULL DEFAULT 0,
    total_batches INTEGER NOT NULL DEFAULT 0,
    UNIQUE (metric_date, metric_hour)
);

CREATE INDEX IF NOT EXISTS idx_submissions_batch ON fax_submissions(batch_id);
CREATE INDEX IF NOT EXISTS idx_submissions_queued ON fax_submissions(queued_at);
CREATE INDEX IF NOT EXISTS idx_activities_submission ON fax_activities(submission_id);
CREATE INDEX IF NOT EXISTS idx_batches_created ON fax_batches(created_at);
"""

_SUBMISSION_COLUMNS: Final[tuple[str, ...]] = (
    "batch_id",
    "fax_handle",
    "send_job_id",
    "document_id",
    "destination",
    "recipient_name",
    "status",
    "condition",
    "priority",
    "page_count",
    "queued_at",
    "conversion_started_at",
    "conversion_completed_at",
    "transmission_started_at",
    "transmission_completed_at",
    "conversion_ms",
    "transmission_ms",
    "total_ms",
    "error_message",
    "retry_count",
    "billing_code1",
    "billing_code2",
    "created_at",
    "updated_at",
)

_METRIC_COLUMNS: Final[tuple[str, ...]] = (
    "total_submitted",
    "total_succeeded",
    "total_failed",
    "total_cancelled",
    "avg_conversion_ms",
    "avg_transmission_ms",
    "avg_total_ms",
    "max_conversion_ms",
    "max_transmission_ms",
    "total_pages",
    "total_batches",
)


def _to_db(moment: datetime | None) -> str | None:
    if moment is None:
        return None
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=UTC)
    return moment.astimezone(UTC).isoformat(timespec="microseconds")


def _from_db(value: str | None) -> datetime | None:
    if value is None:
        return None
    return datetime.fromisoformat(value)


def _batch_from_row(row: aiosqlite.Row) -> BatchRecord:
    return BatchRecord(
        id=row["id"],
        batch_name=row["batch_name"],
        owner=row["owner"],
        total_count=row["total_count"],
        destination=row["destination"],
        file_path=row["file_path"],
        file_size=row["file_size"],
        completed_count=row["completed_count"],
        failed_count=row["failed_count"],
        status=BatchStatus(row["status"]),
        created_at=_from_db(row["created_at"]),
        started_at=_from_db(row["started_at"]),
        completed_at=_from_db(row["completed_at"]),
        error_message=row["error_message"],
    )


def _submission_from_row(row: aiosqlite.Row) -> SubmissionRecord:
    return SubmissionRecord(
        id=row["id"],
        batch_id=row["batch_id"],
        fax_handle=row["fax_handle"],
        destination=row["destination"],
        recipient_name=row["recipient_name"],
        status=SubmissionStatus(row["status"]),
        priority=row["priority"],
        send_job_id=row["send_job_id"],
        document_id=row["document_id"],
        condition=row["condition"],
        page_count=row["page_count"],
        queued_at=_from_db(row["queued_at"]),
        conversion_started_at=_from_db(row["conversion_started_at"]),
        conversion_completed_at=_from_db(row["conversion_completed_at"]),
        transmission_started_at=_from_db(row["transmission_started_at"]),
        transmission_completed_at=_from_db(row["transmission_completed_at"]),
        conversion_ms=row["conversion_ms"],
        transmission_ms=row["transmission_ms"],
        total_ms=row["total_ms"],
        error_message=row["error_message"],
        retry_count=row["retry_count"],
        billing_code1=row["billing_code1"],
        billing_code2=row["billing_code2"],
        created_at=_from_db(row["created_at"]),
        updated_at=_from_db(row["updated_at"]),
    )


def _submission_values(record: SubmissionRecord) -> tuple[object, ...]:
    return (
        record.batch_id,
        record.fax_handle,
        record.send_job_id,
        record.document_id,
        record.destination,
        record.recipient_name,
        record.status.value,
        record.condition,
        record.priority,
        record.page_count,
        _to_db(record.queued_at),
        _to_db(record.conversion_started_at),
        _to_db(record.conversion_completed_at),
        _to_db(record.transmission_started_at),
        _to_db(record.transmission_completed_at),
        record.conversion_ms,
        record.transmission_ms,
        record.total_ms,
        record.error_message,
        record.retry_count,
        record.billing_code1,
        record.billing_code2,
        _to_db(record.created_at),
        _to_db(record.updated_at),
    )


def _activity_from_row(row: aiosqlite.Row) -> ActivityRecord:
    return ActivityRecord(
        id=row["id"],
        submission_id=row["submission_id"],
        activity=DocumentActivity(
            activity_id=row["activity_id"],
            message=row["message"],
            timestamp=_from_db(row["activity_timestamp"]),
            user_id=row["user_id"],
            user_display_name=row["user_display_name"],
            condition=row["condition"],
            status=row["status"],
            is_diagnostic=bool(row["is_diagnostic"]),
        ),
        created_at=_from_db(row["created_at"]),
    )


def _metric_from_row(row: aiosqlite.Row) -> MetricBucket:
    return MetricBucket(
        bucket_date=date.fromisoformat(row["metric_date"]),
        hour=row["metric_hour"],
        **{column: row[column] for column in _METRIC_COLUMNS},
    )


class SqliteFaxStore:
    """Durable store on a single SQLite database file.

    Example:
        >>> store = SqliteFaxStore(Path("data/fax-dispatch.db"))
        >>> await store.initialize()
        >>> batch_id = await store.create_batch(batch_name="May", owner="ops", ...)
    """

    def __init__(self, database_path: Path | str, *, logger_obj: logging.Logger | None = None) -> None:
        self._database_path: str = str(database_path)
        self._logger: logging.Logger = logger_obj or get_logger(__name__)
        self._db: aiosqlite.Connection | None = None
        self._lock: asyncio.Lock = asyncio.Lock()

    async def initialize(self) -> None:
        """Open the database and create the schema if needed.

        Raises:
            StorageError: If the file cannot be opened or the schema created
        """
        if self._db is not None:
            return
        if self._database_path != ":memory:":
            await asyncio.to_thread(Path(self._database_path).parent.mkdir, parents=True, exist_ok=True)
        try:
            db = await aiosqlite.connect(self._database_path)
            db.row_factory = aiosqlite.Row
            _ = await db.execute("PRAGMA foreign_keys = ON")
            _ = await db.executescript(SCHEMA)
            await db.commit()
        except aiosqlite.Error as exc:
            msg = f"Cannot open database {self._database_path}: {exc}"
            raise StorageError(msg) from exc
        self._db = db
        self._logger.info("Opened fax database %s", self._database_path)

    async def close(self) -> None:
        if self._db is not None:
            await self._db.close()
            self._db = None

    def _conn(self) -> aiosqlite.Connection:
        if self._db is None:
            msg = "Store not initialized. Call initialize() first."
            raise StorageError(msg)
        return self._db

    async def _fetch_one(self, sql: str, params: Sequence[object]) -> aiosqlite.Row | None:
        async with self._conn().execute(sql, params) as cursor:
            return await cursor.fetchone()

    async def _fetch_all(self, sql: str, params: Sequence[object]) -> list[aiosqlite.Row]:
        async with self._conn().execute(sql, params) as cursor:
            return list(await cursor.fetchall())

    # ------------------------------------------------------------------
    # Batches
    # ------------------------------------------------------------------

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
            db = self._conn()
            try:
                cursor = await db.execute(
                    """
                    INSERT INTO fax_batches
                        (batch_name, owner, total_count, destination, file_path, file_size, status, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        batch_name,
                        owner,
                        total_count,
                        destination,
                        file_path,
                        file_size,
                        BatchStatus.PENDING.value,
                        _to_db(datetime.now(UTC)),
                    ),
                )
                await db.commit()
            except aiosqlite.Error as exc:
                msg = f"Failed to create batch {batch_name!r}: {exc}"
                raise StorageError(msg) from exc
            if cursor.lastrowid is None:
                msg = f"Failed to create batch {batch_name!r}: no row id"
                raise StorageError(msg)
            return cursor.lastrowid

    async def update_batch(self, batch_id: int, update: BatchUpdate) -> BatchRecord:
        async with self._lock:
            row = await self._fetch_one("SELECT * FROM fax_batches WHERE id = ?", (batch_id,))
            if row is None:
                msg = f"Unknown batch: {batch_id}"
                raise StorageError(msg)
            updated = apply_batch_update(_batch_from_row(row), update)
            db = self._conn()
            try:
                _ = await db.execute(
                    """
                    UPDATE fax_batches
                    SET status = ?, started_at = ?, completed_at = ?,
                        completed_count = ?, failed_count = ?, error_message = ?
                    WHERE id = ?
                    """,
                    (
                        updated.status.value,
                        _to_db(updated.started_at),
                        _to_db(updated.completed_at),
                        updated.completed_count,
                        updated.failed_count,
                        updated.error_message,
                        batch_id,
                    ),
                )
                await db.commit()
            except aiosqlite.Error as exc:
                msg = f"Failed to update batch {batch_id}: {exc}"
                raise StorageError(msg) from exc
            return updated

    async def get_batch(self, batch_id: int) -> BatchRecord | None:
        row = await self._fetch_one("SELECT * FROM fax_batches WHERE id = ?", (batch_id,))
        return _batch_from_row(row) if row is not None else None

    async def get_recent_batches(self, limit: int = 50) -> list[BatchRecord]:
        rows = await self._fetch_all("SELECT * FROM fax_batches ORDER BY id DESC LIMIT ?", (limit,))
        return [_batch_from_row(row) for row in rows]

    # ------------------------------------------------------------------
    # Submissions
    # ------------------------------------------------------------------

    async def create_submission(self, record: SubmissionRecord) -> int:
        now = datetime.now(UTC)
        record = replace(record, queued_at=record.queued_at or now, created_at=now, updated_at=now)
        placeholders = ", ".join("?" for _ in _SUBMISSION_COLUMNS)
        async with self._lock:
            db = self._conn()
            try:
                cursor = await db.execute(
                    f"INSERT INTO fax_submissions ({', '.join(_SUBMISSION_COLUMNS)}) VALUES ({placeholders})",
                    _submission_values(record),
                )
                await db.commit()
            except aiosqlite.IntegrityError as exc:
                msg = f"Cannot store submission {record.fax_handle}: {exc}"
                raise StorageError(msg) from exc
            except aiosqlite.Error as exc:
                msg = f"Failed to create submission {record.fax_handle}: {exc}"
                raise StorageError(msg) from exc
            if cursor.lastrowid is None:
                msg = f"Failed to create submission {record.fax_handle}: no row id"
                raise StorageError(msg)
            return cursor.lastrowid

    async def update_submission(self, fax_handle: str, update: SubmissionUpdate) -> SubmissionRecord:
        async with self._lock:
            row = await self._fetch_one("SELECT * FROM fax_submissions WHERE fax_handle = ?", (fax_handle,))
            if row is None:
                msg = f"Unknown fax handle: {fax_handle}"
                raise StorageError(msg)
            updated = apply_submission_update(_submission_from_row(row), update, datetime.now(UTC))
            assignments = ", ".join(f"{column} = ?" for column in _SUBMISSION_COLUMNS)
            db = self._conn()
            try:
                _ = await db.execute(
                    f"UPDATE fax_submissions SET {assignments} WHERE id = ?",
                    (*_submission_values(updated), updated.id),
                )
                await db.commit()
            except aiosqlite.Error as exc:
                msg = f"Failed to update submission {fax_handle}: {exc}"
                raise StorageError(msg) from exc
            return updated

    async def get_submission_by_handle(self, fax_handle: str) -> SubmissionRecord | None:
        row = await self._fetch_one("SELECT * FROM fax_submissions WHERE fax_handle = ?", (fax_handle,))
        return _submission_from_row(row) if row is not None else None

    async def get_submissions_by_batch(self, batch_id: int) -> list[SubmissionRecord]:
        rows = await self._fetch_all("SELECT * FROM fax_submissions WHERE batch_id = ? ORDER BY id", (batch_id,))
        return [_submission_from_row(row) for row in rows]

    async def list_submissions_queued_between(self, start: datetime, end: datetime) -> list[SubmissionRecord]:
        rows = await self._fetch_all(
            "SELECT * FROM fax_submissions WHERE queued_at >= ? AND queued_at < ? ORDER BY id",
            (_to_db(start), _to_db(end)),
        )
        return [_submission_from_row(row) for row in rows]

    # ------------------------------------------------------------------
    # Activities
    # ------------------------------------------------------------------

    async def create_activity(self, submission_id: int, activity: DocumentActivity) -> int:
        async with self._lock:
            db = self._conn()
            try:
                cursor = await db.execute(
                    """
                    INSERT INTO fax_activities
                        (submission_id, activity_id, message, activity_timestamp, user_id,
                         user_display_name, condition, status, is_diagnostic, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        submission_id,
                        activity.activity_id,
                        activity.message,
                        _to_db(activity.timestamp),
                        activity.user_id,
                        activity.user_display_name,
                        activity.condition,
                        activity.status,
                        int(activity.is_diagnostic),
                        _to_db(datetime.now(UTC)),
                    ),
                )
                await db.commit()
            except aiosqlite.Error as exc:
                msg = f"Failed to store activity for submission {submission_id}: {exc}"
                raise StorageError(msg) from exc
            if cursor.lastrowid is None:
                msg = f"Failed to store activity for submission {submission_id}: no row id"
                raise StorageError(msg)
            return cursor.lastrowid

    async def get_activities_for_submission(self, submission_id: int) -> list[ActivityRecord]:
        rows = await self._fetch_all(
            "SELECT * FROM fax_activities WHERE submission_id = ? ORDER BY id",
            (submission_id,),
        )
        return [_activity_from_row(row) for row in rows]

    # ------------------------------------------------------------------
    # Metrics
    # ------------------------------------------------------------------

    async def upsert_metric_bucket(self, bucket: MetricBucket) -> MetricBucket:
        async with self._lock:
            row = await self._fetch_one(
                "SELECT * FROM fax_metrics WHERE metric_date = ? AND metric_hour = ?",
                (bucket.bucket_date.isoformat(), bucket.hour),
            )
            merged = bucket if row is None else merge_metric_buckets(_metric_from_row(row), bucket)
            columns = ("metric_date", "metric_hour", *_METRIC_COLUMNS)
            values = (
                merged.bucket_date.isoformat(),
                merged.hour,
                *(getattr(merged, column) for column in _METRIC_COLUMNS),  # pyright: ignore[reportAny]  # dataclass fields
            )
            assignments = ", ".join(f"{column} = excluded.{column}" for column in _METRIC_COLUMNS)
            db = self._conn()
            try:
                _ = await db.execute(
                    f"""
                    INSERT INTO fax_metrics ({", ".join(columns)})
                    VALUES ({", ".join("?" for _ in columns)})
                    ON CONFLICT (metric_date, metric_hour) DO UPDATE SET {assignments}
                    """,
                    values,
                )
                await db.commit()
            except aiosqlite.Error as exc:
                msg = f"Failed to store metrics for {bucket.bucket_date} h{bucket.hour}: {exc}"
                raise StorageError(msg) from exc
            return merged

    async def get_metric_buckets(self, start: date, end: date) -> Sequence[MetricBucket]:
        rows = await self._fetch_all(
            "SELECT * FROM fax_metrics WHERE metric_date >= ? AND metric_date <= ? ORDER BY metric_date, metric_hour",
            (start.isoformat(), end.isoformat()),
        )
        return [_metric_from_row(row) for row in rows]
