"""Protocol definitions for the engine's external collaborators.

The dispatch engine consumes the fax backend and the persistence layer only
through these structural interfaces, so concrete clients and stores can be
swapped (real HTTP client, dry-run simulation, in-memory or SQLite store)
without touching the core.
"""

from __future__ import annotations

from collections.abc import Sequence
from datetime import date, datetime
from pathlib import Path
from typing import Protocol, runtime_checkable

from fax_dispatch.types.models import (
    ActivityRecord,
    BatchRecord,
    BatchUpdate,
    DocumentActivity,
    FaxDocument,
    JobStatus,
    MetricBucket,
    SendJobRequest,
    SessionInfo,
    SubmissionRecord,
    SubmissionUpdate,
)


@runtime_checkable
class FaxBackend(Protocol):
    """Document-conversion-and-transmission backend."""

    def is_logged_in(self) -> bool:
        """Return True if a session is currently active."""
        ...

    async def login(self) -> SessionInfo:
        """Open a session.

        Raises:
            AuthenticationError: If credentials are rejected
        """
        ...

    async def logout(self) -> bool:
        """Close the session; returns False if the backend refused."""
        ...

    async def upload_attachment(self, file_path: Path) -> str:
        """Upload a document once and return a reference reusable by many jobs."""
        ...

    async def create_job(self, request: SendJobRequest) -> str:
        """Create a send job and return its backend-assigned handle."""
        ...

    async def get_job_status(self, job_id: str) -> JobStatus:
        ...

    async def get_documents_for_job(self, job_id: str) -> list[FaxDocument]:
        ...

    async def get_activities(self, document_id: str) -> list[DocumentActivity]:
        ...


@runtime_checkable
class FaxStore(Protocol):
    """Durable storage of batches, submissions, activities and metric buckets.

    Submission updates are keyed by fax handle. Stores must reject updates to
    a submission that already reached a terminal status.
    """

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
        ...

    async def update_batch(self, batch_id: int, update: BatchUpdate) -> BatchRecord:
        ...

    async def create_submission(self, record: SubmissionRecord) -> int:
        """Insert a submission; ``record.id`` is ignored and the new id returned."""
        ...

    async def update_submission(self, fax_handle: str, update: SubmissionUpdate) -> SubmissionRecord:
        ...

    async def create_activity(self, submission_id: int, activity: DocumentActivity) -> int:
        ...

    async def upsert_metric_bucket(self, bucket: MetricBucket) -> MetricBucket:
        """Merge ``bucket`` into the stored bucket for the same date and hour."""
        ...

    async def get_batch(self, batch_id: int) -> BatchRecord | None:
        ...

    async def get_submission_by_handle(self, fax_handle: str) -> SubmissionRecord | None:
        ...

    async def get_submissions_by_batch(self, batch_id: int) -> list[SubmissionRecord]:
        ...

    async def get_activities_for_submission(self, submission_id: int) -> list[ActivityRecord]:
        ...

    async def get_recent_batches(self, limit: int = 50) -> list[BatchRecord]:
        ...

    async def list_submissions_queued_between(self, start: datetime, end: datetime) -> list[SubmissionRecord]:
        """Return submissions whose ``queued_at`` lies in ``[start, end)``."""
        ...

    async def get_metric_buckets(self, start: date, end: date) -> Sequence[MetricBucket]:
        ...

    async def close(self) -> None:
        ...


class Clock(Protocol):
    """Source of wall time, monotonic time and suspension."""

    def now(self) -> datetime:
        """Timezone-aware wall-clock time used for persisted timestamps."""
        ...

    def monotonic(self) -> float:
        """Monotonic seconds used for elapsed-time measurements."""
        ...

    async def sleep(self, seconds: float) -> None:
        ...
