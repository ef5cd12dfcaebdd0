"""Data models for fax-dispatch.

This module defines the dataclasses exchanged between the dispatcher, the
submission monitors, the fax backend and the persistence layer. Backend
payloads are immutable; persisted records are mutable so that stores can
apply partial updates in place.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from pathlib import Path

from fax_dispatch.core.state_machine import BatchStatus, SubmissionStatus


@dataclass(slots=True, frozen=True)
class SessionInfo:
    """Session details returned by a successful backend login."""

    user: str | None = None
    account: str | None = None
    server: str | None = None
    server_version: str | None = None


@dataclass(slots=True, frozen=True)
class SendJobRequest:
    """One job-creation request: a single destination and the shared attachment."""

    destination: str
    recipient_name: str
    attachment_ref: str
    priority: str = "Normal"
    billing_code1: str = ""
    billing_code2: str = ""
    hold_for_preview: bool = False
    coversheet_template_id: str | None = None


@dataclass(slots=True, frozen=True)
class JobStatus:
    """Backend view of a send job."""

    job_id: str
    status: str
    condition: str | None = None


@dataclass(slots=True, frozen=True)
class FaxDocument:
    """Converted, transmittable artifact produced from a job.

    The document condition is authoritative for success or failure.
    """

    document_id: str
    condition: str | None = None
    page_count: int | None = None


@dataclass(slots=True, frozen=True)
class DocumentActivity:
    """One backend-reported history entry for a document."""

    activity_id: str | None
    message: str
    timestamp: datetime | None = None
    user_id: str | None = None
    user_display_name: str | None = None
    condition: str | None = None
    status: str | None = None
    is_diagnostic: bool = False


@dataclass(slots=True, frozen=True)
class BatchRequest:
    """Validated request to dispatch one batch of identical faxes."""

    file_path: Path
    destination: str
    total_count: int
    batch_name: str
    owner: str = "system"
    recipient_name: str | None = None
    priority: str = "Normal"
    billing_code1: str = ""
    billing_code2: str = ""
    chunk_size: int = 100


@dataclass(slots=True)
class BatchRecord:
    """Persisted batch row."""

    id: int
    batch_name: str
    owner: str
    total_count: int
    destination: str
    file_path: str
    file_size: int | None = None
    completed_count: int = 0
    failed_count: int = 0
    status: BatchStatus = BatchStatus.PENDING
    created_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    error_message: str | None = None


@dataclass(slots=True)
class SubmissionRecord:
    """Persisted submission row; one per requested unit."""

    id: int
    batch_id: int
    fax_handle: str
    destination: str
    recipient_name: str
    status: SubmissionStatus
    priority: str = "Normal"
    send_job_id: str | None = None
    document_id: str | None = None
    condition: str | None = None
    page_count: int | None = None
    queued_at: datetime | None = None
    conversion_started_at: datetime | None = None
    conversion_completed_at: datetime | None = None
    transmission_started_at: datetime | None = None
    transmission_completed_at: datetime | None = None
    conversion_ms: int | None = None
    transmission_ms: int | None = None
    total_ms: int | None = None
    error_message: str | None = None
    retry_count: int = 0
    billing_code1: str = ""
    billing_code2: str = ""
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass(slots=True)
class ActivityRecord:
    """Persisted activity row, immutable once written."""

    id: int
    submission_id: int
    activity: DocumentActivity
    created_at: datetime | None = None


@dataclass(slots=True)
class BatchUpdate:
    """Partial batch update; ``None`` fields are left unchanged."""

    status: BatchStatus | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    completed_count: int | None = None
    failed_count: int | None = None
    error_message: str | None = None


@dataclass(slots=True)
class SubmissionUpdate:
    """Partial submission update keyed by fax handle; ``None`` fields are left unchanged."""

    status: SubmissionStatus | None = None
    condition: str | None = None
    document_id: str | None = None
    page_count: int | None = None
    conversion_started_at: datetime | None = None
    conversion_completed_at: datetime | None = None
    transmission_started_at: datetime | None = None
    transmission_completed_at: datetime | None = None
    conversion_ms: int | None = None
    transmission_ms: int | None = None
    total_ms: int | None = None
    error_message: str | None = None


@dataclass(slots=True)
class MetricBucket:
    """Hourly rollup of submission outcomes and phase durations (milliseconds)."""

    bucket_date: date
    hour: int
    total_submitted: int = 0
    total_succeeded: int = 0
    total_failed: int = 0
    total_cancelled: int = 0
    avg_conversion_ms: int | None = None
    avg_transmission_ms: int | None = None
    avg_total_ms: int | None = None
    max_conversion_ms: int | None = None
    max_transmission_ms: int | None = None
    total_pages: int = 0
    total_batches: int = 0


@dataclass(slots=True, frozen=True)
class BatchProgress:
    """Live snapshot of the batch currently being dispatched."""

    batch_id: int
    batch_name: str
    total_count: int
    processed_count: int
    failed_count: int
    outstanding_monitors: int
    is_processing: bool
    status: BatchStatus

    @property
    def percentage(self) -> float:
        """Share of units whose creation call succeeded, rounded to 2 decimals."""
        if self.total_count <= 0:
            return 0.0
        return round(self.processed_count / self.total_count * 100.0, 2)


@dataclass(slots=True, frozen=True)
class BatchDetails:
    """Persisted batch row together with all of its submissions."""

    batch: BatchRecord
    submissions: list[SubmissionRecord] = field(default_factory=list)

    def count_by_status(self) -> dict[SubmissionStatus, int]:
        counts: dict[SubmissionStatus, int] = {}
        for submission in self.submissions:
            counts[submission.status] = counts.get(submission.status, 0) + 1
        return counts
