"""Deterministic in-process fax backend for dry runs.

Every job produces one document. The document is absent for the first
``conversion_polls`` document queries, then reports ``Processing`` until the
``polls_to_complete``-th query, after which it reports its final condition.
Every ``fail_every``-th job ends ``Failed``; all others end ``Succeeded``.
No network traffic takes place and no fax is ever sent.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path

from fax_dispatch.types.models import (
    DocumentActivity,
    FaxDocument,
    JobStatus,
    SendJobRequest,
    SessionInfo,
)
from fax_dispatch.utils.logging import get_logger, log_with_context

__all__ = ["SimulatedFaxBackend"]

CONDITION_PROCESSING = "Processing"
CONDITION_SUCCEEDED = "Succeeded"
CONDITION_FAILED = "Failed"


@dataclass(slots=True)
class _SimulatedJob:
    job_id: str
    request: SendJobRequest
    will_fail: bool
    document_polls: int = 0
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))


class SimulatedFaxBackend:
    """FaxBackend implementation that fabricates plausible job progress."""

    def __init__(
        self,
        *,
        conversion_polls: int = 1,
        polls_to_complete: int = 3,
        page_count: int = 1,
        fail_every: int = 0,
        create_delay: float = 0.0,
        logger_obj: logging.Logger | None = None,
    ) -> None:
        if polls_to_complete <= conversion_polls:
            msg = "polls_to_complete must be greater than conversion_polls"
            raise ValueError(msg)
        if fail_every < 0:
            msg = "fail_every must not be negative"
            raise ValueError(msg)

        self._conversion_polls: int = conversion_polls
        self._polls_to_complete: int = polls_to_complete
        self._page_count: int = page_count
        self._fail_every: int = fail_every
        self._create_delay: float = create_delay
        self._logger: logging.Logger = logger_obj or get_logger(__name__)

        self._logged_in: bool = False
        self._jobs: dict[str, _SimulatedJob] = {}
        self._attachments: list[str] = []

    @property
    def jobs_created(self) -> int:
        return len(self._jobs)

    def is_logged_in(self) -> bool:
        return self._logged_in

    async def login(self) -> SessionInfo:
        self._logged_in = True
        self._logger.info("Dry-run session opened")
        return SessionInfo(user="dry-run", account="dry-run", server="simulated", server_version="0")

    async def logout(self) -> bool:
        self._logged_in = False
        return True

    async def upload_attachment(self, file_path: Path) -> str:
        reference = f"sim://attachments/{len(self._attachments) + 1}/{file_path.name}"
        self._attachments.append(reference)
        log_with_context(
            self._logger,
            logging.INFO,
            "Dry-run attachment recorded",
            extra={"file_name": file_path.name, "attachment_ref": reference},
        )
        return reference

    async def create_job(self, request: SendJobRequest) -> str:
        if self._create_delay > 0:
            await asyncio.sleep(self._create_delay)
        sequence = len(self._jobs) + 1
        job_id = f"SIM-{sequence:06d}"
        will_fail = self._fail_every > 0 and sequence % self._fail_every == 0
        self._jobs[job_id] = _SimulatedJob(job_id=job_id, request=request, will_fail=will_fail)
        self._logger.debug("Dry-run job %s for %s", job_id, request.destination)
        return job_id

    def _job(self, job_id: str) -> _SimulatedJob:
        try:
            return self._jobs[job_id]
        except KeyError:
            msg = f"Unknown simulated job: {job_id}"
            raise LookupError(msg) from None

    def _condition(self, job: _SimulatedJob) -> str | None:
        if job.document_polls <= self._conversion_polls:
            return None
        if job.document_polls < self._polls_to_complete:
            return CONDITION_PROCESSING
        return CONDITION_FAILED if job.will_fail else CONDITION_SUCCEEDED

    async def get_job_status(self, job_id: str) -> JobStatus:
        job = self._job(job_id)
        condition = self._condition(job)
        status = "Complete" if condition in (CONDITION_SUCCEEDED, CONDITION_FAILED) else "Active"
        return JobStatus(job_id=job_id, status=status, condition=condition or CONDITION_PROCESSING)

    async def get_documents_for_job(self, job_id: str) -> list[FaxDocument]:
        job = self._job(job_id)
        job.document_polls += 1
        condition = self._condition(job)
        if condition is None:
            return []
        return [FaxDocument(document_id=f"{job_id}-D1", condition=condition, page_count=self._page_count)]

    async def get_activities(self, document_id: str) -> list[DocumentActivity]:
        job = self._job(document_id.removesuffix("-D1"))
        final = self._condition(job) or CONDITION_PROCESSING
        now = datetime.now(UTC)
        return [
            DocumentActivity(
                activity_id=f"{document_id}-A1",
                message="Document converted",
                timestamp=job.created_at,
                condition=CONDITION_PROCESSING,
                status="Converted",
            ),
            DocumentActivity(
                activity_id=f"{document_id}-A2",
                message=f"Transmission to {job.request.destination} finished",
                timestamp=now,
                condition=final,
                status="Complete",
            ),
        ]
