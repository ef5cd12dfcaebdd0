"""Per-submission polling monitor.

A monitor is launched once for every job the backend accepted and runs
independently of the dispatcher until the document reaches a terminal
condition or the poll ceiling is exhausted. Every poll sleeps first and then
asks the backend, so a document that succeeds on the Nth poll is reported with
a total duration of roughly ``N * poll_interval``.

Errors inside a single poll (backend or store) are logged and charged against
the attempt ceiling; :meth:`SubmissionMonitor.run` itself never raises except
for task cancellation.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime

from fax_dispatch.core.events import EventBus, EventType
from fax_dispatch.core.state_machine import (
    SubmissionStateMachine,
    SubmissionStatus,
    can_transition,
    status_for_condition,
)
from fax_dispatch.core.timing import (
    compute_phase_durations,
    conversion_completed_estimate,
    elapsed_ms,
)
from fax_dispatch.types.models import FaxDocument, SubmissionUpdate
from fax_dispatch.types.protocols import Clock, FaxBackend, FaxStore
from fax_dispatch.utils.logging import get_logger, log_with_context
from fax_dispatch.utils.sanitization import sanitize_exception

__all__ = ["MONITOR_TIMEOUT_MESSAGE", "SubmissionMonitor"]

MONITOR_TIMEOUT_MESSAGE = "Monitoring timeout - fax status unknown"


@dataclass(slots=True)
class _MonitorRun:
    """Mutable state of one monitoring loop."""

    fax_handle: str
    submission_id: int
    batch_id: int | None
    started_at: datetime
    machine: SubmissionStateMachine
    transmission_started_at: datetime | None = None
    attempts: int = 0


class SubmissionMonitor:
    """Poll one submission's job and documents until a terminal outcome."""

    def __init__(
        self,
        backend: FaxBackend,
        store: FaxStore,
        events: EventBus,
        clock: Clock,
        *,
        poll_interval: float = 5.0,
        max_attempts: int = 120,
        logger_obj: logging.Logger | None = None,
    ) -> None:
        if poll_interval <= 0:
            msg = "poll_interval must be greater than zero"
            raise ValueError(msg)
        if max_attempts < 1:
            msg = "max_attempts must be at least 1"
            raise ValueError(msg)

        self._backend: FaxBackend = backend
        self._store: FaxStore = store
        self._events: EventBus = events
        self._clock: Clock = clock
        self._poll_interval: float = poll_interval
        self._max_attempts: int = max_attempts
        self._logger: logging.Logger = logger_obj or get_logger(__name__)

    @property
    def poll_interval(self) -> float:
        return self._poll_interval

    @property
    def max_attempts(self) -> int:
        return self._max_attempts

    async def run(
        self,
        fax_handle: str,
        submission_id: int,
        *,
        batch_id: int | None = None,
        started_at: datetime | None = None,
    ) -> SubmissionStatus:
        """Monitor ``fax_handle`` to a terminal status and return it.

        Args:
            fax_handle: Backend job handle, the correlation key for every poll
            submission_id: Persisted submission ID, used for activity rows
            batch_id: Owning batch, included in published events
            started_at: When conversion started; defaults to now
        """
        run = _MonitorRun(
            fax_handle=fax_handle,
            submission_id=submission_id,
            batch_id=batch_id,
            started_at=started_at or self._clock.now(),
            machine=SubmissionStateMachine(SubmissionStatus.CONVERTING),
        )

        while run.attempts < self._max_attempts:
            run.attempts += 1
            try:
                await self._clock.sleep(self._poll_interval)
                outcome = await self._poll_once(run)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                log_with_context(
                    self._logger,
                    logging.WARNING,
                    "Poll attempt failed",
                    extra={
                        "fax_handle": fax_handle,
                        "attempt": run.attempts,
                        "max_attempts": self._max_attempts,
                        "error_message": sanitize_exception(exc),
                    },
                )
                continue
            if outcome is not None:
                return outcome

        return await self._finish_timeout(run)

    async def _poll_once(self, run: _MonitorRun) -> SubmissionStatus | None:
        """Run one poll; returns the terminal status or None to keep polling."""
        job = await self._backend.get_job_status(run.fax_handle)
        documents = await self._backend.get_documents_for_job(run.fax_handle)

        if not documents:
            self._logger.debug(
                "No document yet for %s (job status %s, attempt %d)",
                run.fax_handle,
                job.status,
                run.attempts,
            )
            await self._store.update_submission(
                run.fax_handle,
                SubmissionUpdate(status=run.machine.current_state, condition=job.condition),
            )
            return None

        document = documents[0]
        terminal = status_for_condition(document.condition)
        if terminal is None:
            await self._record_progress(run, document, job.condition)
            return None

        await self._record_terminal(run, document, terminal)
        return terminal

    async def _record_progress(self, run: _MonitorRun, document: FaxDocument, job_condition: str | None) -> None:
        now = self._clock.now()
        update = SubmissionUpdate(
            status=run.machine.current_state,
            condition=document.condition or job_condition,
            document_id=document.document_id,
            page_count=document.page_count,
        )

        # First in-progress sighting after conversion is presumed done
        conversion_done_at = conversion_completed_estimate(run.started_at, self._poll_interval)
        starts_transmission = run.transmission_started_at is None and now >= conversion_done_at
        if starts_transmission:
            update.status = SubmissionStatus.SENDING
            update.transmission_started_at = now
            update.conversion_completed_at = conversion_done_at

        self._logger.debug(
            "Document %s for %s still %s (attempt %d)",
            document.document_id,
            run.fax_handle,
            document.condition,
            run.attempts,
        )
        await self._store.update_submission(run.fax_handle, update)

        if starts_transmission:
            run.transmission_started_at = now
            _ = run.machine.transition_to(SubmissionStatus.SENDING)

    async def _record_terminal(self, run: _MonitorRun, document: FaxDocument, terminal: SubmissionStatus) -> None:
        now = self._clock.now()
        update = SubmissionUpdate(
            status=terminal,
            condition=document.condition,
            document_id=document.document_id,
            page_count=document.page_count,
            total_ms=elapsed_ms(run.started_at, now),
        )

        if terminal == SubmissionStatus.SENT:
            transmission_started_at = run.transmission_started_at or now
            durations = compute_phase_durations(
                started_at=run.started_at,
                transmission_started_at=transmission_started_at,
                completed_at=now,
                poll_interval=self._poll_interval,
            )
            if run.transmission_started_at is None:
                update.transmission_started_at = transmission_started_at
            update.conversion_completed_at = durations.conversion_completed_at
            update.transmission_completed_at = now
            update.conversion_ms = durations.conversion_ms
            update.transmission_ms = durations.transmission_ms
            update.total_ms = durations.total_ms

        if not can_transition(run.machine.current_state, terminal):
            msg = f"Cannot move {run.fax_handle} from {run.machine.current_state} to {terminal}"
            raise RuntimeError(msg)

        await self._store.update_submission(run.fax_handle, update)
        _ = run.machine.transition_to(terminal)

        await self._store_activities(run, document.document_id)

        level = logging.INFO if terminal == SubmissionStatus.SENT else logging.WARNING
        log_with_context(
            self._logger,
            level,
            "Fax reached terminal status",
            extra={
                "fax_handle": run.fax_handle,
                "status": terminal.value,
                "condition": document.condition,
                "page_count": document.page_count,
                "total_ms": update.total_ms,
                "attempts": run.attempts,
            },
        )
        _ = await self._events.publish(
            EventType.FAX_COMPLETED,
            {
                "batchId": run.batch_id,
                "faxHandle": run.fax_handle,
                "submissionId": run.submission_id,
                "status": terminal.value,
                "duration": update.total_ms,
            },
            batch_id=run.batch_id,
        )

    async def _store_activities(self, run: _MonitorRun, document_id: str) -> int:
        """Persist the document's activity history; failures are logged only."""
        stored = 0
        try:
            activities = await self._backend.get_activities(document_id)
            for activity in activities:
                _ = await self._store.create_activity(run.submission_id, activity)
                stored += 1
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            log_with_context(
                self._logger,
                logging.ERROR,
                "Failed to store document activities",
                extra={
                    "fax_handle": run.fax_handle,
                    "document_id": document_id,
                    "stored": stored,
                    "error_message": sanitize_exception(exc),
                },
            )
        return stored

    async def _finish_timeout(self, run: _MonitorRun) -> SubmissionStatus:
        total_ms = elapsed_ms(run.started_at, self._clock.now())
        try:
            await self._store.update_submission(
                run.fax_handle,
                SubmissionUpdate(
                    status=SubmissionStatus.TIMEOUT,
                    error_message=MONITOR_TIMEOUT_MESSAGE,
                    total_ms=total_ms,
                ),
            )
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            log_with_context(
                self._logger,
                logging.ERROR,
                "Failed to persist monitoring timeout",
                extra={"fax_handle": run.fax_handle, "error_message": sanitize_exception(exc)},
            )
        _ = run.machine.transition_to(SubmissionStatus.TIMEOUT)

        log_with_context(
            self._logger,
            logging.WARNING,
            "Fax monitoring timed out",
            extra={
                "fax_handle": run.fax_handle,
                "attempts": run.attempts,
                "total_ms": total_ms,
            },
        )
        _ = await self._events.publish(
            EventType.FAX_COMPLETED,
            {
                "batchId": run.batch_id,
                "faxHandle": run.fax_handle,
                "submissionId": run.submission_id,
                "status": SubmissionStatus.TIMEOUT.value,
                "duration": total_ms,
            },
            batch_id=run.batch_id,
        )
        return SubmissionStatus.TIMEOUT
