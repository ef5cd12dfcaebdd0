"""Live in-memory state of the batch currently being dispatched.

``LiveBatchState`` is the single owner of the live counters. Every update
goes through one of its methods, each of which reads and writes without an
intervening ``await``, so concurrent unit tasks on the event loop can never
lose an increment.
"""

from __future__ import annotations

import asyncio

from fax_dispatch.core.state_machine import BatchStatus, SubmissionStatus, is_terminal
from fax_dispatch.types.models import BatchProgress


class LiveBatchState:
    """Counters and monitor bookkeeping for one dispatching batch."""

    def __init__(self, batch_id: int, batch_name: str, total_count: int) -> None:
        self.batch_id: int = batch_id
        self.batch_name: str = batch_name
        self.total_count: int = total_count
        self._processed: int = 0
        self._failed: int = 0
        self._outstanding_monitors: int = 0
        self._outcomes: dict[SubmissionStatus, int] = {}
        self._status: BatchStatus = BatchStatus.PENDING
        self._is_processing: bool = False
        self._drained: asyncio.Event = asyncio.Event()
        self._drained.set()

    @property
    def processed_count(self) -> int:
        """Units whose job-creation call succeeded."""
        return self._processed

    @property
    def failed_count(self) -> int:
        """Units whose job-creation call failed."""
        return self._failed

    @property
    def outstanding_monitors(self) -> int:
        return self._outstanding_monitors

    @property
    def status(self) -> BatchStatus:
        return self._status

    @property
    def is_processing(self) -> bool:
        return self._is_processing

    def mark_processing(self) -> None:
        self._status = BatchStatus.PROCESSING
        self._is_processing = True

    def mark_finished(self, status: BatchStatus) -> None:
        self._status = status
        self._is_processing = False

    def _check_capacity(self) -> None:
        if self._processed + self._failed >= self.total_count:
            msg = f"Batch {self.batch_id} already accounted for all {self.total_count} units"
            raise RuntimeError(msg)

    def record_created(self) -> int:
        """Count one successful creation and return the new processed count."""
        self._check_capacity()
        self._processed += 1
        return self._processed

    def record_creation_failed(self) -> int:
        """Count one failed creation and return the new failed count."""
        self._check_capacity()
        self._failed += 1
        self._outcomes[SubmissionStatus.FAILED] = self._outcomes.get(SubmissionStatus.FAILED, 0) + 1
        return self._failed

    def monitor_started(self) -> None:
        self._outstanding_monitors += 1
        self._drained.clear()

    def monitor_finished(self, outcome: SubmissionStatus | None) -> None:
        """Record that a monitor ended; ``outcome`` is None if it was cancelled."""
        if self._outstanding_monitors <= 0:
            msg = "monitor_finished called with no outstanding monitors"
            raise RuntimeError(msg)
        self._outstanding_monitors -= 1
        if outcome is not None and is_terminal(outcome):
            self._outcomes[outcome] = self._outcomes.get(outcome, 0) + 1
        if self._outstanding_monitors == 0:
            self._drained.set()

    async def wait_drained(self) -> None:
        """Wait until every launched monitor has finished."""
        await self._drained.wait()

    def outcome_tallies(self) -> dict[str, int]:
        """Terminal outcomes so far keyed by status value, including zero counts."""
        return {
            status.value: self._outcomes.get(status, 0)
            for status in (
                SubmissionStatus.SENT,
                SubmissionStatus.FAILED,
                SubmissionStatus.CANCELLED,
                SubmissionStatus.TIMEOUT,
            )
        }

    def snapshot(self) -> BatchProgress:
        return BatchProgress(
            batch_id=self.batch_id,
            batch_name=self.batch_name,
            total_count=self.total_count,
            processed_count=self._processed,
            failed_count=self._failed,
            outstanding_monitors=self._outstanding_monitors,
            is_processing=self._is_processing,
            status=self._status,
        )
