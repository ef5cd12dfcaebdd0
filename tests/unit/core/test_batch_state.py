"""Unit tests for the live batch counters."""

from __future__ import annotations

import asyncio

import pytest

from fax_dispatch.core.batch_state import LiveBatchState
from fax_dispatch.core.state_machine import BatchStatus, SubmissionStatus

pytestmark = pytest.mark.unit


class TestCounters:
    def test_created_and_failed_counts(self) -> None:
        state = LiveBatchState(1, "May mailing", 3)
        assert state.record_created() == 1
        assert state.record_creation_failed() == 1
        assert state.record_created() == 2
        assert state.processed_count == 2
        assert state.failed_count == 1

    def test_counts_never_exceed_total(self) -> None:
        state = LiveBatchState(1, "May mailing", 2)
        _ = state.record_created()
        _ = state.record_creation_failed()
        with pytest.raises(RuntimeError, match="already accounted"):
            _ = state.record_created()
        with pytest.raises(RuntimeError):
            _ = state.record_creation_failed()

    def test_creation_failures_count_as_failed_outcomes(self) -> None:
        state = LiveBatchState(1, "May mailing", 2)
        _ = state.record_creation_failed()
        assert state.outcome_tallies() == {"sent": 0, "failed": 1, "cancelled": 0, "timeout": 0}

    def test_status_lifecycle(self) -> None:
        state = LiveBatchState(4, "x", 1)
        assert state.status == BatchStatus.PENDING
        assert not state.is_processing
        state.mark_processing()
        assert state.is_processing
        state.mark_finished(BatchStatus.COMPLETED)
        assert state.status == BatchStatus.COMPLETED
        assert not state.is_processing


class TestMonitors:
    def test_outcomes_tallied(self) -> None:
        state = LiveBatchState(1, "x", 3)
        for _ in range(3):
            state.monitor_started()
        state.monitor_finished(SubmissionStatus.SENT)
        state.monitor_finished(SubmissionStatus.TIMEOUT)
        # Cancelled monitor tasks report no outcome
        state.monitor_finished(None)

        assert state.outstanding_monitors == 0
        assert state.outcome_tallies() == {"sent": 1, "failed": 0, "cancelled": 0, "timeout": 1}

    def test_finish_without_start_raises(self) -> None:
        state = LiveBatchState(1, "x", 1)
        with pytest.raises(RuntimeError, match="no outstanding monitors"):
            state.monitor_finished(SubmissionStatus.SENT)

    async def test_wait_drained(self) -> None:
        state = LiveBatchState(1, "x", 2)
        await asyncio.wait_for(state.wait_drained(), timeout=1)

        state.monitor_started()
        state.monitor_started()
        waiter = asyncio.create_task(state.wait_drained())
        state.monitor_finished(SubmissionStatus.SENT)
        await asyncio.sleep(0)
        assert not waiter.done()
        state.monitor_finished(SubmissionStatus.FAILED)
        await asyncio.wait_for(waiter, timeout=1)

    def test_snapshot(self) -> None:
        state = LiveBatchState(9, "Quarterly", 10)
        state.mark_processing()
        _ = state.record_created()
        state.monitor_started()

        progress = state.snapshot()
        assert progress.batch_id == 9
        assert progress.batch_name == "Quarterly"
        assert progress.total_count == 10
        assert progress.processed_count == 1
        assert progress.outstanding_monitors == 1
        assert progress.is_processing is True
        assert progress.status == BatchStatus.PROCESSING
