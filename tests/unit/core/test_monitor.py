"""Unit tests for the submission monitor."""

from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from fax_dispatch.core.events import DispatchEvent, EventBus, EventType
from fax_dispatch.core.monitor import MONITOR_TIMEOUT_MESSAGE, SubmissionMonitor
from fax_dispatch.core.state_machine import SubmissionStatus
from fax_dispatch.storage.memory import InMemoryFaxStore
from fax_dispatch.types.models import SubmissionRecord
from tests.fixtures.fax_fakes import DEFAULT_START, FakeBackend, FakeClock

pytestmark = pytest.mark.unit

HANDLE = "JOB-1"


async def _seed_submission(store: InMemoryFaxStore) -> int:
    batch_id = await store.create_batch(
        batch_name="May mailing",
        owner="ops",
        total_count=1,
        destination="5551234",
        file_path="/tmp/letter.pdf",
        file_size=24,
    )
    return await store.create_submission(
        SubmissionRecord(
            id=0,
            batch_id=batch_id,
            fax_handle=HANDLE,
            destination="5551234",
            recipient_name="Recipient 1",
            status=SubmissionStatus.CONVERTING,
            queued_at=DEFAULT_START,
            conversion_started_at=DEFAULT_START,
        )
    )


def _monitor(
    backend: FakeBackend,
    store: InMemoryFaxStore,
    events: EventBus,
    clock: FakeClock,
    *,
    max_attempts: int = 10,
) -> SubmissionMonitor:
    return SubmissionMonitor(backend, store, events, clock, poll_interval=5.0, max_attempts=max_attempts)


class TestConstruction:
    def test_rejects_bad_settings(self, memory_store: InMemoryFaxStore, event_bus: EventBus) -> None:
        with pytest.raises(ValueError, match="poll_interval"):
            _ = SubmissionMonitor(FakeBackend(), memory_store, event_bus, FakeClock(), poll_interval=0)
        with pytest.raises(ValueError, match="max_attempts"):
            _ = SubmissionMonitor(FakeBackend(), memory_store, event_bus, FakeClock(), max_attempts=0)


class TestSuccessfulDelivery:
    async def test_processing_then_succeeded(
        self,
        fake_backend: FakeBackend,
        memory_store: InMemoryFaxStore,
        event_bus: EventBus,
        recorded_events: list[DispatchEvent],
        fake_clock: FakeClock,
    ) -> None:
        submission_id = await _seed_submission(memory_store)
        monitor = _monitor(fake_backend, memory_store, event_bus, fake_clock)

        outcome = await monitor.run(HANDLE, submission_id, batch_id=1)

        assert outcome == SubmissionStatus.SENT
        # Each poll sleeps first
        assert fake_clock.sleeps == [5.0, 5.0]

        record = await memory_store.get_submission_by_handle(HANDLE)
        assert record is not None
        assert record.status == SubmissionStatus.SENT
        assert record.document_id == "DOC-JOB-1"
        assert record.page_count == 2
        assert record.condition == "Succeeded"
        assert record.conversion_completed_at == DEFAULT_START + timedelta(seconds=5)
        assert record.transmission_started_at == DEFAULT_START + timedelta(seconds=5)
        assert record.transmission_completed_at == DEFAULT_START + timedelta(seconds=10)
        assert record.conversion_ms == 5000
        assert record.transmission_ms == 5000
        assert record.total_ms == 10_000

        activities = await memory_store.get_activities_for_submission(submission_id)
        assert [a.activity.message for a in activities] == ["Converted", "Transmitted"]

        completed = [e for e in recorded_events if e.event_type == EventType.FAX_COMPLETED]
        assert len(completed) == 1
        assert completed[0].data == {
            "batchId": 1,
            "faxHandle": HANDLE,
            "submissionId": submission_id,
            "status": "sent",
            "duration": 10_000,
        }

    async def test_succeeded_on_first_document_poll(
        self,
        memory_store: InMemoryFaxStore,
        event_bus: EventBus,
        fake_clock: FakeClock,
    ) -> None:
        backend = FakeBackend(schedule=("Succeeded",))
        submission_id = await _seed_submission(memory_store)

        outcome = await _monitor(backend, memory_store, event_bus, fake_clock).run(HANDLE, submission_id)

        assert outcome == SubmissionStatus.SENT
        record = await memory_store.get_submission_by_handle(HANDLE)
        assert record is not None
        # Transmission start falls back to the completion poll
        assert record.transmission_started_at == DEFAULT_START + timedelta(seconds=5)
        assert record.conversion_ms == 5000
        assert record.transmission_ms == 0
        assert record.total_ms == 5000

    async def test_document_appears_late(
        self,
        memory_store: InMemoryFaxStore,
        event_bus: EventBus,
        fake_clock: FakeClock,
    ) -> None:
        backend = FakeBackend(schedule=(None, "Processing", "Processing", "Succeeded"))
        submission_id = await _seed_submission(memory_store)

        outcome = await _monitor(backend, memory_store, event_bus, fake_clock).run(HANDLE, submission_id)

        assert outcome == SubmissionStatus.SENT
        record = await memory_store.get_submission_by_handle(HANDLE)
        assert record is not None
        # Transmission starts at the first in-progress sighting (second poll)
        assert record.transmission_started_at == DEFAULT_START + timedelta(seconds=10)
        assert record.conversion_ms == 10_000
        assert record.transmission_ms == 10_000
        assert record.total_ms == 20_000


class TestUnsuccessfulOutcomes:
    @pytest.mark.parametrize(
        ("condition", "expected"),
        [("Failed", SubmissionStatus.FAILED), ("Canceled", SubmissionStatus.CANCELLED)],
    )
    async def test_terminal_failure_conditions(
        self,
        memory_store: InMemoryFaxStore,
        event_bus: EventBus,
        recorded_events: list[DispatchEvent],
        fake_clock: FakeClock,
        condition: str,
        expected: SubmissionStatus,
    ) -> None:
        backend = FakeBackend(schedule=("Processing", condition))
        submission_id = await _seed_submission(memory_store)

        outcome = await _monitor(backend, memory_store, event_bus, fake_clock).run(HANDLE, submission_id)

        assert outcome == expected
        record = await memory_store.get_submission_by_handle(HANDLE)
        assert record is not None
        assert record.status == expected
        assert record.total_ms == 10_000
        assert record.conversion_ms is None
        assert recorded_events[-1].data["status"] == expected.value

    async def test_timeout_after_poll_ceiling(
        self,
        memory_store: InMemoryFaxStore,
        event_bus: EventBus,
        recorded_events: list[DispatchEvent],
        fake_clock: FakeClock,
    ) -> None:
        backend = FakeBackend(schedule=(None,))
        submission_id = await _seed_submission(memory_store)

        outcome = await _monitor(backend, memory_store, event_bus, fake_clock, max_attempts=3).run(
            HANDLE, submission_id, batch_id=1
        )

        assert outcome == SubmissionStatus.TIMEOUT
        assert len(fake_clock.sleeps) == 3
        record = await memory_store.get_submission_by_handle(HANDLE)
        assert record is not None
        assert record.status == SubmissionStatus.TIMEOUT
        assert record.error_message == MONITOR_TIMEOUT_MESSAGE
        assert record.total_ms == 15_000

        assert recorded_events[-1].event_type == EventType.FAX_COMPLETED
        assert recorded_events[-1].data["status"] == "timeout"


class TestPollErrors:
    async def test_poll_errors_count_as_attempts(
        self,
        memory_store: InMemoryFaxStore,
        event_bus: EventBus,
        fake_clock: FakeClock,
    ) -> None:
        backend = FakeBackend(schedule=("Succeeded",), fail_status_polls=2)
        submission_id = await _seed_submission(memory_store)

        outcome = await _monitor(backend, memory_store, event_bus, fake_clock).run(HANDLE, submission_id)

        assert outcome == SubmissionStatus.SENT
        assert backend.status_calls == 3
        record = await memory_store.get_submission_by_handle(HANDLE)
        assert record is not None
        assert record.total_ms == 15_000

    async def test_errors_exhaust_the_ceiling(
        self,
        memory_store: InMemoryFaxStore,
        event_bus: EventBus,
        fake_clock: FakeClock,
    ) -> None:
        backend = FakeBackend(schedule=("Succeeded",), fail_status_polls=5)
        submission_id = await _seed_submission(memory_store)

        outcome = await _monitor(backend, memory_store, event_bus, fake_clock, max_attempts=2).run(
            HANDLE, submission_id
        )

        assert outcome == SubmissionStatus.TIMEOUT
        assert backend.status_calls == 2

    async def test_activity_failure_does_not_change_outcome(
        self,
        memory_store: InMemoryFaxStore,
        event_bus: EventBus,
        fake_clock: FakeClock,
        caplog: pytest.LogCaptureFixture,
    ) -> None:
        backend = FakeBackend(fail_activities=True)
        submission_id = await _seed_submission(memory_store)

        outcome = await _monitor(backend, memory_store, event_bus, fake_clock).run(HANDLE, submission_id)

        assert outcome == SubmissionStatus.SENT
        assert await memory_store.get_activities_for_submission(submission_id) == []
        assert "Failed to store document activities" in caplog.text

    async def test_unknown_handle_times_out(
        self,
        fake_backend: FakeBackend,
        memory_store: InMemoryFaxStore,
        event_bus: EventBus,
        fake_clock: FakeClock,
    ) -> None:
        """Store errors are poll errors; the monitor still terminates."""
        outcome = await _monitor(fake_backend, memory_store, event_bus, fake_clock, max_attempts=2).run(
            "JOB-404", 99
        )
        assert outcome == SubmissionStatus.TIMEOUT


class TestCancellation:
    async def test_cancel_propagates(
        self,
        memory_store: InMemoryFaxStore,
        event_bus: EventBus,
        recorded_events: list[DispatchEvent],
        fake_clock: FakeClock,
    ) -> None:
        backend = FakeBackend(schedule=(None,))
        submission_id = await _seed_submission(memory_store)
        monitor = _monitor(backend, memory_store, event_bus, fake_clock, max_attempts=10_000)

        task = asyncio.create_task(monitor.run(HANDLE, submission_id))
        for _ in range(5):
            await asyncio.sleep(0)
        _ = task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task
        assert recorded_events == []
