"""Unit tests for the dry-run backend."""

from __future__ import annotations

from pathlib import Path

import pytest

from fax_dispatch.backend.simulated import SimulatedFaxBackend
from fax_dispatch.core.dispatcher import BatchDispatcher
from fax_dispatch.core.state_machine import BatchStatus, SubmissionStatus
from fax_dispatch.storage.memory import InMemoryFaxStore
from fax_dispatch.types.models import BatchRequest, SendJobRequest
from tests.fixtures.fax_fakes import FakeClock

REQUEST = SendJobRequest(destination="5551234", recipient_name="Recipient 1", attachment_ref="sim://1")


class TestSimulatedFaxBackend:
    def test_rejects_inconsistent_schedule(self) -> None:
        with pytest.raises(ValueError, match="polls_to_complete"):
            _ = SimulatedFaxBackend(conversion_polls=3, polls_to_complete=3)
        with pytest.raises(ValueError, match="fail_every"):
            _ = SimulatedFaxBackend(fail_every=-1)

    async def test_session(self) -> None:
        backend = SimulatedFaxBackend()
        assert not backend.is_logged_in()
        info = await backend.login()
        assert info.server == "simulated"
        assert backend.is_logged_in()
        assert await backend.logout() is True
        assert not backend.is_logged_in()

    async def test_upload_reference(self, document: Path) -> None:
        reference = await SimulatedFaxBackend().upload_attachment(document)
        assert reference == "sim://attachments/1/letter.pdf"

    async def test_document_progression(self) -> None:
        backend = SimulatedFaxBackend(conversion_polls=1, polls_to_complete=3, page_count=4)
        job_id = await backend.create_job(REQUEST)
        assert job_id == "SIM-000001"

        assert await backend.get_documents_for_job(job_id) == []
        second = await backend.get_documents_for_job(job_id)
        third = await backend.get_documents_for_job(job_id)

        assert second[0].condition == "Processing"
        assert third[0].condition == "Succeeded"
        assert third[0].document_id == "SIM-000001-D1"
        assert third[0].page_count == 4
        status = await backend.get_job_status(job_id)
        assert status.status == "Complete"

    async def test_every_nth_job_fails(self) -> None:
        backend = SimulatedFaxBackend(conversion_polls=0, polls_to_complete=1, fail_every=2)
        first = await backend.create_job(REQUEST)
        second = await backend.create_job(REQUEST)

        assert (await backend.get_documents_for_job(first))[0].condition == "Succeeded"
        assert (await backend.get_documents_for_job(second))[0].condition == "Failed"
        assert backend.jobs_created == 2

    async def test_activities(self) -> None:
        backend = SimulatedFaxBackend(conversion_polls=0, polls_to_complete=1)
        job_id = await backend.create_job(REQUEST)
        documents = await backend.get_documents_for_job(job_id)

        activities = await backend.get_activities(documents[0].document_id)

        assert [a.activity_id for a in activities] == ["SIM-000001-D1-A1", "SIM-000001-D1-A2"]
        assert activities[-1].condition == "Succeeded"
        assert "5551234" in activities[-1].message

    async def test_unknown_job(self) -> None:
        with pytest.raises(LookupError, match="Unknown simulated job"):
            _ = await SimulatedFaxBackend().get_job_status("SIM-999999")

    async def test_drives_a_full_batch(self, document: Path) -> None:
        backend = SimulatedFaxBackend(fail_every=3)
        store = InMemoryFaxStore()
        dispatcher = BatchDispatcher(backend, store, clock=FakeClock(), max_concurrent=2)

        record = await dispatcher.run_batch(
            BatchRequest(file_path=document, destination="5551234", total_count=6, batch_name="Dry run")
        )

        assert record is not None
        assert record.status == BatchStatus.COMPLETED
        statuses = [s.status for s in await store.get_submissions_by_batch(record.id)]
        assert statuses.count(SubmissionStatus.SENT) == 4
        assert statuses.count(SubmissionStatus.FAILED) == 2
