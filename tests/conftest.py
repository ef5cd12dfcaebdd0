"""Pytest configuration and shared fixtures."""

from __future__ import annotations

from collections.abc import Callable, Iterator
from pathlib import Path

import pytest

from fax_dispatch.core.events import DispatchEvent, EventBus
from fax_dispatch.storage.memory import InMemoryFaxStore
from fax_dispatch.types.models import BatchRequest
from fax_dispatch.utils.logging import clear_correlation_id
from tests.fixtures.fax_fakes import FakeBackend, FakeClock


@pytest.fixture(autouse=True)
def _reset_correlation_id() -> Iterator[None]:
    """Keep correlation IDs from leaking between tests."""
    clear_correlation_id()
    yield
    clear_correlation_id()


@pytest.fixture
def document(tmp_path: Path) -> Path:
    """A small document to dispatch."""
    path = tmp_path / "letter.pdf"
    _ = path.write_bytes(b"%PDF-1.4 test document\n")
    return path


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def fake_backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
def memory_store() -> InMemoryFaxStore:
    return InMemoryFaxStore()


@pytest.fixture
def event_bus() -> EventBus:
    return EventBus()


@pytest.fixture
def recorded_events(event_bus: EventBus) -> list[DispatchEvent]:
    """Every event published on ``event_bus``, in order."""
    events: list[DispatchEvent] = []
    _ = event_bus.subscribe(events.append)
    return events


@pytest.fixture
def make_request(document: Path) -> Callable[..., BatchRequest]:
    """Factory for batch requests against the ``document`` fixture."""

    def _make(
        *,
        total_count: int = 5,
        chunk_size: int = 100,
        destination: str = "5551234",
        batch_name: str = "May mailing",
        file_path: Path | None = None,
    ) -> BatchRequest:
        return BatchRequest(
            file_path=file_path or document,
            destination=destination,
            total_count=total_count,
            batch_name=batch_name,
            owner="ops",
            chunk_size=chunk_size,
        )

    return _make
