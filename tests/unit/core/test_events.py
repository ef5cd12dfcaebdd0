"""Unit tests for the event bus."""

from __future__ import annotations

import logging

import pytest

from fax_dispatch.core.events import DispatchEvent, EventBus, EventType

pytestmark = pytest.mark.unit


class TestDispatchEvent:
    @pytest.mark.parametrize(
        ("pattern", "expected"),
        [
            ("*", True),
            ("faxSubmitted", True),
            ("fax*", True),
            ("*Submitted", True),
            ("batch*", False),
            ("faxsubmitted", False),
        ],
    )
    def test_matches(self, pattern: str, expected: bool) -> None:
        event = DispatchEvent(EventType.FAX_SUBMITTED, batch_id=1)
        assert event.matches(pattern) is expected

    def test_serialize(self) -> None:
        event = DispatchEvent(EventType.BATCH_STARTED, batch_id=3, data={"totalCount": 5})
        serialized = event.serialize()
        assert serialized["type"] == "batchStarted"
        assert serialized["batch_id"] == 3
        assert serialized["data"] == {"totalCount": 5}
        assert serialized["event_id"] == event.event_id


class TestEventBus:
    async def test_callbacks_receive_events_in_order(self, event_bus: EventBus) -> None:
        received: list[str] = []
        _ = event_bus.subscribe(lambda event: received.append(event.event_type.value))

        _ = await event_bus.publish(EventType.BATCH_STARTED, {"batchId": 1}, batch_id=1)
        _ = await event_bus.publish(EventType.UPLOADING_FILE, batch_id=1)

        assert received == ["batchStarted", "uploadingFile"]

    async def test_async_callback_awaited(self, event_bus: EventBus) -> None:
        received: list[DispatchEvent] = []

        async def handler(event: DispatchEvent) -> None:
            received.append(event)

        _ = event_bus.subscribe(handler, pattern="batch*")
        _ = await event_bus.publish(EventType.BATCH_COMPLETED, batch_id=2)
        _ = await event_bus.publish(EventType.FAX_FAILED, batch_id=2)

        assert [event.event_type for event in received] == [EventType.BATCH_COMPLETED]

    async def test_failing_handler_is_isolated(
        self,
        event_bus: EventBus,
        caplog: pytest.LogCaptureFixture,
    ) -> None:
        received: list[DispatchEvent] = []

        def broken(_event: DispatchEvent) -> None:
            msg = "handler exploded"
            raise RuntimeError(msg)

        _ = event_bus.subscribe(broken)
        _ = event_bus.subscribe(received.append)

        with caplog.at_level(logging.ERROR, logger="fax_dispatch.core.events"):
            event = await event_bus.publish(EventType.FAX_SUBMITTED, batch_id=1)

        assert received == [event]
        assert event_bus.get_stats()["handler_failures"] == 1
        assert "Event handler failed" in caplog.text

    async def test_queue_subscription(self, event_bus: EventBus) -> None:
        _, queue = event_bus.subscribe_queue("fax*")
        _ = await event_bus.publish(EventType.FAX_COMPLETED, {"status": "sent"}, batch_id=1)
        _ = await event_bus.publish(EventType.BATCH_COMPLETED, batch_id=1)

        assert queue.qsize() == 1
        event = queue.get_nowait()
        assert event.data == {"status": "sent"}

    async def test_full_queue_drops_events(self, event_bus: EventBus) -> None:
        _, queue = event_bus.subscribe_queue(maxsize=1)
        _ = await event_bus.publish(EventType.CHUNK_STARTED, batch_id=1)
        _ = await event_bus.publish(EventType.CHUNK_COMPLETED, batch_id=1)

        assert queue.qsize() == 1
        stats = event_bus.get_stats()
        assert stats["events_published"] == 2
        assert stats["events_dropped"] == 1

    async def test_unsubscribe(self, event_bus: EventBus) -> None:
        received: list[DispatchEvent] = []
        subscription_id = event_bus.subscribe(received.append)
        assert event_bus.subscriber_count == 1

        assert event_bus.unsubscribe(subscription_id) is True
        assert event_bus.unsubscribe(subscription_id) is False
        _ = await event_bus.publish(EventType.BATCH_STARTED, batch_id=1)

        assert received == []
        assert event_bus.subscriber_count == 0

    async def test_published_data_is_copied(self, event_bus: EventBus) -> None:
        data: dict[str, object] = {"processedCount": 1}
        event = await event_bus.publish(EventType.FAX_SUBMITTED, data, batch_id=1)
        data["processedCount"] = 2
        assert event.data["processedCount"] == 1
