"""Lifecycle event contract and in-process event bus.

The dispatcher and the submission monitors publish :class:`DispatchEvent`
instances; transport layers (CLI, UI bridges) consume them either through
callbacks or by draining an ``asyncio.Queue``. Event names are camelCase and
form a stable contract for those consumers.

Callbacks run inline in the publishing task, in subscription order. A failing
callback is logged and never disturbs dispatch or other subscribers.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import re
import time
import uuid
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import StrEnum

from fax_dispatch.types.aliases import EventCallback
from fax_dispatch.utils.logging import log_with_context
from fax_dispatch.utils.sanitization import sanitize_exception

logger = logging.getLogger(__name__)


class EventType(StrEnum):
    """Names of the events published during a batch."""

    BATCH_STARTED = "batchStarted"
    UPLOADING_FILE = "uploadingFile"
    FILE_UPLOADED = "fileUploaded"
    CHUNK_STARTED = "chunkStarted"
    CHUNK_COMPLETED = "chunkCompleted"
    FAX_SUBMITTED = "faxSubmitted"
    FAX_FAILED = "faxFailed"
    FAX_COMPLETED = "faxCompleted"
    DISPATCH_COMPLETED = "dispatchCompleted"
    BATCH_COMPLETED = "batchCompleted"
    BATCH_FAILED = "batchFailed"


@dataclass(slots=True, frozen=True)
class DispatchEvent:
    """One published lifecycle event."""

    event_type: EventType
    batch_id: int | None
    data: Mapping[str, object] = field(default_factory=dict)
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: float = field(default_factory=time.time)

    def matches(self, pattern: str) -> bool:
        """Check the event name against a pattern supporting ``*`` wildcards.

        Examples:
            >>> DispatchEvent(EventType.FAX_FAILED, 1).matches("fax*")
            True
            >>> DispatchEvent(EventType.BATCH_STARTED, 1).matches("fax*")
            False
        """
        regex_pattern = "^" + ".*".join(re.escape(part) for part in pattern.split("*")) + "$"
        return re.match(regex_pattern, self.event_type.value) is not None

    def serialize(self) -> dict[str, object]:
        return {
            "event_id": self.event_id,
            "type": self.event_type.value,
            "batch_id": self.batch_id,
            "data": dict(self.data),
            "timestamp": self.timestamp,
        }


@dataclass(slots=True)
class _Subscription:
    subscription_id: str
    pattern: str
    callback: EventCallback[DispatchEvent] | None = None
    queue: asyncio.Queue[DispatchEvent] | None = None


class EventBus:
    """Publish/subscribe hub for dispatch lifecycle events."""

    def __init__(self) -> None:
        self._subscriptions: dict[str, _Subscription] = {}
        self._stats: dict[str, int] = {
            "events_published": 0,
            "handler_failures": 0,
            "events_dropped": 0,
        }

    def subscribe(self, callback: EventCallback[DispatchEvent], pattern: str = "*") -> str:
        """Register a plain or coroutine callback for events matching ``pattern``.

        Returns:
            Subscription ID accepted by :meth:`unsubscribe`
        """
        subscription_id = str(uuid.uuid4())
        self._subscriptions[subscription_id] = _Subscription(
            subscription_id=subscription_id,
            pattern=pattern,
            callback=callback,
        )
        return subscription_id

    def subscribe_queue(
        self,
        pattern: str = "*",
        *,
        maxsize: int = 0,
    ) -> tuple[str, asyncio.Queue[DispatchEvent]]:
        """Register a queue that receives every event matching ``pattern``.

        A full bounded queue drops the event and counts it in the stats.
        """
        subscription_id = str(uuid.uuid4())
        queue: asyncio.Queue[DispatchEvent] = asyncio.Queue(maxsize=maxsize)
        self._subscriptions[subscription_id] = _Subscription(
            subscription_id=subscription_id,
            pattern=pattern,
            queue=queue,
        )
        return subscription_id, queue

    def unsubscribe(self, subscription_id: str) -> bool:
        return self._subscriptions.pop(subscription_id, None) is not None

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    def get_stats(self) -> dict[str, int]:
        return self._stats.copy()

    async def publish(
        self,
        event_type: EventType,
        data: Mapping[str, object] | None = None,
        *,
        batch_id: int | None = None,
    ) -> DispatchEvent:
        """Build an event and deliver it to every matching subscriber.

        Returns:
            The published event
        """
        event = DispatchEvent(event_type=event_type, batch_id=batch_id, data=dict(data or {}))
        self._stats["events_published"] += 1

        for subscription in list(self._subscriptions.values()):
            if not event.matches(subscription.pattern):
                continue
            if subscription.queue is not None:
                self._enqueue(subscription, event)
            elif subscription.callback is not None:
                await self._invoke(subscription, event)

        return event

    def _enqueue(self, subscription: _Subscription, event: DispatchEvent) -> None:
        assert subscription.queue is not None
        try:
            subscription.queue.put_nowait(event)
        except asyncio.QueueFull:
            self._stats["events_dropped"] += 1
            log_with_context(
                logger,
                logging.WARNING,
                "Event queue full, dropping event",
                extra={
                    "subscription_id": subscription.subscription_id,
                    "event_type": event.event_type.value,
                },
            )

    async def _invoke(self, subscription: _Subscription, event: DispatchEvent) -> None:
        assert subscription.callback is not None
        try:
            result = subscription.callback(event)
            if inspect.isawaitable(result):
                await result
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self._stats["handler_failures"] += 1
            log_with_context(
                logger,
                logging.ERROR,
                "Event handler failed",
                extra={
                    "subscription_id": subscription.subscription_id,
                    "event_type": event.event_type.value,
                    "error_message": sanitize_exception(exc),
                },
            )
