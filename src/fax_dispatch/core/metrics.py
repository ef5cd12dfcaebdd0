"""Hourly metric buckets: computation, merge rules and periodic collection.

A bucket is keyed by (date, hour) in UTC. Repeated contributions to the same
bucket are merged with these rules:

- counts and page totals add, so they do not depend on arrival order;
- averages use the pairwise running average ``(a + b) // 2``, which is order
  dependent and only approximates the true mean;
- maxima take the larger value.

The collector rolls up submissions by their ``queued_at`` timestamp over
disjoint windows, one window per collection, so each submission contributes
to the counts once. Outcomes are counted as known at collection time.
"""

from __future__ import annotations

import asyncio
import logging
import math
from collections.abc import Iterator, Sequence
from dataclasses import replace
from datetime import date, datetime, timedelta

from fax_dispatch.core.state_machine import SubmissionStatus
from fax_dispatch.types.models import MetricBucket, SubmissionRecord
from fax_dispatch.types.protocols import Clock, FaxStore
from fax_dispatch.utils.logging import get_logger, log_with_context
from fax_dispatch.utils.sanitization import sanitize_exception

__all__ = [
    "MetricsCollector",
    "compute_metric_bucket",
    "hour_windows",
    "merge_metric_buckets",
]

_HOUR = timedelta(hours=1)


def _mean(values: Sequence[int]) -> int | None:
    if not values:
        return None
    return math.floor(sum(values) / len(values) + 0.5)


def _pairwise_average(existing: int | None, incoming: int | None) -> int | None:
    if existing is None:
        return incoming
    if incoming is None:
        return existing
    return (existing + incoming) // 2


def _max_optional(existing: int | None, incoming: int | None) -> int | None:
    if existing is None:
        return incoming
    if incoming is None:
        return existing
    return max(existing, incoming)


def compute_metric_bucket(
    submissions: Sequence[SubmissionRecord],
    bucket_date: date,
    hour: int,
) -> MetricBucket:
    """Aggregate a set of submissions into one bucket.

    Durations that were never measured (``None``) are excluded from averages
    and maxima.
    """
    conversion = [s.conversion_ms for s in submissions if s.conversion_ms is not None]
    transmission = [s.transmission_ms for s in submissions if s.transmission_ms is not None]
    total = [s.total_ms for s in submissions if s.total_ms is not None]

    return MetricBucket(
        bucket_date=bucket_date,
        hour=hour,
        total_submitted=len(submissions),
        total_succeeded=sum(1 for s in submissions if s.status == SubmissionStatus.SENT),
        total_failed=sum(1 for s in submissions if s.status == SubmissionStatus.FAILED),
        total_cancelled=sum(1 for s in submissions if s.status == SubmissionStatus.CANCELLED),
        avg_conversion_ms=_mean(conversion),
        avg_transmission_ms=_mean(transmission),
        avg_total_ms=_mean(total),
        max_conversion_ms=max(conversion, default=None),
        max_transmission_ms=max(transmission, default=None),
        total_pages=sum(s.page_count or 0 for s in submissions),
        total_batches=len({s.batch_id for s in submissions}),
    )


def merge_metric_buckets(existing: MetricBucket, incoming: MetricBucket) -> MetricBucket:
    """Merge ``incoming`` into ``existing`` for the same (date, hour).

    Raises:
        ValueError: If the buckets have different keys

    Examples:
        >>> a = MetricBucket(date(2024, 5, 1), 9, total_submitted=2, avg_total_ms=1000, max_conversion_ms=5000)
        >>> b = MetricBucket(date(2024, 5, 1), 9, total_submitted=3, avg_total_ms=3001, max_conversion_ms=4000)
        >>> m = merge_metric_buckets(a, b)
        >>> (m.total_submitted, m.avg_total_ms, m.max_conversion_ms)
        (5, 2000, 5000)
    """
    if (existing.bucket_date, existing.hour) != (incoming.bucket_date, incoming.hour):
        msg = (
            f"Cannot merge bucket {incoming.bucket_date} h{incoming.hour} "
            f"into {existing.bucket_date} h{existing.hour}"
        )
        raise ValueError(msg)

    return replace(
        existing,
        total_submitted=existing.total_submitted + incoming.total_submitted,
        total_succeeded=existing.total_succeeded + incoming.total_succeeded,
        total_failed=existing.total_failed + incoming.total_failed,
        total_cancelled=existing.total_cancelled + incoming.total_cancelled,
        avg_conversion_ms=_pairwise_average(existing.avg_conversion_ms, incoming.avg_conversion_ms),
        avg_transmission_ms=_pairwise_average(existing.avg_transmission_ms, incoming.avg_transmission_ms),
        avg_total_ms=_pairwise_average(existing.avg_total_ms, incoming.avg_total_ms),
        max_conversion_ms=_max_optional(existing.max_conversion_ms, incoming.max_conversion_ms),
        max_transmission_ms=_max_optional(existing.max_transmission_ms, incoming.max_transmission_ms),
        total_pages=existing.total_pages + incoming.total_pages,
        total_batches=existing.total_batches + incoming.total_batches,
    )


def _hour_floor(moment: datetime) -> datetime:
    return moment.replace(minute=0, second=0, microsecond=0)


def hour_windows(start: datetime, end: datetime) -> Iterator[tuple[datetime, datetime]]:
    """Split ``[start, end)`` at hour boundaries.

    Examples:
        >>> from datetime import UTC
        >>> s = datetime(2024, 5, 1, 9, 50, tzinfo=UTC)
        >>> [(a.hour, a.minute, b.hour, b.minute) for a, b in hour_windows(s, s + timedelta(minutes=20))]
        [(9, 50, 10, 0), (10, 0, 10, 10)]
    """
    cursor = start
    while cursor < end:
        boundary = min(_hour_floor(cursor) + _HOUR, end)
        yield cursor, boundary
        cursor = boundary


class MetricsCollector:
    """Periodically merge newly queued submissions into hourly buckets."""

    def __init__(
        self,
        store: FaxStore,
        clock: Clock,
        *,
        interval: float = 300.0,
        since: datetime | None = None,
        logger_obj: logging.Logger | None = None,
    ) -> None:
        if interval <= 0:
            msg = "interval must be greater than zero"
            raise ValueError(msg)
        self._store: FaxStore = store
        self._clock: Clock = clock
        self._interval: float = interval
        self._last_collected_at: datetime = since or _hour_floor(clock.now())
        self._logger: logging.Logger = logger_obj or get_logger(__name__)
        self._stop_event: asyncio.Event = asyncio.Event()
        self._task: asyncio.Task[None] | None = None

    @property
    def last_collected_at(self) -> datetime:
        return self._last_collected_at

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def collect_once(self) -> list[MetricBucket]:
        """Roll up submissions queued since the previous collection.

        Returns:
            The merged buckets as stored after this collection
        """
        window_start = self._last_collected_at
        window_end = self._clock.now()
        merged: list[MetricBucket] = []

        for start, end in hour_windows(window_start, window_end):
            submissions = await self._store.list_submissions_queued_between(start, end)
            if not submissions:
                continue
            bucket = compute_metric_bucket(submissions, start.date(), start.hour)
            merged.append(await self._store.upsert_metric_bucket(bucket))

        self._last_collected_at = window_end
        log_with_context(
            self._logger,
            logging.INFO,
            "Metrics collected",
            extra={
                "window_start": window_start.isoformat(),
                "window_end": window_end.isoformat(),
                "buckets": len(merged),
                "submissions": sum(b.total_submitted for b in merged),
            },
        )
        return merged

    async def run(self) -> None:
        """Collect immediately, then every ``interval`` seconds until stopped."""
        while not self._stop_event.is_set():
            try:
                _ = await self.collect_once()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                log_with_context(
                    self._logger,
                    logging.ERROR,
                    "Metrics collection failed",
                    extra={"error_message": sanitize_exception(exc)},
                )
            try:
                async with asyncio.timeout(self._interval):
                    _ = await self._stop_event.wait()
            except TimeoutError:
                continue

    def start(self) -> None:
        if self.is_running:
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self.run(), name="metrics-collector")

    async def stop(self) -> None:
        """Stop the periodic loop, letting an in-progress collection finish."""
        self._stop_event.set()
        if self._task is not None:
            await self._task
            self._task = None
