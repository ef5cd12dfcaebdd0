"""Clock implementation and phase-duration calculations.

The backend exposes no conversion-complete signal, so phase boundaries are
inferred from poll timing:

- conversion starts when monitoring starts;
- conversion is presumed complete one poll interval later;
- transmission starts at the first poll that sees the document still in
  progress (or, failing that, at the poll that sees it succeed);
- conversion and transmission durations are rounded to whole seconds, the
  total is reported unrounded.

All functions except the clock methods are pure.
"""

from __future__ import annotations

import asyncio
import math
import time
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta


class SystemClock:
    """Wall-clock time in UTC, ``time.monotonic`` and ``asyncio.sleep``."""

    def now(self) -> datetime:
        return datetime.now(UTC)

    def monotonic(self) -> float:
        return time.monotonic()

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)


@dataclass(slots=True, frozen=True)
class PhaseDurations:
    """Durations derived for a submission that reached ``sent``."""

    conversion_completed_at: datetime
    conversion_ms: int
    transmission_ms: int
    total_ms: int


def elapsed_ms(start: datetime, end: datetime) -> int:
    """Return the whole milliseconds between two timestamps, never negative.

    Examples:
        >>> t0 = datetime(2024, 1, 1, tzinfo=UTC)
        >>> elapsed_ms(t0, t0 + timedelta(seconds=2, microseconds=500))
        2000
        >>> elapsed_ms(t0 + timedelta(seconds=1), t0)
        0
    """
    return max(0, int((end - start) / timedelta(milliseconds=1)))


def round_to_whole_seconds(milliseconds: int) -> int:
    """Round a millisecond duration to whole seconds, halves rounding up.

    Examples:
        >>> round_to_whole_seconds(4499)
        4000
        >>> round_to_whole_seconds(4500)
        5000
        >>> round_to_whole_seconds(0)
        0
    """
    return math.floor(milliseconds / 1000 + 0.5) * 1000


def conversion_completed_estimate(started_at: datetime, poll_interval: float) -> datetime:
    """Presumed end of conversion: one poll interval after monitoring started."""
    return started_at + timedelta(seconds=poll_interval)


def compute_phase_durations(
    *,
    started_at: datetime,
    transmission_started_at: datetime,
    completed_at: datetime,
    poll_interval: float,
) -> PhaseDurations:
    """Derive conversion, transmission and total durations for a sent fax.

    Args:
        started_at: When monitoring (and therefore conversion) started
        transmission_started_at: First inferred transmission start
        completed_at: When the Succeeded condition was observed
        poll_interval: Poll interval in seconds

    Examples:
        >>> t0 = datetime(2024, 1, 1, tzinfo=UTC)
        >>> d = compute_phase_durations(
        ...     started_at=t0,
        ...     transmission_started_at=t0 + timedelta(seconds=5.2),
        ...     completed_at=t0 + timedelta(seconds=20.7),
        ...     poll_interval=5.0,
        ... )
        >>> (d.conversion_ms, d.transmission_ms, d.total_ms)
        (5000, 16000, 20700)
    """
    return PhaseDurations(
        conversion_completed_at=conversion_completed_estimate(started_at, poll_interval),
        conversion_ms=round_to_whole_seconds(elapsed_ms(started_at, transmission_started_at)),
        transmission_ms=round_to_whole_seconds(elapsed_ms(transmission_started_at, completed_at)),
        total_ms=elapsed_ms(started_at, completed_at),
    )
