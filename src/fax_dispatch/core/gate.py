"""Bounded concurrency gate for job-creation calls.

Wraps an ``asyncio.Semaphore``: waiters suspend instead of spin-polling and
are woken in FIFO order, so a steady stream of new units cannot starve an
earlier waiter. The gate additionally tracks how many permits are held so
that ``stop()`` can wait for in-flight creation calls to drain.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager


class ConcurrencyGate:
    """Counting permit set with capacity ``max_concurrent``.

    Usage::

        gate = ConcurrencyGate(10)
        async with gate.slot():
            await backend.create_job(request)
    """

    def __init__(self, max_concurrent: int) -> None:
        if max_concurrent < 1:
            msg = "max_concurrent must be at least 1"
            raise ValueError(msg)
        self._capacity: int = max_concurrent
        self._semaphore: asyncio.Semaphore = asyncio.Semaphore(max_concurrent)
        self._in_flight: int = 0
        self._peak_in_flight: int = 0
        self._idle: asyncio.Event = asyncio.Event()
        self._idle.set()

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def in_flight(self) -> int:
        """Number of permits currently held."""
        return self._in_flight

    @property
    def peak_in_flight(self) -> int:
        """Highest number of permits held at once since creation."""
        return self._peak_in_flight

    @property
    def available(self) -> int:
        return self._capacity - self._in_flight

    async def acquire(self) -> None:
        """Suspend until a permit is free, then take it."""
        await self._semaphore.acquire()
        self._in_flight += 1
        self._peak_in_flight = max(self._peak_in_flight, self._in_flight)
        self._idle.clear()

    def release(self) -> None:
        """Return a permit.

        Raises:
            RuntimeError: If no permit is held
        """
        if self._in_flight <= 0:
            msg = "ConcurrencyGate released more times than acquired"
            raise RuntimeError(msg)
        self._in_flight -= 1
        if self._in_flight == 0:
            self._idle.set()
        self._semaphore.release()

    @asynccontextmanager
    async def slot(self) -> AsyncIterator[None]:
        """Hold one permit for the duration of the ``async with`` block."""
        await self.acquire()
        try:
            yield
        finally:
            self.release()

    async def wait_idle(self) -> None:
        """Wait until no permits are held."""
        await self._idle.wait()
