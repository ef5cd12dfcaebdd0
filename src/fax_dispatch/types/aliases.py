"""Type aliases using PEP 695 syntax."""

from collections.abc import Awaitable, Callable, Mapping

# Backend-assigned job identifier, also the correlation key for monitoring.
type FaxHandle = str

type BatchId = int

# Event payloads are plain mappings so transport layers can serialize them as-is.
type EventPayload = Mapping[str, object]

# Subscribers may be plain callables or coroutine functions.
type EventCallback[E] = Callable[[E], None] | Callable[[E], Awaitable[None]]
