"""Exception hierarchy for fax-dispatch."""

from __future__ import annotations


class FaxDispatchError(Exception):
    """Base exception for all fax-dispatch errors."""


class BatchValidationError(FaxDispatchError):
    """Raised when a batch request is rejected before any dispatch begins."""

    def __init__(self, message: str, errors: list[dict[str, object]] | None = None) -> None:
        super().__init__(message)
        self.errors: list[dict[str, object]] = errors or []


class DispatcherBusyError(FaxDispatchError):
    """Raised when a batch is started while another one is still dispatching."""


class DispatchStoppedError(FaxDispatchError):
    """Raised inside the dispatch pipeline when stop() interrupted it."""


class FaxApiError(FaxDispatchError):
    """Raised when a fax backend call fails."""

    def __init__(
        self,
        message: str,
        *,
        operation: str,
        status: int | None = None,
    ) -> None:
        super().__init__(message)
        self.operation: str = operation
        self.status: int | None = status


class AuthenticationError(FaxApiError):
    """Raised when the backend rejects the login or returns no session cookie."""


class StorageError(FaxDispatchError):
    """Raised when a store cannot satisfy a read or write."""
