"""Submission and batch lifecycle state machines.

Submission lifecycle::

    queued --(job created)--> converting
    converting --(in-progress document seen after conversion)--> sending
    converting|sending --(document Succeeded)--> sent
    converting|sending --(document Failed|Canceled)--> failed|cancelled
    converting|sending --(poll ceiling reached)--> timeout
    queued --(job creation failed)--> failed

Batch lifecycle::

    pending --> processing --> completed|failed

Terminal states accept no further transitions. Re-entering the current
non-terminal state is allowed so that monitors can persist fresh
observations without changing phase.
"""

from __future__ import annotations

from collections.abc import Mapping
from enum import StrEnum

from fax_dispatch.errors import FaxDispatchError


class SubmissionStatus(StrEnum):
    """Persisted status of one fax transmission unit."""

    QUEUED = "queued"
    CONVERTING = "converting"
    SENDING = "sending"
    SENT = "sent"
    FAILED = "failed"
    CANCELLED = "cancelled"
    TIMEOUT = "timeout"


class BatchStatus(StrEnum):
    """Persisted status of a batch."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class InvalidTransitionError(FaxDispatchError):
    """Raised when a state transition is not permitted."""

    def __init__(
        self,
        message: str,
        from_state: StrEnum | None = None,
        to_state: StrEnum | None = None,
    ) -> None:
        super().__init__(message)
        self.from_state: StrEnum | None = from_state
        self.to_state: StrEnum | None = to_state


class TerminalStateError(InvalidTransitionError):
    """Raised when an update targets a record that already reached a terminal state."""


SUBMISSION_TERMINAL_STATES: frozenset[SubmissionStatus] = frozenset(
    {
        SubmissionStatus.SENT,
        SubmissionStatus.FAILED,
        SubmissionStatus.CANCELLED,
        SubmissionStatus.TIMEOUT,
    }
)

_SUBMISSION_OUTCOMES: frozenset[SubmissionStatus] = SUBMISSION_TERMINAL_STATES

SUBMISSION_TRANSITIONS: Mapping[SubmissionStatus, frozenset[SubmissionStatus]] = {
    SubmissionStatus.QUEUED: frozenset({SubmissionStatus.CONVERTING, SubmissionStatus.FAILED}),
    SubmissionStatus.CONVERTING: frozenset({SubmissionStatus.SENDING}) | _SUBMISSION_OUTCOMES,
    SubmissionStatus.SENDING: _SUBMISSION_OUTCOMES,
    SubmissionStatus.SENT: frozenset(),
    SubmissionStatus.FAILED: frozenset(),
    SubmissionStatus.CANCELLED: frozenset(),
    SubmissionStatus.TIMEOUT: frozenset(),
}

BATCH_TERMINAL_STATES: frozenset[BatchStatus] = frozenset({BatchStatus.COMPLETED, BatchStatus.FAILED})

BATCH_TRANSITIONS: Mapping[BatchStatus, frozenset[BatchStatus]] = {
    BatchStatus.PENDING: frozenset({BatchStatus.PROCESSING}),
    BatchStatus.PROCESSING: frozenset({BatchStatus.COMPLETED, BatchStatus.FAILED}),
    BatchStatus.COMPLETED: frozenset(),
    BatchStatus.FAILED: frozenset(),
}

# Backend document conditions that end monitoring.
_CONDITION_OUTCOMES: Mapping[str, SubmissionStatus] = {
    "succeeded": SubmissionStatus.SENT,
    "failed": SubmissionStatus.FAILED,
    "canceled": SubmissionStatus.CANCELLED,
    "cancelled": SubmissionStatus.CANCELLED,
}


def is_terminal(status: SubmissionStatus) -> bool:
    """Return True if no further submission transitions are permitted."""
    return status in SUBMISSION_TERMINAL_STATES


def can_transition(from_status: SubmissionStatus, to_status: SubmissionStatus) -> bool:
    """Check a submission transition against the lifecycle table.

    Examples:
        >>> can_transition(SubmissionStatus.CONVERTING, SubmissionStatus.SENT)
        True
        >>> can_transition(SubmissionStatus.SENT, SubmissionStatus.CONVERTING)
        False
        >>> can_transition(SubmissionStatus.CONVERTING, SubmissionStatus.CONVERTING)
        True
    """
    if from_status == to_status:
        return not is_terminal(from_status)
    return to_status in SUBMISSION_TRANSITIONS[from_status]


def validate_transition(from_status: SubmissionStatus, to_status: SubmissionStatus) -> None:
    """Raise if a submission may not move from ``from_status`` to ``to_status``.

    Raises:
        TerminalStateError: If ``from_status`` is terminal
        InvalidTransitionError: If the transition is not in the lifecycle table
    """
    if is_terminal(from_status):
        raise TerminalStateError(
            f"Submission already terminal ({from_status}); refusing update to {to_status}",
            from_state=from_status,
            to_state=to_status,
        )
    if not can_transition(from_status, to_status):
        raise InvalidTransitionError(
            f"Cannot transition submission from {from_status} to {to_status}",
            from_state=from_status,
            to_state=to_status,
        )


def validate_batch_transition(from_status: BatchStatus, to_status: BatchStatus) -> None:
    """Raise if a batch may not move from ``from_status`` to ``to_status``."""
    if to_status not in BATCH_TRANSITIONS[from_status]:
        error_type = TerminalStateError if from_status in BATCH_TERMINAL_STATES else InvalidTransitionError
        raise error_type(
            f"Cannot transition batch from {from_status} to {to_status}",
            from_state=from_status,
            to_state=to_status,
        )


def status_for_condition(condition: str | None) -> SubmissionStatus | None:
    """Map a backend document condition to a terminal status.

    Returns None for in-progress conditions such as ``Processing``.

    Examples:
        >>> status_for_condition("Succeeded")
        <SubmissionStatus.SENT: 'sent'>
        >>> status_for_condition("Canceled")
        <SubmissionStatus.CANCELLED: 'cancelled'>
        >>> status_for_condition("Processing") is None
        True
    """
    if not condition:
        return None
    return _CONDITION_OUTCOMES.get(condition.strip().lower())


def effective_status(status: SubmissionStatus, *, transmission_started: bool) -> SubmissionStatus:
    """Derive the logical phase of a submission.

    ``sending`` is a sub-phase of ``converting`` identified only by a recorded
    transmission-start timestamp; records persisted as ``converting`` with a
    transmission start are reported as ``sending``.
    """
    if status == SubmissionStatus.CONVERTING and transmission_started:
        return SubmissionStatus.SENDING
    return status


class SubmissionStateMachine:
    """Tracks one submission's status and rejects non-monotone updates."""

    def __init__(self, initial_state: SubmissionStatus = SubmissionStatus.QUEUED) -> None:
        self._current_state: SubmissionStatus = initial_state
        self._history: list[SubmissionStatus] = [initial_state]

    @property
    def current_state(self) -> SubmissionStatus:
        return self._current_state

    @property
    def is_terminal(self) -> bool:
        return is_terminal(self._current_state)

    def get_state_history(self) -> list[SubmissionStatus]:
        """Return the distinct states visited, in order."""
        return self._history.copy()

    def transition_to(self, to_state: SubmissionStatus) -> SubmissionStatus:
        """Move to ``to_state`` after validating the transition.

        Returns:
            The new current state

        Raises:
            TerminalStateError: If the machine already reached a terminal state
            InvalidTransitionError: If the transition is not permitted
        """
        validate_transition(self._current_state, to_state)
        if to_state != self._current_state:
            self._history.append(to_state)
        self._current_state = to_state
        return to_state
