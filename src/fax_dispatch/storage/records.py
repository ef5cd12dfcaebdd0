"""Update rules shared by every store implementation.

Both stores apply partial updates in Python so that lifecycle validation is
identical regardless of where the rows live.
"""

from __future__ import annotations

from dataclasses import fields, replace
from datetime import datetime

from fax_dispatch.core.state_machine import (
    BATCH_TERMINAL_STATES,
    TerminalStateError,
    is_terminal,
    validate_batch_transition,
    validate_transition,
)
from fax_dispatch.types.models import BatchRecord, BatchUpdate, SubmissionRecord, SubmissionUpdate

__all__ = ["apply_batch_update", "apply_submission_update"]


def _changes(update: BatchUpdate | SubmissionUpdate) -> dict[str, object]:
    return {
        f.name: value
        for f in fields(update)
        if (value := getattr(update, f.name)) is not None  # pyright: ignore[reportAny]  # dataclass introspection
    }


def apply_batch_update(record: BatchRecord, update: BatchUpdate) -> BatchRecord:
    """Return ``record`` with the non-None fields of ``update`` applied.

    Raises:
        TerminalStateError: If the batch is already completed or failed
        InvalidTransitionError: If the status change is not allowed
    """
    if record.status in BATCH_TERMINAL_STATES:
        raise TerminalStateError(
            f"Batch {record.id} already {record.status}; refusing update",
            from_state=record.status,
            to_state=update.status,
        )
    if update.status is not None and update.status != record.status:
        validate_batch_transition(record.status, update.status)
    return replace(record, **_changes(update))  # pyright: ignore[reportArgumentType]  # validated field names


def apply_submission_update(record: SubmissionRecord, update: SubmissionUpdate, now: datetime) -> SubmissionRecord:
    """Return ``record`` with ``update`` applied and ``updated_at`` refreshed.

    Raises:
        TerminalStateError: If the submission already reached a terminal status
        InvalidTransitionError: If the status change is not allowed
    """
    target = update.status if update.status is not None else record.status
    if is_terminal(record.status):
        raise TerminalStateError(
            f"Submission {record.fax_handle} already {record.status}; refusing update",
            from_state=record.status,
            to_state=target,
        )
    if target != record.status:
        validate_transition(record.status, target)
    return replace(record, **_changes(update), updated_at=now)  # pyright: ignore[reportArgumentType]  # validated field names
