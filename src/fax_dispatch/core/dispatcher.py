"""Batch dispatcher: uploads once, creates one send job per unit, spawns monitors.

Control flow of one batch:

1. validate the request (no batch row exists if this fails);
2. make sure a backend session is open, create the batch row and move it to
   ``processing``;
3. in a background pipeline task, upload the shared attachment once;
4. walk the requested count chunk by chunk; inside a chunk up to
   ``max_concurrent`` creation calls run at once through the
   :class:`ConcurrencyGate`, and the next chunk starts only after every unit
   of the current one finished its creation call;
5. each accepted job gets a detached :class:`SubmissionMonitor` task that
   holds no gate permit;
6. once all monitors have finished, the batch is marked ``completed``.

A failure of a single unit's creation call is isolated to that unit. Anything
else escaping the pipeline (upload failure, store outage, ``stop()``) marks
the batch ``failed``.
"""

from __future__ import annotations

import asyncio
import logging
import math
from collections.abc import Iterator
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Annotated

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from fax_dispatch.core.batch_state import LiveBatchState
from fax_dispatch.core.config import MAX_BATCH_COUNT, DispatchConfig
from fax_dispatch.core.events import EventBus, EventType
from fax_dispatch.core.gate import ConcurrencyGate
from fax_dispatch.core.monitor import SubmissionMonitor
from fax_dispatch.core.state_machine import BatchStatus, SubmissionStatus
from fax_dispatch.core.timing import SystemClock
from fax_dispatch.errors import (
    BatchValidationError,
    DispatcherBusyError,
    DispatchStoppedError,
    StorageError,
)
from fax_dispatch.types.models import (
    BatchRecord,
    BatchRequest,
    BatchUpdate,
    SendJobRequest,
    SubmissionRecord,
)
from fax_dispatch.types.protocols import Clock, FaxBackend, FaxStore
from fax_dispatch.utils.logging import get_logger, log_with_context, reset_correlation_id, set_correlation_id
from fax_dispatch.utils.sanitization import sanitize_exception, sanitize_text

__all__ = ["BatchDispatcher", "iter_chunks", "validate_batch_request"]


class _BatchRequestModel(BaseModel):
    """Validation schema mirroring :class:`BatchRequest`."""

    model_config = ConfigDict(extra="forbid")

    file_path: Path
    destination: Annotated[str, Field(min_length=1)]
    total_count: Annotated[int, Field(ge=1, le=MAX_BATCH_COUNT)]
    batch_name: Annotated[str, Field(min_length=1)]
    owner: Annotated[str, Field(min_length=1)] = "system"
    recipient_name: str | None = None
    priority: Annotated[str, Field(min_length=1)] = "Normal"
    billing_code1: str = ""
    billing_code2: str = ""
    chunk_size: Annotated[int, Field(ge=1, le=MAX_BATCH_COUNT)] = 100

    @field_validator("file_path", mode="after")
    @classmethod
    def validate_file_exists(cls, v: Path) -> Path:
        if not v.is_file():
            msg = f"Document file does not exist: {v}"
            raise ValueError(msg)
        return v

    @field_validator("destination", "batch_name", mode="after")
    @classmethod
    def validate_not_blank(cls, v: str) -> str:
        if not v.strip():
            msg = "must not be blank"
            raise ValueError(msg)
        return v.strip()


def validate_batch_request(request: BatchRequest) -> BatchRequest:
    """Validate a batch request before anything is dispatched.

    Returns:
        The request with whitespace-trimmed destination and name

    Raises:
        BatchValidationError: With one entry per failing field
    """
    try:
        model = _BatchRequestModel.model_validate(
            {
                "file_path": request.file_path,
                "destination": request.destination,
                "total_count": request.total_count,
                "batch_name": request.batch_name,
                "owner": request.owner,
                "recipient_name": request.recipient_name,
                "priority": request.priority,
                "billing_code1": request.billing_code1,
                "billing_code2": request.billing_code2,
                "chunk_size": request.chunk_size,
            }
        )
    except ValidationError as exc:
        errors: list[dict[str, object]] = [
            {"field": ".".join(str(loc) for loc in item["loc"]), "message": item["msg"]} for item in exc.errors()
        ]
        summary = "; ".join(f"{error['field']}: {error['message']}" for error in errors)
        raise BatchValidationError(f"Invalid batch request: {summary}", errors) from exc

    return replace(request, destination=model.destination, batch_name=model.batch_name)


def iter_chunks(total_count: int, chunk_size: int) -> Iterator[tuple[int, int]]:
    """Yield ``(chunk_start, chunk_length)`` pairs covering ``total_count`` units.

    Examples:
        >>> list(iter_chunks(250, 100))
        [(0, 100), (100, 100), (200, 50)]
        >>> list(iter_chunks(3, 10))
        [(0, 3)]
    """
    for chunk_start in range(0, total_count, chunk_size):
        yield chunk_start, min(chunk_size, total_count - chunk_start)


def _root_error(exc: BaseException) -> BaseException:
    """Unwrap single-member exception groups raised by TaskGroup."""
    while isinstance(exc, BaseExceptionGroup) and len(exc.exceptions) == 1:
        exc = exc.exceptions[0]
    return exc


class BatchDispatcher:
    """Dispatch one batch at a time and track its live progress."""

    def __init__(
        self,
        backend: FaxBackend,
        store: FaxStore,
        *,
        events: EventBus | None = None,
        clock: Clock | None = None,
        max_concurrent: int = 10,
        poll_interval: float = 5.0,
        max_poll_attempts: int = 120,
        cancel_monitors_on_stop: bool = False,
        logger_obj: logging.Logger | None = None,
    ) -> None:
        self._backend: FaxBackend = backend
        self._store: FaxStore = store
        self._events: EventBus = events or EventBus()
        self._clock: Clock = clock or SystemClock()
        self._gate: ConcurrencyGate = ConcurrencyGate(max_concurrent)
        self._monitor: SubmissionMonitor = SubmissionMonitor(
            backend,
            store,
            self._events,
            self._clock,
            poll_interval=poll_interval,
            max_attempts=max_poll_attempts,
        )
        self._cancel_monitors_on_stop: bool = cancel_monitors_on_stop
        self._logger: logging.Logger = logger_obj or get_logger(__name__)

        self._processing: bool = False
        self._stop_requested: bool = False
        self._monitors_cancelled: bool = False
        self._current: LiveBatchState | None = None
        self._pipeline_task: asyncio.Task[BatchRecord | None] | None = None
        self._monitor_tasks: set[asyncio.Task[None]] = set()

    @classmethod
    def from_config(
        cls,
        config: DispatchConfig,
        backend: FaxBackend,
        store: FaxStore,
        *,
        events: EventBus | None = None,
        clock: Clock | None = None,
    ) -> BatchDispatcher:
        return cls(
            backend,
            store,
            events=events,
            clock=clock,
            max_concurrent=config.max_concurrent,
            poll_interval=config.poll_interval,
            max_poll_attempts=config.max_poll_attempts,
            cancel_monitors_on_stop=config.cancel_monitors_on_stop,
        )

    @property
    def events(self) -> EventBus:
        return self._events

    @property
    def gate(self) -> ConcurrencyGate:
        return self._gate

    @property
    def is_processing(self) -> bool:
        return self._processing

    @property
    def current_batch(self) -> LiveBatchState | None:
        """Live state of the dispatching batch, or None when idle."""
        return self._current

    @property
    def active_monitor_count(self) -> int:
        return len(self._monitor_tasks)

    async def start_batch(self, request: BatchRequest) -> int:
        """Validate ``request``, create the batch and start dispatching it.

        Returns as soon as the batch is ``processing``; dispatch continues in
        a background task. Use :meth:`wait_for_completion` to await the final
        batch row.

        Raises:
            BatchValidationError: If the request is invalid (no batch row is created)
            DispatcherBusyError: If another batch is still dispatching
            FaxApiError: If the backend login fails
        """
        if self._processing:
            msg = "A batch is already being dispatched"
            raise DispatcherBusyError(msg)

        request = validate_batch_request(request)
        self._processing = True
        self._stop_requested = False
        self._monitors_cancelled = False

        try:
            if not self._backend.is_logged_in():
                _ = await self._backend.login()

            file_size = (await asyncio.to_thread(request.file_path.stat)).st_size
            batch_id = await self._store.create_batch(
                batch_name=request.batch_name,
                owner=request.owner,
                total_count=request.total_count,
                destination=request.destination,
                file_path=str(request.file_path),
                file_size=file_size,
            )
        except BaseException:
            self._processing = False
            raise

        try:
            _ = await self._store.update_batch(
                batch_id,
                BatchUpdate(status=BatchStatus.PROCESSING, started_at=self._clock.now()),
            )
        except asyncio.CancelledError:
            self._processing = False
            raise
        except Exception as exc:
            self._processing = False
            await self._fail_pending_batch(batch_id, exc)
            raise

        state = LiveBatchState(batch_id, request.batch_name, request.total_count)
        state.mark_processing()
        self._current = state

        # Tasks copy the current context on creation, so the ID must be set first
        token = set_correlation_id(f"batch-{batch_id}")
        try:
            log_with_context(
                self._logger,
                logging.INFO,
                "Batch started",
                extra={
                    "batch_id": batch_id,
                    "batch_name": request.batch_name,
                    "total_count": request.total_count,
                    "chunk_size": request.chunk_size,
                    "max_concurrent": self._gate.capacity,
                },
            )
            _ = await self._events.publish(
                EventType.BATCH_STARTED,
                {"batchId": batch_id, "batchName": request.batch_name, "totalCount": request.total_count},
                batch_id=batch_id,
            )
            self._pipeline_task = asyncio.create_task(
                self._run_pipeline(request, state),
                name=f"batch-{batch_id}",
            )
        finally:
            reset_correlation_id(token)

        return batch_id

    async def wait_for_completion(self) -> BatchRecord | None:
        """Wait for the most recently started batch to finish.

        Returns:
            The final batch row, or None if no batch was started or its
            final state could not be persisted
        """
        task = self._pipeline_task
        if task is None:
            return None
        return await asyncio.shield(task)

    async def wait_for_monitors(self) -> None:
        """Wait until every submission monitor started so far has finished.

        A batch that failed mid-dispatch stops waiting for its monitors, but
        the jobs it already created keep being polled until they end.
        """
        while self._monitor_tasks:
            _ = await asyncio.gather(*self._monitor_tasks, return_exceptions=True)

    async def run_batch(self, request: BatchRequest) -> BatchRecord | None:
        """Start a batch and wait until it is completed or failed."""
        _ = await self.start_batch(request)
        return await self.wait_for_completion()

    async def stop(self, *, cancel_monitors: bool | None = None) -> None:
        """Stop dispatching new units and wait for in-flight creation calls.

        The running batch ends ``failed`` unless its creation phase had
        already finished. Submission monitors keep running to their own
        terminal state unless ``cancel_monitors`` (default: the configured
        ``cancel_monitors_on_stop``) is true.
        """
        cancel = self._cancel_monitors_on_stop if cancel_monitors is None else cancel_monitors
        if self._processing:
            self._stop_requested = True
            log_with_context(
                self._logger,
                logging.INFO,
                "Stop requested; waiting for in-flight job creation calls",
                extra={"in_flight": self._gate.in_flight, "cancel_monitors": cancel},
            )

        await self._gate.wait_idle()

        if cancel and self._monitor_tasks:
            tasks = list(self._monitor_tasks)
            self._monitors_cancelled = True
            for task in tasks:
                _ = task.cancel()
            _ = await asyncio.gather(*tasks, return_exceptions=True)
            log_with_context(
                self._logger,
                logging.WARNING,
                "Cancelled running submission monitors",
                extra={"cancelled": len(tasks)},
            )

    async def _run_pipeline(self, request: BatchRequest, state: LiveBatchState) -> BatchRecord | None:
        batch_id = state.batch_id
        started = self._clock.monotonic()
        try:
            attachment_ref = await self._upload(request, batch_id)
            await self._dispatch_chunks(request, state, attachment_ref)

            log_with_context(
                self._logger,
                logging.INFO,
                "All units dispatched; waiting for monitors",
                extra={
                    "batch_id": batch_id,
                    "processed_count": state.processed_count,
                    "failed_count": state.failed_count,
                    "outstanding_monitors": state.outstanding_monitors,
                },
            )
            _ = await self._events.publish(
                EventType.DISPATCH_COMPLETED,
                {
                    "batchId": batch_id,
                    "processedCount": state.processed_count,
                    "failedCount": state.failed_count,
                    "outstandingMonitors": state.outstanding_monitors,
                },
                batch_id=batch_id,
            )

            await state.wait_drained()
            if self._monitors_cancelled:
                msg = "Dispatcher stopped; submission monitoring was cancelled"
                raise DispatchStoppedError(msg)

            record = await self._store.update_batch(
                batch_id,
                BatchUpdate(
                    status=BatchStatus.COMPLETED,
                    completed_at=self._clock.now(),
                    completed_count=state.processed_count,
                    failed_count=state.failed_count,
                ),
            )
            state.mark_finished(BatchStatus.COMPLETED)

            outcomes = state.outcome_tallies()
            log_with_context(
                self._logger,
                logging.INFO,
                "Batch completed",
                extra={
                    "batch_id": batch_id,
                    "processed_count": state.processed_count,
                    "failed_count": state.failed_count,
                    "outcomes": outcomes,
                    "elapsed_seconds": round(self._clock.monotonic() - started, 3),
                },
            )
            _ = await self._events.publish(
                EventType.BATCH_COMPLETED,
                {
                    "batchId": batch_id,
                    "totalCount": state.total_count,
                    "successCount": state.processed_count,
                    "failedCount": state.failed_count,
                    "outcomes": outcomes,
                },
                batch_id=batch_id,
            )
            return record
        except asyncio.CancelledError:
            state.mark_finished(BatchStatus.FAILED)
            raise
        except Exception as exc:
            return await self._fail_batch(state, _root_error(exc))
        finally:
            self._processing = False
            self._current = None

    async def _upload(self, request: BatchRequest, batch_id: int) -> str:
        _ = await self._events.publish(EventType.UPLOADING_FILE, {"batchId": batch_id}, batch_id=batch_id)
        attachment_ref = await self._backend.upload_attachment(request.file_path)
        log_with_context(
            self._logger,
            logging.INFO,
            "Attachment uploaded",
            extra={"batch_id": batch_id, "attachment_ref": attachment_ref},
        )
        _ = await self._events.publish(
            EventType.FILE_UPLOADED,
            {"batchId": batch_id, "attachmentUrl": attachment_ref},
            batch_id=batch_id,
        )
        return attachment_ref

    async def _dispatch_chunks(self, request: BatchRequest, state: LiveBatchState, attachment_ref: str) -> None:
        batch_id = state.batch_id
        total_chunks = math.ceil(request.total_count / request.chunk_size)

        for chunk_index, (chunk_start, chunk_length) in enumerate(
            iter_chunks(request.total_count, request.chunk_size),
            start=1,
        ):
            self._raise_if_stopped()
            self._logger.info(
                "Chunk %d/%d started (%d units)",
                chunk_index,
                total_chunks,
                chunk_length,
            )
            _ = await self._events.publish(
                EventType.CHUNK_STARTED,
                {
                    "batchId": batch_id,
                    "chunkIndex": chunk_index,
                    "totalChunks": total_chunks,
                    "chunkSize": chunk_length,
                },
                batch_id=batch_id,
            )

            async with asyncio.TaskGroup() as task_group:
                for offset in range(chunk_length):
                    await self._gate.acquire()
                    if self._stop_requested:
                        self._gate.release()
                        break
                    submission_number = chunk_start + offset + 1
                    task = task_group.create_task(
                        self._send_unit(request, state, attachment_ref, submission_number),
                        name=f"batch-{batch_id}-unit-{submission_number}",
                    )
                    task.add_done_callback(self._release_permit)

            self._logger.info(
                "Chunk %d/%d completed (processed %d, failed %d)",
                chunk_index,
                total_chunks,
                state.processed_count,
                state.failed_count,
            )
            _ = await self._events.publish(
                EventType.CHUNK_COMPLETED,
                {
                    "batchId": batch_id,
                    "chunkIndex": chunk_index,
                    "totalChunks": total_chunks,
                    "chunkSize": chunk_length,
                    "processedCount": state.processed_count,
                    "failedCount": state.failed_count,
                },
                batch_id=batch_id,
            )
            self._raise_if_stopped()

    def _raise_if_stopped(self) -> None:
        if self._stop_requested:
            msg = "Dispatcher stopped before all units were dispatched"
            raise DispatchStoppedError(msg)

    async def _send_unit(
        self,
        request: BatchRequest,
        state: LiveBatchState,
        attachment_ref: str,
        submission_number: int,
    ) -> None:
        """Create one send job; its gate permit is returned when the task finishes."""
        recipient_name = request.recipient_name or f"Recipient {submission_number}"
        try:
            fax_handle = await self._backend.create_job(
                SendJobRequest(
                    destination=request.destination,
                    recipient_name=recipient_name,
                    attachment_ref=attachment_ref,
                    priority=request.priority,
                    billing_code1=request.billing_code1,
                    billing_code2=request.billing_code2,
                )
            )
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            await self._record_creation_failure(request, state, recipient_name, submission_number, exc)
            return

        # The backend already accepted the job, so it cannot be recorded as a creation failure
        queued_at = self._clock.now()
        try:
            submission_id = await self._store.create_submission(
                SubmissionRecord(
                    id=0,
                    batch_id=state.batch_id,
                    fax_handle=fax_handle,
                    send_job_id=fax_handle,
                    destination=request.destination,
                    recipient_name=recipient_name,
                    status=SubmissionStatus.CONVERTING,
                    priority=request.priority,
                    queued_at=queued_at,
                    conversion_started_at=queued_at,
                    billing_code1=request.billing_code1,
                    billing_code2=request.billing_code2,
                )
            )
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            log_with_context(
                self._logger,
                logging.ERROR,
                "Send job created but not stored",
                extra={
                    "batch_id": state.batch_id,
                    "submission_number": submission_number,
                    "fax_handle": fax_handle,
                    "error_message": sanitize_exception(exc),
                },
            )
            msg = f"Send job {fax_handle} for submission {submission_number} was created but not stored: {exc}"
            raise StorageError(msg) from exc

        processed_count = state.record_created()
        self._logger.debug("Fax %d submitted as %s", submission_number, fax_handle)
        _ = await self._events.publish(
            EventType.FAX_SUBMITTED,
            {
                "batchId": state.batch_id,
                "submissionNumber": submission_number,
                "faxHandle": fax_handle,
                "submissionId": submission_id,
                "totalCount": state.total_count,
                "processedCount": processed_count,
            },
            batch_id=state.batch_id,
        )
        self._launch_monitor(state, fax_handle, submission_id, queued_at)

    def _release_permit(self, _task: asyncio.Task[None]) -> None:
        # Runs even for unit tasks cancelled before their first step
        self._gate.release()

    async def _record_creation_failure(
        self,
        request: BatchRequest,
        state: LiveBatchState,
        recipient_name: str,
        submission_number: int,
        exc: Exception,
    ) -> None:
        failed_count = state.record_creation_failed()
        error_message = sanitize_text(str(exc)) or type(exc).__name__
        log_with_context(
            self._logger,
            logging.ERROR,
            "Failed to create send job",
            extra={
                "batch_id": state.batch_id,
                "submission_number": submission_number,
                "failed_count": failed_count,
                "error_message": sanitize_exception(exc),
            },
        )

        now = self._clock.now()
        try:
            _ = await self._store.create_submission(
                SubmissionRecord(
                    id=0,
                    batch_id=state.batch_id,
                    fax_handle=_synthetic_handle(state.batch_id, now, submission_number),
                    destination=request.destination,
                    recipient_name=recipient_name,
                    status=SubmissionStatus.FAILED,
                    priority=request.priority,
                    queued_at=now,
                    error_message=error_message,
                    billing_code1=request.billing_code1,
                    billing_code2=request.billing_code2,
                )
            )
        except asyncio.CancelledError:
            raise
        except Exception as store_exc:
            log_with_context(
                self._logger,
                logging.ERROR,
                "Failed to persist failed submission",
                extra={
                    "batch_id": state.batch_id,
                    "submission_number": submission_number,
                    "error_message": sanitize_exception(store_exc),
                },
            )

        _ = await self._events.publish(
            EventType.FAX_FAILED,
            {
                "batchId": state.batch_id,
                "submissionNumber": submission_number,
                "error": error_message,
                "failedCount": failed_count,
            },
            batch_id=state.batch_id,
        )

    def _launch_monitor(
        self,
        state: LiveBatchState,
        fax_handle: str,
        submission_id: int,
        started_at: datetime,
    ) -> None:
        state.monitor_started()
        task = asyncio.create_task(
            self._run_monitor(state, fax_handle, submission_id, started_at),
            name=f"monitor-{fax_handle}",
        )
        self._monitor_tasks.add(task)
        task.add_done_callback(self._monitor_tasks.discard)

    async def _run_monitor(
        self,
        state: LiveBatchState,
        fax_handle: str,
        submission_id: int,
        started_at: datetime,
    ) -> None:
        outcome: SubmissionStatus | None = None
        try:
            outcome = await self._monitor.run(
                fax_handle,
                submission_id,
                batch_id=state.batch_id,
                started_at=started_at,
            )
        except asyncio.CancelledError:
            self._logger.info("Monitor for %s cancelled", fax_handle)
            raise
        except Exception as exc:
            log_with_context(
                self._logger,
                logging.ERROR,
                "Submission monitor crashed",
                extra={"fax_handle": fax_handle, "error_message": sanitize_exception(exc)},
            )
        finally:
            state.monitor_finished(outcome)

    async def _fail_batch(self, state: LiveBatchState, exc: BaseException) -> BatchRecord | None:
        state.mark_finished(BatchStatus.FAILED)
        error_message = sanitize_text(str(exc)) or type(exc).__name__
        log_with_context(
            self._logger,
            logging.ERROR,
            "Batch failed",
            extra={
                "batch_id": state.batch_id,
                "processed_count": state.processed_count,
                "failed_count": state.failed_count,
                "error_message": sanitize_exception(exc),
            },
        )
        record = await self._persist_failure(state.batch_id, state, exc)
        _ = await self._events.publish(
            EventType.BATCH_FAILED,
            {"batchId": state.batch_id, "error": error_message},
            batch_id=state.batch_id,
        )
        return record

    async def _fail_pending_batch(self, batch_id: int, exc: BaseException) -> None:
        """Move a batch that never started through ``processing`` to ``failed``."""
        try:
            _ = await self._store.update_batch(
                batch_id,
                BatchUpdate(status=BatchStatus.PROCESSING, started_at=self._clock.now()),
            )
        except asyncio.CancelledError:
            raise
        except Exception as store_exc:
            log_with_context(
                self._logger,
                logging.ERROR,
                "Failed to persist batch failure",
                extra={"batch_id": batch_id, "error_message": sanitize_exception(store_exc)},
            )
            return
        _ = await self._persist_failure(batch_id, None, exc)

    async def _persist_failure(
        self,
        batch_id: int,
        state: LiveBatchState | None,
        exc: BaseException,
    ) -> BatchRecord | None:
        update = BatchUpdate(
            status=BatchStatus.FAILED,
            completed_at=self._clock.now(),
            error_message=sanitize_text(str(exc)) or type(exc).__name__,
        )
        if state is not None:
            update.completed_count = state.processed_count
            update.failed_count = state.failed_count
        try:
            return await self._store.update_batch(batch_id, update)
        except asyncio.CancelledError:
            raise
        except Exception as store_exc:
            log_with_context(
                self._logger,
                logging.ERROR,
                "Failed to persist batch failure",
                extra={"batch_id": batch_id, "error_message": sanitize_exception(store_exc)},
            )
            return None


def _synthetic_handle(batch_id: int, now: datetime, submission_number: int) -> str:
    """Handle for a unit whose job was never created; unique per batch and unit."""
    return f"failed-{batch_id}-{int(now.timestamp() * 1000)}-{submission_number}"
