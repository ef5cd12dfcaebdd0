"""Application entry point and CLI for fax-dispatch.

This module parses command-line arguments, loads the configuration, sets up
logging and wires the backend, the store and the dispatcher together for one
command. ``send`` runs a single batch to completion; SIGINT and SIGTERM
trigger a graceful ``stop()`` of the dispatcher instead of killing the
process mid-request.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
from contextlib import AsyncExitStack
from pathlib import Path
from typing import NoReturn

from fax_dispatch.backend import FaxApiClient, SimulatedFaxBackend
from fax_dispatch.core.config import (
    DEFAULT_CONFIG_PATH,
    ConfigurationError,
    EnvironmentVariableError,
    MainConfig,
    load_main_config,
)
from fax_dispatch.core.dispatcher import BatchDispatcher
from fax_dispatch.core.events import DispatchEvent, EventBus
from fax_dispatch.core.metrics import MetricsCollector
from fax_dispatch.core.state_machine import BatchStatus
from fax_dispatch.core.status import BatchStatusAggregator
from fax_dispatch.core.timing import SystemClock
from fax_dispatch.errors import BatchValidationError, FaxDispatchError
from fax_dispatch.storage import open_store
from fax_dispatch.types.models import BatchRecord, BatchRequest
from fax_dispatch.types.protocols import FaxBackend, FaxStore
from fax_dispatch.utils.formatting import format_duration_ms, format_percentage, format_size
from fax_dispatch.utils.logging import configure_logging, get_logger, log_with_context

__all__ = ["async_main", "main", "parse_arguments"]

# Exit codes
EXIT_SUCCESS = 0
EXIT_ERROR = 1
EXIT_BATCH_FAILED = 2

logger = get_logger(__name__)


def parse_arguments(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command-line arguments for the fax-dispatch application.

    CLI Arguments:
        --config, -c: Path to main configuration file
        --dry-run: Use the simulated backend (overrides config)
        --log-level: Override log level from config
        send / show / recent: command to run
    """
    parser = argparse.ArgumentParser(
        prog="fax-dispatch",
        description="Send one document to a destination many times and track every submission",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  fax-dispatch send --file letter.pdf --destination 5551234 --count 250
  fax-dispatch --dry-run send --file letter.pdf --destination 5551234 --count 10
  fax-dispatch show 42
  fax-dispatch recent --limit 10
        """,
    )

    _ = parser.add_argument(
        "--config",
        "-c",
        type=Path,
        default=DEFAULT_CONFIG_PATH,
        help=f"Path to main configuration file (default: {DEFAULT_CONFIG_PATH})",
        metavar="PATH",
    )
    _ = parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Dry-run mode: use the simulated backend, no fax is sent (overrides config)",
    )
    _ = parser.add_argument(
        "--log-level",
        type=str,
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Override log level from configuration",
        metavar="LEVEL",
    )

    commands = parser.add_subparsers(dest="command", required=True, metavar="COMMAND")

    send = commands.add_parser("send", help="Dispatch one batch and wait for every submission")
    _ = send.add_argument("--file", "-f", type=Path, required=True, help="Document to send")
    _ = send.add_argument("--destination", "-d", required=True, help="Destination fax number")
    _ = send.add_argument("--count", "-n", type=int, required=True, help="Number of copies to send")
    _ = send.add_argument("--name", help="Batch name (default: file name)")
    _ = send.add_argument("--owner", default="system", help="Owner recorded on the batch")
    _ = send.add_argument("--recipient", help="Recipient name (default: Recipient <n>)")
    _ = send.add_argument("--priority", help="Job priority (default: from configuration)")
    _ = send.add_argument("--billing-code1", default="", help="Billing code 1")
    _ = send.add_argument("--billing-code2", default="", help="Billing code 2")
    _ = send.add_argument("--chunk-size", type=int, help="Units per chunk (default: from configuration)")
    _ = send.add_argument(
        "--max-concurrent",
        type=int,
        help="Simultaneous job-creation calls (default: from configuration)",
    )

    show = commands.add_parser("show", help="Show one batch and its submission summary")
    _ = show.add_argument("batch_id", type=int, help="Batch ID")

    recent = commands.add_parser("recent", help="List recent batches")
    _ = recent.add_argument("--limit", type=int, default=20, help="Number of batches (default: 20)")

    return parser.parse_args(argv)


def build_batch_request(args: argparse.Namespace, config: MainConfig) -> BatchRequest:
    """Turn ``send`` arguments into a batch request, filling config defaults."""
    file_path: Path = args.file  # pyright: ignore[reportAny]  # argparse boundary
    name: str | None = args.name  # pyright: ignore[reportAny]  # argparse boundary
    priority: str | None = args.priority  # pyright: ignore[reportAny]  # argparse boundary
    chunk_size: int | None = args.chunk_size  # pyright: ignore[reportAny]  # argparse boundary
    return BatchRequest(
        file_path=file_path,
        destination=args.destination,  # pyright: ignore[reportAny]  # argparse boundary
        total_count=args.count,  # pyright: ignore[reportAny]  # argparse boundary
        batch_name=name or file_path.name,
        owner=args.owner,  # pyright: ignore[reportAny]  # argparse boundary
        recipient_name=args.recipient,  # pyright: ignore[reportAny]  # argparse boundary
        priority=priority or config.dispatch.default_priority,
        billing_code1=args.billing_code1,  # pyright: ignore[reportAny]  # argparse boundary
        billing_code2=args.billing_code2,  # pyright: ignore[reportAny]  # argparse boundary
        chunk_size=chunk_size or config.dispatch.chunk_size,
    )


def _log_event(event: DispatchEvent) -> None:
    log_with_context(
        logger,
        logging.DEBUG,
        f"Event {event.event_type}",
        extra={"event_data": dict(event.data)},
    )


def _print_batch(batch: BatchRecord) -> None:
    done = batch.completed_count + batch.failed_count
    share = done / batch.total_count * 100.0 if batch.total_count else 0.0
    print(f"Batch {batch.id}: {batch.batch_name}")
    print(f"  Status:      {batch.status}")
    print(f"  Owner:       {batch.owner}")
    print(f"  Destination: {batch.destination}")
    print(f"  File:        {batch.file_path} ({format_size(batch.file_size or 0)})")
    print(f"  Submitted:   {batch.completed_count}/{batch.total_count} ({format_percentage(share)} processed)")
    print(f"  Failed:      {batch.failed_count}")
    if batch.error_message:
        print(f"  Error:       {batch.error_message}")


async def _run_send(args: argparse.Namespace, config: MainConfig, store: FaxStore) -> int:
    request = build_batch_request(args, config)
    dispatch_config = config.dispatch
    max_concurrent: int | None = args.max_concurrent  # pyright: ignore[reportAny]  # argparse boundary
    if max_concurrent is not None:
        dispatch_config = dispatch_config.model_copy(update={"max_concurrent": max_concurrent})

    clock = SystemClock()
    events = EventBus()
    _ = events.subscribe(_log_event)

    async with AsyncExitStack() as stack:
        backend: FaxBackend
        if config.application.dry_run:
            logger.info("Dry-run mode: using the simulated backend")
            backend = SimulatedFaxBackend()
        else:
            backend = await stack.enter_async_context(FaxApiClient.from_config(config.backend))

        dispatcher = BatchDispatcher.from_config(dispatch_config, backend, store, events=events, clock=clock)

        collector: MetricsCollector | None = None
        if config.metrics.enabled:
            collector = MetricsCollector(
                store,
                clock,
                interval=config.metrics.collection_interval,
                since=clock.now(),
            )
            collector.start()

        loop = asyncio.get_running_loop()
        stop_tasks: set[asyncio.Task[None]] = set()

        def request_stop() -> None:
            if stop_tasks:
                logger.info("Second shutdown signal received, cancelling submission monitors")
                stop = dispatcher.stop(cancel_monitors=True)
            else:
                logger.info("Shutdown signal received, stopping dispatch")
                stop = dispatcher.stop()
            stop_tasks.add(asyncio.create_task(stop))

        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, request_stop)

        try:
            record = await dispatcher.run_batch(request)
            # A stopped batch fails without its monitors; the jobs it created still finish
            if dispatcher.active_monitor_count:
                logger.info("Waiting for %d submission monitors to finish", dispatcher.active_monitor_count)
                await dispatcher.wait_for_monitors()
        finally:
            for sig in (signal.SIGINT, signal.SIGTERM):
                _ = loop.remove_signal_handler(sig)
            if stop_tasks:
                _ = await asyncio.gather(*stop_tasks)
            if collector is not None:
                await collector.stop()
                _ = await collector.collect_once()
            if backend.is_logged_in():
                _ = await backend.logout()

    if record is None:
        print("Batch outcome unknown: the final state could not be stored", file=sys.stderr)
        return EXIT_ERROR
    _print_batch(record)
    return EXIT_SUCCESS if record.status == BatchStatus.COMPLETED else EXIT_BATCH_FAILED


async def _run_show(batch_id: int, store: FaxStore) -> int:
    details = await BatchStatusAggregator(None, store).get_batch_details(batch_id)
    if details is None:
        print(f"Batch {batch_id} not found", file=sys.stderr)
        return EXIT_ERROR

    _print_batch(details.batch)
    print("  Submissions:")
    for status, count in sorted(details.count_by_status().items()):
        print(f"    {status:<11} {count}")
    durations = [s.total_ms for s in details.submissions if s.total_ms is not None]
    if durations:
        print(f"  Average total duration: {format_duration_ms(sum(durations) // len(durations))}")
    return EXIT_SUCCESS


async def _run_recent(limit: int, store: FaxStore) -> int:
    batches = await BatchStatusAggregator(None, store).get_recent_batches(limit)
    if not batches:
        print("No batches recorded")
        return EXIT_SUCCESS
    for batch in batches:
        created = batch.created_at.strftime("%Y-%m-%d %H:%M") if batch.created_at else "-"
        print(
            f"{batch.id:>6}  {created}  {batch.status:<10}  "
            f"{batch.completed_count:>6}/{batch.total_count:<6}  failed {batch.failed_count:<5}  {batch.batch_name}"
        )
    return EXIT_SUCCESS


async def async_main(
    args: argparse.Namespace,
    *,
    config_path: Path,
    dry_run: bool = False,
    log_level: str | None = None,
) -> int:
    """Async main function implementing the command lifecycle.

    Returns:
        Process exit code

    Raises:
        ConfigurationError: If configuration is invalid
    """
    config = load_main_config(config_path)

    # Apply CLI overrides to configuration
    if dry_run:
        config.application.dry_run = True
    if log_level is not None:
        config.application.log_level = log_level

    configure_logging(
        log_level=config.application.log_level,
        log_file=config.application.log_file,
        enable_console=True,
    )
    log_with_context(
        logger,
        logging.INFO,
        "fax-dispatch starting",
        extra={"config_path": str(config_path), "dry_run": config.application.dry_run},
    )

    store = await open_store(config.storage)
    try:
        command: str = args.command  # pyright: ignore[reportAny]  # argparse boundary
        if command == "send":
            return await _run_send(args, config, store)
        if command == "show":
            return await _run_show(args.batch_id, store)  # pyright: ignore[reportAny]  # argparse boundary
        return await _run_recent(args.limit, store)  # pyright: ignore[reportAny]  # argparse boundary
    finally:
        await store.close()


def main() -> NoReturn:
    """Main entry point for the fax-dispatch application.

    Exit Codes:
        0: Success
        1: Configuration error, invalid request or runtime error
        2: The batch ran but ended failed
    """
    args = parse_arguments()

    config_path_arg: Path = args.config  # pyright: ignore[reportAny]  # argparse boundary
    dry_run_arg: bool = args.dry_run  # pyright: ignore[reportAny]  # argparse boundary
    log_level_arg: str | None = args.log_level  # pyright: ignore[reportAny]  # argparse boundary

    try:
        exit_code = asyncio.run(
            async_main(
                args,
                config_path=config_path_arg,
                dry_run=dry_run_arg,
                log_level=log_level_arg,
            )
        )

    except ConfigurationError as exc:
        print(f"Configuration error:\n{exc}", file=sys.stderr)
        sys.exit(EXIT_ERROR)

    except EnvironmentVariableError as exc:
        print(f"Environment variable error:\n{exc}", file=sys.stderr)
        sys.exit(EXIT_ERROR)

    except BatchValidationError as exc:
        print(f"Invalid batch request: {exc}", file=sys.stderr)
        for error in exc.errors:
            print(f"  {error.get('field')}: {error.get('message')}", file=sys.stderr)
        sys.exit(EXIT_ERROR)

    except FaxDispatchError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(EXIT_ERROR)

    except KeyboardInterrupt:
        print("\nShutdown complete", file=sys.stderr)
        sys.exit(EXIT_SUCCESS)

    except Exception as exc:
        print(f"Unexpected error: {exc}", file=sys.stderr)
        logging.exception("Unexpected error during application execution")
        sys.exit(EXIT_ERROR)

    sys.exit(exit_code)


if __name__ == "__main__":
    main()
