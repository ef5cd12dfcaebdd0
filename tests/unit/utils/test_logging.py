"""Unit tests for logging filters and correlation ID tracking."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterator
from pathlib import Path

import pytest

from fax_dispatch.utils.logging import (
    CorrelationIDFilter,
    SecretRedactingFilter,
    configure_logging,
    get_correlation_id,
    log_with_context,
    reset_correlation_id,
    set_correlation_id,
)
from fax_dispatch.utils.sanitization import REDACTED


def _record(msg: str, *args: object) -> logging.LogRecord:
    return logging.LogRecord(
        name="fax_dispatch.test",
        level=logging.INFO,
        pathname=__file__,
        lineno=1,
        msg=msg,
        args=args,
        exc_info=None,
    )


class TestCorrelationId:
    def test_default_is_none(self) -> None:
        assert get_correlation_id() is None

    def test_set_and_reset(self) -> None:
        token = set_correlation_id("batch-1")
        assert get_correlation_id() == "batch-1"
        reset_correlation_id(token)
        assert get_correlation_id() is None

    async def test_tasks_inherit_correlation_id(self) -> None:
        """Monitor tasks spawned inside a batch log under the batch ID."""
        _ = set_correlation_id("batch-7")

        async def read_id() -> str | None:
            await asyncio.sleep(0)
            return get_correlation_id()

        assert await asyncio.create_task(read_id()) == "batch-7"

    async def test_task_changes_do_not_leak_to_parent(self) -> None:
        _ = set_correlation_id("batch-1")

        async def override() -> None:
            _ = set_correlation_id("batch-2")

        await asyncio.create_task(override())
        assert get_correlation_id() == "batch-1"


class TestCorrelationIDFilter:
    def test_adds_placeholder_without_id(self) -> None:
        record = _record("hello")
        assert CorrelationIDFilter().filter(record) is True
        assert getattr(record, "correlation_id") == "N/A"

    def test_adds_current_id(self) -> None:
        _ = set_correlation_id("batch-3")
        record = _record("hello")
        _ = CorrelationIDFilter().filter(record)
        assert getattr(record, "correlation_id") == "batch-3"


class TestSecretRedactingFilter:
    def test_message_and_args_redacted(self) -> None:
        record = _record("Login to %s returned %s", "https://ops:pw@fax.example.com", "rf-auth=abc")
        assert SecretRedactingFilter().filter(record) is True
        message = record.getMessage()
        assert ":pw@" not in message
        assert "abc" not in message
        assert REDACTED in message

    def test_extra_fields_redacted(self) -> None:
        record = _record("Configured backend")
        record.password = "hunter2"
        record.fax_handle = "J-1"
        _ = SecretRedactingFilter().filter(record)
        assert getattr(record, "password") == REDACTED
        assert getattr(record, "fax_handle") == "J-1"


class TestConfigureLogging:
    @pytest.fixture(autouse=True)
    def _restore_root(self) -> Iterator[None]:
        root = logging.getLogger()
        handlers = list(root.handlers)
        level = root.level
        yield None
        for handler in root.handlers:
            if handler not in handlers:
                handler.close()
        root.handlers[:] = handlers
        root.setLevel(level)

    def test_log_file_receives_redacted_lines(self, tmp_path: Path) -> None:
        log_file = tmp_path / "logs" / "fax-dispatch.log"
        configure_logging(log_level="DEBUG", log_file=log_file, enable_console=False)
        _ = set_correlation_id("batch-9")

        logger = logging.getLogger("fax_dispatch.test")
        log_with_context(
            logger,
            logging.INFO,
            "Session established",
            extra={"session_cookie": "rf-auth=secret", "fax_handle": "J-1"},
        )
        for handler in logging.getLogger().handlers:
            handler.flush()

        content = log_file.read_text(encoding="utf-8")
        assert "Session established" in content
        assert "[batch-9]" in content
        assert "secret" not in content

    def test_level_is_applied(self) -> None:
        configure_logging(log_level="warning", enable_console=False)
        assert logging.getLogger().level == logging.WARNING
