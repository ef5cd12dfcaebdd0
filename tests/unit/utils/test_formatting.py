"""Unit tests for formatting utilities.

Tests cover:
- Attachment size unit boundaries
- Duration rendering with two significant units
- Missing durations and percentages
"""

import pytest
from hypothesis import given
from hypothesis import strategies as st

from fax_dispatch.utils.formatting import (
    format_duration,
    format_duration_ms,
    format_percentage,
    format_size,
)


class TestFormatSize:
    """Test suite for format_size function."""

    @pytest.mark.parametrize(
        ("bytes_value", "expected"),
        [
            (0, "0 Bytes"),
            (1023, "1023 Bytes"),
            (1024, "1.0 KB"),
            (1536, "1.5 KB"),
            (1024**2, "1.0 MB"),
            (1024**2 * 5, "5.0 MB"),
            (1024**3, "1.0 GB"),
            # Largest unit keeps growing instead of overflowing
            (1024**4, "1024.0 GB"),
        ],
    )
    def test_format_size_boundaries(self, bytes_value: int, expected: str) -> None:
        assert format_size(bytes_value) == expected

    def test_format_size_negative_raises_error(self) -> None:
        with pytest.raises(ValueError, match="num_bytes must be non-negative"):
            _ = format_size(-1)


class TestFormatDuration:
    """Test suite for format_duration and format_duration_ms."""

    @pytest.mark.parametrize(
        ("seconds", "expected"),
        [
            (0, "0s"),
            (45, "45s"),
            (59.9, "59s"),
            (60, "1m"),
            (90, "1m 30s"),
            (3600, "1h"),
            (3665, "1h 1m"),
            (86400, "1d"),
            (90000, "1d 1h"),
        ],
    )
    def test_format_duration(self, seconds: float, expected: str) -> None:
        assert format_duration(seconds) == expected

    def test_format_duration_negative_raises_error(self) -> None:
        with pytest.raises(ValueError, match="seconds must be non-negative"):
            _ = format_duration(-0.5)

    def test_format_duration_ms(self) -> None:
        assert format_duration_ms(125_000) == "2m 5s"
        assert format_duration_ms(999) == "0s"

    def test_unmeasured_duration_renders_dash(self) -> None:
        assert format_duration_ms(None) == "-"

    @given(st.integers(min_value=0, max_value=10 * 365 * 86400))
    def test_format_duration_never_empty(self, seconds: int) -> None:
        """Property: every non-negative duration renders to a non-empty string."""
        rendered = format_duration(seconds)
        assert rendered
        assert rendered[-1] in "smhd"


class TestFormatPercentage:
    @pytest.mark.parametrize(
        ("value", "expected"),
        [(0, "0.00%"), (33.333, "33.33%"), (66.666, "66.67%"), (100, "100.00%")],
    )
    def test_format_percentage(self, value: float, expected: str) -> None:
        assert format_percentage(value) == expected
