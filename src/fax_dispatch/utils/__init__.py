"""Shared utility modules.

This package provides:
- Human-readable formatting of sizes, durations and percentages
- Secret sanitization for logs and error messages
- Logging configuration with correlation IDs

The utilities carry no dispatch logic and no backend-specific knowledge.
"""

from fax_dispatch.utils.formatting import (
    format_duration,
    format_duration_ms,
    format_percentage,
    format_size,
)
from fax_dispatch.utils.sanitization import (
    REDACTED,
    sanitize_exception,
    sanitize_text,
    sanitize_value,
)

__all__ = [
    # Formatting utilities
    "format_duration",
    "format_duration_ms",
    "format_percentage",
    "format_size",
    # Sanitization
    "REDACTED",
    "sanitize_exception",
    "sanitize_text",
    "sanitize_value",
]
