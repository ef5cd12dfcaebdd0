"""Pure formatting utilities for human-readable CLI and log output.

All functions are stateless and side-effect free.
"""

# Binary unit steps used for attachment sizes
_SIZE_UNITS: tuple[str, ...] = ("KB", "MB", "GB")
_SIZE_STEP = 1024.0

# Time unit constants
_MINUTE = 60
_HOUR = _MINUTE * 60
_DAY = _HOUR * 24


def format_size(num_bytes: int) -> str:
    """Convert an attachment size in bytes to a human-readable string.

    Examples:
        >>> format_size(512)
        '512 Bytes'
        >>> format_size(1536)
        '1.5 KB'
        >>> format_size(5 * 1024 * 1024)
        '5.0 MB'
    """
    if num_bytes < 0:
        msg = "num_bytes must be non-negative"
        raise ValueError(msg)

    if num_bytes < _SIZE_STEP:
        return f"{num_bytes} Bytes"

    value = float(num_bytes)
    unit = _SIZE_UNITS[0]
    for unit in _SIZE_UNITS:
        value /= _SIZE_STEP
        if value < _SIZE_STEP:
            break
    return f"{value:.1f} {unit}"


def format_duration(seconds: float) -> str:
    """Convert seconds to a duration string showing the two most significant units.

    Rounds down to whole seconds and omits a zero trailing unit.

    Examples:
        >>> format_duration(45)
        '45s'
        >>> format_duration(90)
        '1m 30s'
        >>> format_duration(3665)
        '1h 1m'
        >>> format_duration(90000)
        '1d 1h'
    """
    if seconds < 0:
        msg = "seconds must be non-negative"
        raise ValueError(msg)

    total_seconds = int(seconds)

    for unit_seconds, unit, sub_seconds, sub_unit in (
        (_DAY, "d", _HOUR, "h"),
        (_HOUR, "h", _MINUTE, "m"),
        (_MINUTE, "m", 1, "s"),
    ):
        if total_seconds >= unit_seconds:
            major = total_seconds // unit_seconds
            minor = (total_seconds % unit_seconds) // sub_seconds
            if minor > 0:
                return f"{major}{unit} {minor}{sub_unit}"
            return f"{major}{unit}"

    return f"{total_seconds}s"


def format_duration_ms(milliseconds: int | None) -> str:
    """Format a persisted phase duration; ``None`` (not yet measured) renders as ``-``.

    Examples:
        >>> format_duration_ms(125000)
        '2m 5s'
        >>> format_duration_ms(None)
        '-'
    """
    if milliseconds is None:
        return "-"
    return format_duration(milliseconds / 1000)


def format_percentage(value: float) -> str:
    """Format a progress percentage with two decimals.

    Examples:
        >>> format_percentage(33.333)
        '33.33%'
        >>> format_percentage(100)
        '100.00%'
    """
    return f"{value:.2f}%"
