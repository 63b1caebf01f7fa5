# file: utils.format_numbers.py
# Copyright (c) 2026, Alibaba Cloud. All rights reserved.
import math
from typing import Optional


def format_number(value: float, significant_digits: int = 2, max_fraction_digits: int = 3) -> str:
    """
    Formats a number with a bounded number of significant digits.

    Large values keep all their integer digits; small values get up to
    `max_fraction_digits` decimals.

    Examples:
        format_number(1234.5) -> '1,235'
        format_number(12.345) -> '12'
        format_number(0.1234) -> '0.12'
    """
    if value == 0 or not math.isfinite(value):
        return f"{value:,.0f}" if math.isfinite(value) else str(value)
    magnitude = math.floor(math.log10(abs(value)))
    fraction_digits = max(0, min(max_fraction_digits, significant_digits - 1 - magnitude))
    return f"{value:,.{fraction_digits}f}"


def format_timestamp(time_ms: float, significant_digits: int = 5, max_fraction_digits: int = 3) -> str:
    """Formats a time span in milliseconds with an automatically chosen unit (s, ms, µs, ns)."""
    abs_time = abs(time_ms)
    if abs_time >= 1000:
        return format_number(time_ms / 1000, significant_digits, max_fraction_digits) + 's'
    if abs_time >= 1 or abs_time == 0:
        return format_number(time_ms, significant_digits, max_fraction_digits) + 'ms'
    if abs_time >= 0.001:
        return format_number(time_ms * 1000, significant_digits, max_fraction_digits) + 'µs'
    return format_number(time_ms * 1e6, significant_digits, max_fraction_digits) + 'ns'


def format_duration(duration_ms: float) -> str:
    """Compact duration used in marker statistics: '250µs', '12.50ms', '1.25s'."""
    if duration_ms < 1:
        return f"{duration_ms * 1000:.0f}µs"
    if duration_ms < 1000:
        return f"{duration_ms:.2f}ms"
    return f"{duration_ms / 1000:.2f}s"


def format_short_duration(duration_ms: float) -> str:
    """Duration used in context headers and zoom messages: '12.5ms' or '1.25s'."""
    if duration_ms < 1000:
        return f"{duration_ms:.1f}ms"
    return f"{duration_ms / 1000:.2f}s"


def format_percentage(fraction: float, digits: int = 1) -> str:
    """Formats a fraction in [0, 1] as a percentage string."""
    return f"{fraction * 100:.{digits}f}%"


def format_bytes(num_bytes: float) -> str:
    """Formats a byte count with a binary unit ('512B', '1.5KB', '3.2MB', ...)."""
    value = float(num_bytes)
    if abs(value) < 1024:
        return f"{value:.0f}B"
    for unit in ('KB', 'MB', 'GB'):
        value /= 1024
        if abs(value) < 1024:
            break
    return f"{value:.1f}{unit}"


def format_value_with_format(value, value_format: Optional[str]) -> str:
    """
    Formats a marker payload value according to its schema format name
    ('duration', 'time', 'milliseconds', 'bytes', 'percentage', 'integer', ...).
    Unknown formats and non-numeric values fall back to `str()`.
    """
    if value is None:
        return '(empty)'
    if not isinstance(value, (int, float)) or isinstance(value, bool):
        return str(value)
    match value_format:
        case 'duration' | 'time' | 'milliseconds':
            return format_timestamp(value)
        case 'seconds':
            return format_timestamp(value * 1000)
        case 'microseconds':
            return format_timestamp(value / 1000)
        case 'nanoseconds':
            return format_timestamp(value / 1e6)
        case 'bytes':
            return format_bytes(value)
        case 'percentage':
            return format_percentage(value)
        case 'integer':
            return f"{round(value):,}"
        case 'decimal':
            return format_number(value)
        case _:
            return str(value)
