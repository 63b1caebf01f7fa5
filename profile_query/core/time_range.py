# file: core/time_range.py
# Copyright (c) 2026, Alibaba Cloud. All rights reserved.
import re
from typing import Optional, Tuple

from profile_query.errors import ArgumentError

NUMBER_PATTERN = r'[-+]?(?:\d+\.?\d*|\.\d+)'
TIME_VALUE_PATTERN = re.compile(rf'^({NUMBER_PATTERN})(ms|s|%)?$')


def is_timestamp_name(value: str) -> bool:
    return value.startswith(('ts-', 'ts<', 'ts>'))


def parse_time_value(value: str, root_range: Tuple[float, float]) -> Optional[float]:
    """
    Parses one side of a zoom range into an absolute timestamp (milliseconds).

    Accepted forms, relative to the start of the root range:
        "2.7"    -> seconds
        "2700ms" -> milliseconds
        "2.7s"   -> seconds
        "10%"    -> percentage of the root range duration

    Args:
        value (str): The value to parse.
        root_range (Tuple[float, float]): The profile's (start, end) in milliseconds.

    Returns:
        Optional[float]: The absolute timestamp, or None if `value` is a
        timestamp name (`ts-...`) that must be resolved by the caller.

    Raises:
        ArgumentError: If the value is in none of the accepted forms.
    """
    value = value.strip()
    if is_timestamp_name(value):
        return None

    if not (match := TIME_VALUE_PATTERN.match(value)):
        raise ArgumentError(
            f'Invalid time value: "{value}". Expected a timestamp name (e.g. "ts-6"), '
            f'seconds ("2.7" or "2.7s"), milliseconds ("2700ms") or a percentage ("10%")')

    number, unit = float(match.group(1)), match.group(2)
    start, end = root_range
    match unit:
        case '%':
            return start + (end - start) * number / 100
        case 'ms':
            return start + number
        case _:
            return start + number * 1000
