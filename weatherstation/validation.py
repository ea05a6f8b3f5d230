"""
Explicit parsing of caller supplied values.

Probes and command-line tools hand over strings; everything is converted
here, before any transaction starts, so bad input surfaces as InvalidInput
instead of being silently coerced by the database.
"""

import math
import time
from typing import Any, Optional, Tuple

from weatherstation.exceptions import InvalidInput

# Timestamps every bucket computation and database integer column can hold
MIN_TIMESTAMP = 0
MAX_TIMESTAMP = 253402300799


def parse_timestamp(value: Any, name: str = 'timestamp') -> int:
    """Parses a timestamp in seconds since the epoch.

    Integers, integral floats and strings holding an integer are accepted,
    from 1970-01-01T00:00:00Z to 9999-12-31T23:59:59Z.

    Raises:
        InvalidInput: If the value is not an integral number of seconds or
            falls outside the supported range.
    """
    if isinstance(value, bool) or value is None:
        raise InvalidInput(f"{name} must be an integer, got {value!r}")
    if isinstance(value, int):
        timestamp = value
    elif isinstance(value, float):
        if not (math.isfinite(value) and value.is_integer()):
            raise InvalidInput(f"{name} must be a whole number of seconds, got {value!r}")
        timestamp = int(value)
    elif isinstance(value, str):
        try:
            timestamp = int(value.strip(), 10)
        except ValueError:
            raise InvalidInput(f"{name} is not an integer: {value!r}") from None
    else:
        raise InvalidInput(f"{name} must be an integer, got {type(value).__name__}")

    if not MIN_TIMESTAMP <= timestamp <= MAX_TIMESTAMP:
        raise InvalidInput(f"{name} out of range [{MIN_TIMESTAMP}, {MAX_TIMESTAMP}]: {timestamp}")
    return timestamp


def parse_optional_timestamp(value: Any) -> int:
    """Like `parse_timestamp` but ``None`` means "now"."""
    if value is None:
        return int(round(time.time()))
    return parse_timestamp(value)


def parse_measurement(value: Any, name: str) -> float:
    """Parses a temperature or humidity value.

    Raises:
        InvalidInput: If the value is not a finite number.
    """
    if isinstance(value, bool) or value is None:
        raise InvalidInput(f"{name} must be a number, got {value!r}")
    if isinstance(value, (int, float)):
        result = float(value)
    elif isinstance(value, str):
        try:
            result = float(value.strip())
        except ValueError:
            raise InvalidInput(f"{name} is not a number: {value!r}") from None
    else:
        raise InvalidInput(f"{name} must be a number, got {type(value).__name__}")
    if not math.isfinite(result):
        raise InvalidInput(f"{name} must be finite, got {value!r}")
    return result


def parse_time_range(start: Any, end: Any) -> Tuple[int, int]:
    """Parses a ``[start, end)`` query range.

    Raises:
        InvalidInput: If either bound is invalid or ``end`` precedes ``start``.
    """
    start_ts = parse_timestamp(start, 'start')
    end_ts = parse_timestamp(end, 'end')
    if end_ts < start_ts:
        raise InvalidInput(f"Malformed range: end ({end_ts}) is before start ({start_ts})")
    return start_ts, end_ts


def parse_sample(timestamp: Optional[Any], temperature: Any, humidity: Any) -> Tuple[int, float, float]:
    """Parses one (timestamp, temperature, humidity) sample."""
    return (
        parse_optional_timestamp(timestamp),
        parse_measurement(temperature, 'temperature'),
        parse_measurement(humidity, 'humidity'),
    )
