"""
Bucket computations shared by the aggregate tables.

Every hourly/daily aggregate row is keyed by the start of its bucket,
computed with UTC calendar semantics so daylight saving changes never move
a sample from one bucket to another.
"""

from datetime import datetime, timezone

RAW = 'raw'
HOUR = 'hour'
DAY = 'day'

GRANULARITIES = (RAW, HOUR, DAY)

# Number of seconds covered by one aggregate row
PER_HOUR_SECONDS = 3600
PER_DAY_SECONDS = 3600 * 24

_SPANS = {
    HOUR: PER_HOUR_SECONDS,
    DAY: PER_DAY_SECONDS,
}


def bucket_key(timestamp: int, granularity: str) -> int:
    """Truncates a timestamp to the start of its hour or day.

    Args:
        timestamp: Seconds since the epoch (UTC).
        granularity: Either ``'hour'`` or ``'day'``.

    Returns:
        The timestamp of the first second of the containing bucket. A
        timestamp already on a bucket boundary is returned unchanged.

    Raises:
        ValueError: If the granularity is not ``'hour'`` or ``'day'``.
    """
    moment = datetime.fromtimestamp(int(timestamp), tz=timezone.utc)
    if granularity == HOUR:
        start = moment.replace(minute=0, second=0, microsecond=0)
    elif granularity == DAY:
        start = moment.replace(hour=0, minute=0, second=0, microsecond=0)
    else:
        raise ValueError(f"Unsupported bucket granularity: {granularity!r}")
    return int(start.timestamp())


def bucket_span(granularity: str) -> int:
    """Returns the length in seconds of a bucket of the given granularity."""
    try:
        return _SPANS[granularity]
    except KeyError:
        raise ValueError(f"Unsupported bucket granularity: {granularity!r}") from None


def bucket_range(timestamp: int, granularity: str):
    """Returns the ``[start, end)`` interval of the bucket holding ``timestamp``."""
    start = bucket_key(timestamp, granularity)
    return start, start + bucket_span(granularity)
