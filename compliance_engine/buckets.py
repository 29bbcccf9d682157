"""
Interval bucket planning.

A bucket is a timestamp floored to an interval boundary measured from an
anchor instant. Reports anchor to "now", so the same historical timestamp
can land in a different bucket when a report is rebuilt later; pass EPOCH
as the anchor where stable boundaries are needed.
"""

from datetime import datetime, timedelta, timezone
from typing import Callable

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    """Default clock: the current time in UTC."""
    return datetime.now(timezone.utc)


def bucket_of(timestamp: datetime, interval: timedelta, anchor: datetime) -> datetime:
    """Floor a timestamp to the interval grid anchored at `anchor`.

    Computes timestamp - ((timestamp - anchor) mod interval). The modulo
    is a floor modulo, so the bucket is never later than the timestamp,
    whether the timestamp lies before or after the anchor.

    Args:
        timestamp: The instant to bucket
        interval: Bucket width, must be positive
        anchor: An instant lying on a bucket boundary

    Returns:
        The start of the bucket containing the timestamp

    Raises:
        ValueError: If the interval is not positive
    """
    if interval <= timedelta(0):
        raise ValueError(f"Bucket interval must be positive, got {interval}")
    return timestamp - ((timestamp - anchor) % interval)


def bucket_range(earliest: datetime, latest: datetime, interval: timedelta):
    """Yield every bucket from earliest up to and including latest."""
    if interval <= timedelta(0):
        raise ValueError(f"Bucket interval must be positive, got {interval}")
    current = earliest
    while current <= latest:
        yield current
        current = current + interval
