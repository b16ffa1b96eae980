from datetime import datetime, timezone

MILLIS_PER_SECOND = 1000


def now_millis() -> int:
    """
    Returns the current wall-clock time as Unix epoch milliseconds.
    """
    return int(datetime.now(timezone.utc).timestamp() * MILLIS_PER_SECOND)


def to_millis(ts: datetime) -> int:
    """
    Returns epoch milliseconds for the given time. Naive datetimes are treated as UTC.
    """
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return int(ts.timestamp() * MILLIS_PER_SECOND)


def from_millis(millis: int) -> datetime:
    return datetime.fromtimestamp(millis / MILLIS_PER_SECOND, tz=timezone.utc)


def elapsed_seconds(earlier_millis: int, later_millis: int) -> float:
    return (later_millis - earlier_millis) / MILLIS_PER_SECOND
