from datetime import datetime, timezone


def utc_now() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """
    Return `value` as a timezone-aware datetime.

    Naive datetimes are assumed to already be in UTC.
    """
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def minutes_since(value: datetime, now: datetime | None = None) -> float:
    now = now or utc_now()
    return (now - ensure_utc(value)).total_seconds() / 60
