from datetime import datetime, timezone

from core.errors import ValidationError


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def period_key(moment: datetime) -> str:
    """Calendar-month budget period, e.g. ``2025-08``."""
    return moment.strftime("%Y-%m")


def period_bounds(key: str) -> tuple[datetime, datetime]:
    """Return ``[start, end)`` of a ``YYYY-MM`` period in UTC."""
    try:
        start = datetime.strptime(key, "%Y-%m").replace(tzinfo=timezone.utc)
    except ValueError:
        raise ValidationError(f"Invalid period key {key!r}, expected YYYY-MM")
    if start.month == 12:
        end = start.replace(year=start.year + 1, month=1)
    else:
        end = start.replace(month=start.month + 1)
    return start, end


def is_closed(key: str, now: datetime) -> bool:
    _, end = period_bounds(key)
    return now >= end
