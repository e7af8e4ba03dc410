from datetime import date, datetime, time, timedelta
from typing import Optional, Tuple, Union

DateLike = Union[datetime, date, str]


def to_datetime(value: DateLike) -> Optional[datetime]:
    """
    Converts stored timestamps (ISO strings, with or without a trailing "Z")
    and plain dates into aware datetimes. Naive values are local time.
    Returns None for anything that cannot be parsed.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime.combine(value, time.min)
    elif isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        try:
            parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError:
            return None
    else:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.astimezone()
    return parsed


def local_date(value: DateLike) -> Optional[date]:
    parsed = to_datetime(value)
    return parsed.astimezone().date() if parsed else None


def is_same_day(first: DateLike, second: DateLike) -> bool:
    """
    True when both instants fall on the same calendar day in this process's
    local time zone. This is deliberately not a UTC day boundary.
    """
    left, right = local_date(first), local_date(second)
    return left is not None and left == right


def local_day_bounds(reference: Optional[DateLike] = None) -> Tuple[datetime, datetime]:
    """[start, end] of the local calendar day containing `reference` (default: now)."""
    day = local_date(reference) if reference is not None else datetime.now().date()
    if day is None:
        raise ValueError(f"Unparseable date: {reference!r}")
    start = datetime.combine(day, time.min).astimezone()
    end = datetime.combine(day + timedelta(days=1), time.min).astimezone() - timedelta(microseconds=1)
    return start, end


def format_local_date(value: DateLike) -> str:
    parsed = to_datetime(value)
    return parsed.astimezone().date().isoformat() if parsed else ""


def format_local_time(value: DateLike) -> str:
    parsed = to_datetime(value)
    return parsed.astimezone().strftime("%H:%M:%S") if parsed else ""
