from __future__ import annotations

import os
from datetime import date, datetime, time
from typing import Optional, Union

from zoneinfo import ZoneInfo

LOCAL_TZ = ZoneInfo(os.getenv("BACKEND_TIMEZONE", "Asia/Kolkata"))


DatetimeLike = Optional[Union[datetime, date]]


def now_local() -> datetime:
    return datetime.now(tz=LOCAL_TZ)


def now_local_naive() -> datetime:
    # storage columns are naive and hold local wall-clock time
    return now_local().replace(tzinfo=None)


def ensure_local_datetime(value: DatetimeLike) -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, date) and not isinstance(value, datetime):
        return datetime.combine(value, time.min, tzinfo=LOCAL_TZ)
    if value.tzinfo is None:
        # treat naive timestamps as already local so we do not shift the value
        return value.replace(tzinfo=LOCAL_TZ)
    return value.astimezone(LOCAL_TZ)


def to_storage_datetime(value: DatetimeLike) -> Optional[datetime]:
    converted = ensure_local_datetime(value)
    if converted is None:
        return None
    return converted.replace(tzinfo=None)


def format_local(value: DatetimeLike, fmt: str = "%Y-%m-%d %H:%M") -> str:
    if value is None:
        return "-"
    if isinstance(value, date) and not isinstance(value, datetime):
        return value.isoformat()
    converted = ensure_local_datetime(value)
    if converted is None:
        return "-"
    return converted.strftime(fmt)


def parse_range_value(raw: str, *, is_range_end: bool = False) -> datetime:
    """Parse date/datetime strings into naive local datetimes for range filters."""
    text = (raw or "").strip()
    if not text:
        raise ValueError("Empty date value")
    try:
        # Common case: YYYY-MM-DD input from date pickers
        parsed_date = date.fromisoformat(text)
        base_time = time.max if is_range_end else time.min
        return datetime.combine(parsed_date, base_time)
    except ValueError:
        pass
    try:
        parsed_dt = datetime.fromisoformat(text)
    except ValueError as exc:
        raise ValueError("Invalid date format") from exc
    converted = to_storage_datetime(parsed_dt)
    if converted is None:
        raise ValueError("Unable to convert date")
    return converted
