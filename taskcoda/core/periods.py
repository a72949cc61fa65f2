from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Callable


TimeProvider = Callable[[], datetime]


def utc_now() -> datetime:
    # Use UTC for consistent billing period boundaries.
    return datetime.now(timezone.utc)


def _as_utc(ts: datetime) -> datetime:
    # Treat naive datetimes (e.g. from SQLite) as UTC.
    if ts.tzinfo is None:
        return ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc)


def month_start(ts: datetime) -> datetime:
    # First instant of the UTC calendar month containing ts.
    ts = _as_utc(ts)
    return datetime(ts.year, ts.month, 1, tzinfo=timezone.utc)


def month_end(ts: datetime) -> datetime:
    # Last millisecond of the UTC calendar month containing ts.
    start = month_start(ts)
    if start.month == 12:
        next_start = datetime(start.year + 1, 1, 1, tzinfo=timezone.utc)
    else:
        next_start = datetime(start.year, start.month + 1, 1, tzinfo=timezone.utc)
    return next_start - timedelta(milliseconds=1)


def shift_months(ts: datetime, months: int) -> datetime:
    # Move to the start of the month `months` away (negative goes back in time).
    start = month_start(ts)
    index = start.year * 12 + (start.month - 1) + months
    return datetime(index // 12, index % 12 + 1, 1, tzinfo=timezone.utc)


def to_epoch_ms(ts: datetime) -> int:
    return int(_as_utc(ts).timestamp() * 1000)
