from __future__ import annotations

import datetime as dt
from typing import Any

UTC = dt.timezone.utc


def utcnow() -> dt.datetime:
    return dt.datetime.now(UTC)


def ensure_utc(value: dt.datetime) -> dt.datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def parse_date(value: Any) -> dt.date | None:
    if value is None:
        return None
    if isinstance(value, dt.datetime):
        return value.date()
    if isinstance(value, dt.date):
        return value
    s = str(value).strip()
    if not s:
        return None
    try:
        return dt.date.fromisoformat(s[:10])
    except ValueError:
        return None


def week_start(d: dt.date) -> dt.date:
    # ISO week: Monday.
    return d - dt.timedelta(days=d.weekday())


def month_start(d: dt.date) -> dt.date:
    return d.replace(day=1)


def year_start(d: dt.date) -> dt.date:
    return d.replace(month=1, day=1)


def month_end(d: dt.date) -> dt.date:
    nxt = (d.replace(day=28) + dt.timedelta(days=4)).replace(day=1)
    return nxt - dt.timedelta(days=1)


def sampling_dates(start: dt.date, end: dt.date, granularity: str) -> list[dt.date]:
    """
    Sampling dates in [start, end] for a snapshot granularity.

    - DAILY: every calendar day
    - WEEKLY: every Sunday (week close), plus `end` when it is not a Sunday
    - MONTHLY: every month end, plus `end` when it is not a month end
    """
    if end < start:
        return []
    g = granularity.upper()
    out: list[dt.date] = []
    if g == "DAILY":
        d = start
        while d <= end:
            out.append(d)
            d += dt.timedelta(days=1)
        return out
    if g == "WEEKLY":
        d = start + dt.timedelta(days=(6 - start.weekday()) % 7)
        while d <= end:
            out.append(d)
            d += dt.timedelta(days=7)
    elif g == "MONTHLY":
        d = month_end(start)
        while d <= end:
            out.append(d)
            d = month_end(d + dt.timedelta(days=1))
    else:
        raise ValueError(f"Unknown granularity: {granularity}")
    if not out or out[-1] != end:
        out.append(end)
    return out
