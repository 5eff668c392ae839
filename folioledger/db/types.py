from __future__ import annotations

import datetime as dt

from sqlalchemy.types import DateTime, TypeDecorator

from folioledger.utils.time import ensure_utc


class UTCDateTime(TypeDecorator):
    """
    Timestamp column that is naive UTC on disk and tz-aware UTC in Python.

    Execution staleness and cleanup compare against `utcnow()`, so values read back
    from SQLite must carry tzinfo.
    """

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value: dt.datetime | None, dialect):
        if value is None:
            return None
        return ensure_utc(value).replace(tzinfo=None)

    def process_result_value(self, value: dt.datetime | None, dialect):
        return None if value is None else ensure_utc(value)
