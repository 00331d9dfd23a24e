"""
Injectable time source for the attendance ledger.

The ledger never calls ``datetime.now()`` directly; it asks a clock for the
current instant and for the local calendar-day key, so tests can move time
across midnight deterministically.
"""
from datetime import datetime, date, timedelta
from typing import Optional

import pytz

from .config import config


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes (SQLite drops tzinfo) and normalise aware ones."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=pytz.utc)
    return value.astimezone(pytz.utc)


class SystemClock:
    """Wall clock in UTC with calendar days taken in the configured local timezone."""

    def __init__(self, timezone: Optional[str] = None, date_format: Optional[str] = None):
        self.timezone = pytz.timezone(timezone or config.local_timezone)
        self.date_format = date_format or config.attendance_date_format

    def now(self) -> datetime:
        return datetime.now(pytz.utc)

    def today(self) -> date:
        return self.now().astimezone(self.timezone).date()

    def date_key(self) -> str:
        """Current local day formatted as the attendance record key (``yyyy-MM-dd``)."""
        return self.today().strftime(self.date_format)

    def local_time(self, instant: datetime) -> datetime:
        return ensure_utc(instant).astimezone(self.timezone)


class FixedClock(SystemClock):
    """A clock that only moves when told to."""

    def __init__(self, current: datetime, timezone: Optional[str] = None, date_format: Optional[str] = None):
        super().__init__(timezone, date_format)
        self.current = ensure_utc(current)

    def now(self) -> datetime:
        return self.current

    def set(self, current: datetime):
        self.current = ensure_utc(current)

    def advance(self, **kwargs):
        self.current = self.current + timedelta(**kwargs)
