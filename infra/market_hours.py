"""Exchange-clock helpers (America/New_York session and order windows)."""

from __future__ import annotations

from datetime import date, datetime, time, timedelta, timezone
from typing import Iterator, Optional
from zoneinfo import ZoneInfo

EXCHANGE_TZ = ZoneInfo("America/New_York")

SESSION_OPEN = time(9, 30)
SESSION_CLOSE = time(16, 0)


def now_exchange() -> datetime:
    return datetime.now(timezone.utc).astimezone(EXCHANGE_TZ)


def to_exchange(ts: datetime) -> datetime:
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(EXCHANGE_TZ)


def parse_clock(value: str) -> time:
    """Parse ``HH:MM`` into a time."""
    hours, _, minutes = value.strip().partition(":")
    return time(int(hours), int(minutes or 0))


def in_window(ts: datetime, start: time, end: time) -> bool:
    """True when the exchange-local clock time of ``ts`` falls in ``[start, end)``."""
    local = to_exchange(ts).time()
    return start <= local < end


def is_session_hours(ts: Optional[datetime] = None) -> bool:
    """Regular session is ``[09:30, 16:00)`` exchange time."""
    return in_window(ts or now_exchange(), SESSION_OPEN, SESSION_CLOSE)


def previous_weekdays(ts: Optional[datetime] = None, max_days_back: int = 7) -> Iterator[date]:
    """Yield calendar dates 1..max_days_back days before ``ts``, skipping Saturdays and Sundays."""
    today = to_exchange(ts or now_exchange()).date()
    for days_ago in range(1, max_days_back + 1):
        day = today - timedelta(days=days_ago)
        if day.weekday() < 5:
            yield day


def day_bounds(day: date) -> tuple[datetime, datetime]:
    """Exchange-local start and end of ``day``."""
    start = datetime.combine(day, time.min, tzinfo=EXCHANGE_TZ)
    end = datetime.combine(day, time(23, 59, 59), tzinfo=EXCHANGE_TZ)
    return start, end
