from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Optional, Protocol
from zoneinfo import ZoneInfo

from config import get_settings
from models import TimePeriod


@dataclass(frozen=True)
class Period:
    slug: str
    start: date
    end: date

    def contains(self, day: date) -> bool:
        return self.start <= day <= self.end


class Clock(Protocol):
    def today(self) -> date: ...


class SystemClock:
    def __init__(self, timezone: Optional[str] = None) -> None:
        self.timezone = timezone or get_settings().timezone

    def today(self) -> date:
        return datetime.now(ZoneInfo(self.timezone)).date()


@dataclass
class FixedClock:
    current: date

    def today(self) -> date:
        return self.current

    def advance(self, days: int = 1) -> None:
        self.current = self.current + timedelta(days=days)


def days_in_month(year: int, month: int) -> int:
    if month == 12:
        next_month = date(year + 1, 1, 1)
    else:
        next_month = date(year, month + 1, 1)
    return (next_month - date(year, month, 1)).days


def subtract_months(base: date, months: int) -> date:
    total_months = base.year * 12 + (base.month - 1) - months
    year, month_index = divmod(total_months, 12)
    month = month_index + 1
    day = min(base.day, days_in_month(year, month))
    return date(year, month, day)


# (days, months) to look back from today; every TimePeriod must be present.
_LOOKBACK: dict[TimePeriod, tuple[int, int]] = {
    TimePeriod.daily: (0, 0),
    TimePeriod.weekly: (7, 0),
    TimePeriod.monthly: (0, 1),
    TimePeriod.quarterly: (0, 3),
    TimePeriod.yearly: (0, 12),
}

_missing = set(TimePeriod) - set(_LOOKBACK)
if _missing:
    raise RuntimeError(f"No rolling window defined for {sorted(p.value for p in _missing)}")


def rolling_window(period: TimePeriod, today: date) -> Period:
    days, months = _LOOKBACK[period]
    start = subtract_months(today, months) - timedelta(days=days)
    return Period(period.value.lower(), start, today)
