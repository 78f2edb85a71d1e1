from datetime import date

import pytest

from models import TimePeriod
from periods import FixedClock, rolling_window, subtract_months


@pytest.mark.parametrize(
    "period, today, start",
    [
        (TimePeriod.daily, date(2025, 1, 20), date(2025, 1, 20)),
        (TimePeriod.weekly, date(2025, 1, 20), date(2025, 1, 13)),
        (TimePeriod.monthly, date(2024, 3, 31), date(2024, 2, 29)),
        (TimePeriod.quarterly, date(2025, 5, 31), date(2025, 2, 28)),
        (TimePeriod.yearly, date(2024, 2, 29), date(2023, 2, 28)),
    ],
)
def test_rolling_window_looks_back_from_today(period, today, start) -> None:
    window = rolling_window(period, today)

    assert window.start == start
    assert window.end == today
    assert window.contains(today)


def test_subtract_months_crosses_year_boundary() -> None:
    assert subtract_months(date(2025, 1, 15), 1) == date(2024, 12, 15)
    assert subtract_months(date(2025, 2, 10), 14) == date(2023, 12, 10)


def test_fixed_clock_advances() -> None:
    clock = FixedClock(date(2025, 1, 31))
    clock.advance()

    assert clock.today() == date(2025, 2, 1)
