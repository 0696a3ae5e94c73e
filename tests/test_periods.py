from datetime import datetime, timedelta, timezone

from models import BudgetPeriod
from periods import window_start


def test_monthly_window_starts_at_first_of_month_midnight():
    now = datetime(2025, 3, 20, 15, 30, 12, 999)
    assert window_start(BudgetPeriod.monthly, now) == datetime(2025, 3, 1)


def test_monthly_window_on_first_instant_is_itself():
    now = datetime(2025, 3, 1, 0, 0)
    assert window_start(BudgetPeriod.monthly, now) == now


def test_weekly_window_starts_on_monday():
    # 2025-03-20 is a Thursday.
    now = datetime(2025, 3, 20, 15, 30)
    assert window_start(BudgetPeriod.weekly, now) == datetime(2025, 3, 17)


def test_weekly_window_crosses_month_boundary():
    # Sunday 2025-06-01 belongs to the week starting Monday 2025-05-26.
    now = datetime(2025, 6, 1, 23, 59)
    assert window_start(BudgetPeriod.weekly, now) == datetime(2025, 5, 26)


def test_weekly_window_on_monday_is_same_day():
    now = datetime(2025, 3, 17, 8, 0)
    assert window_start(BudgetPeriod.weekly, now) == datetime(2025, 3, 17)


def test_window_keeps_timezone_of_reference():
    tz = timezone(timedelta(hours=7))
    now = datetime(2025, 3, 20, 1, 0, tzinfo=tz)
    start = window_start(BudgetPeriod.monthly, now)
    assert start == datetime(2025, 3, 1, tzinfo=tz)
    assert start.tzinfo is tz
