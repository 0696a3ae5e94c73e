from datetime import datetime, timedelta
from typing import Callable
from zoneinfo import ZoneInfo

from config import get_settings
from models import BudgetPeriod

Clock = Callable[[], datetime]


def local_now() -> datetime:
    """Wall-clock time in the configured timezone, without tzinfo.

    Transaction timestamps are stored as naive local times, so window
    boundaries are compared against naive values too.
    """
    settings = get_settings()
    tz = ZoneInfo(settings.timezone)
    return datetime.now(tz).replace(tzinfo=None)


def window_start(period: BudgetPeriod, now: datetime) -> datetime:
    """Inclusive start of the budget period containing ``now``.

    Monthly windows begin at midnight on the first of the month. Weekly
    windows begin at midnight on the Monday of the current week.
    """
    midnight = now.replace(hour=0, minute=0, second=0, microsecond=0)
    if period == BudgetPeriod.weekly:
        return midnight - timedelta(days=midnight.weekday())
    return midnight.replace(day=1)
