"""
calendar_utils.py
------------------
Calendar arithmetic used by all engines.

Conventions:
    - Instants are naive datetimes in the ledger's local time.
    - day_of_week: 0 = Sunday ... 6 = Saturday (the ledger's histogram layout).
    - Month arithmetic clamps to the end of the month and never rolls over
      (Jan 31 + 1 month = Feb 28/29).
"""

from datetime import datetime, timedelta

import pandas as pd

from core.models import RecurrenceType


# Calendar unit per periodicity: (DateOffset keyword, units per step).
# pandas DateOffset clamps month ends.
_STEP_UNITS = {
    RecurrenceType.DAILY.value: ("days", 1),
    RecurrenceType.WEEKLY.value: ("weeks", 1),
    RecurrenceType.BIWEEKLY.value: ("weeks", 2),
    RecurrenceType.MONTHLY.value: ("months", 1),
    RecurrenceType.QUARTERLY.value: ("months", 3),
    RecurrenceType.ANNUAL.value: ("years", 1),
}


def day_of_week(dt: datetime) -> int:
    """0 = Sunday."""
    return (dt.weekday() + 1) % 7


def time_of_day_bucket(hour: int) -> str:
    """morning 6-12, afternoon 12-18, evening 18-24, night 0-6."""
    if 6 <= hour < 12:
        return "morning"
    if 12 <= hour < 18:
        return "afternoon"
    if 18 <= hour < 24:
        return "evening"
    return "night"


def start_of_day(dt: datetime) -> datetime:
    return dt.replace(hour=0, minute=0, second=0, microsecond=0)


def whole_days_between(earlier: datetime, later: datetime) -> int:
    """Signed whole days from `earlier` to `later`, truncated towards zero."""
    seconds = (later - earlier).total_seconds()
    return int(seconds / 86400)


def whole_hours_between(earlier: datetime, later: datetime) -> int:
    """Signed whole hours from `earlier` to `later`, truncated towards zero."""
    seconds = (later - earlier).total_seconds()
    return int(seconds / 3600)


def same_month(a: datetime, b: datetime) -> bool:
    return a.year == b.year and a.month == b.month


def subtract_months(dt: datetime, months: int) -> datetime:
    return (pd.Timestamp(dt) - pd.DateOffset(months=months)).to_pydatetime()


def add_days(dt: datetime, days: int) -> datetime:
    return dt + timedelta(days=days)


def step(anchor: datetime, recurrence_type: str, count: int) -> datetime:
    """
    The `count`-th occurrence after `anchor` for a periodicity.

    Computed from the anchor rather than by repeated addition, so a series
    anchored on the 31st returns to the 31st after a short month.

    Raises:
        ValueError: For an unknown recurrence type.
    """
    unit = _STEP_UNITS.get(recurrence_type)
    if unit is None:
        raise ValueError(f"Unknown recurrence type: {recurrence_type!r}")
    if count == 0:
        return anchor
    keyword, per_step = unit
    offset = pd.DateOffset(**{keyword: per_step * count})
    return (pd.Timestamp(anchor) + offset).to_pydatetime()
