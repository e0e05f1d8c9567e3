"""Plan cadence arithmetic.

A cadence is a fixed recurrence anchored to a time of day: daily, weekly
(same weekday) or monthly (same day of month). This module advances
timestamps by one cadence unit and derives the cron pattern a trigger
fires on.
"""

import calendar
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional

from sip_engine.errors import PlanValidationError


class Cadence(str, Enum):
    """Supported recurrence periods."""

    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"


def parse_cadence(value) -> Cadence:
    """Parse a cadence name.

    Raises:
        PlanValidationError: If the value is not daily, weekly or monthly
    """
    if isinstance(value, Cadence):
        return value
    try:
        return Cadence(str(value).strip().lower())
    except ValueError:
        raise PlanValidationError(
            f"Invalid frequency {value!r}. Must be daily, weekly, or monthly"
        ) from None


def add_months(value: datetime, months: int) -> datetime:
    """Add calendar months, clamping the day to the target month's length."""
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def advance(cadence, start: datetime) -> datetime:
    """Move a timestamp forward by exactly one cadence unit.

    Example:
        >>> advance("monthly", datetime(2024, 1, 31, 9, 0))
        datetime.datetime(2024, 2, 29, 9, 0)
    """
    cadence = parse_cadence(cadence)
    if cadence == Cadence.DAILY:
        return start + timedelta(days=1)
    if cadence == Cadence.WEEKLY:
        return start + timedelta(days=7)
    return add_months(start, 1)


def next_execution(
    cadence,
    last_execution: Optional[datetime] = None,
    created_at: Optional[datetime] = None,
) -> datetime:
    """Next execution derived from the last run, or from creation time."""
    anchor = last_execution or created_at
    if anchor is None:
        raise ValueError("next_execution needs last_execution or created_at")
    return advance(cadence, anchor)


def cron_pattern(cadence, anchor: datetime) -> str:
    """Cron pattern firing at the anchor's time of day on the cadence.

    Weekly patterns use cron weekday numbering (0 = Sunday). Monthly anchors
    past the 28th fire on the last day of each month so short months are
    not skipped.
    """
    cadence = parse_cadence(cadence)
    minute, hour = anchor.minute, anchor.hour
    if cadence == Cadence.DAILY:
        return f"{minute} {hour} * * *"
    if cadence == Cadence.WEEKLY:
        cron_weekday = (anchor.weekday() + 1) % 7
        return f"{minute} {hour} * * {cron_weekday}"
    day = anchor.day if anchor.day <= 28 else "L"
    return f"{minute} {hour} {day} * *"
