"""Time windows for the published feed and the inspection endpoints.

Named windows are aligned to local midnight in the display timezone. The local
calendar is computed through the transition-table resolver, so the result does
not depend on the host's timezone setting.
"""

import logging
from datetime import UTC, datetime, timedelta
from typing import Optional

from dateutil.parser import isoparse

from .errors import UnknownTimezone
from .models import TimezoneRule
from .timezone_utils import now_utc
from .tz_resolver import TimezoneTable, resolve_wall_clock, wall_clock_at

logger = logging.getLogger(__name__)

DEFAULT_WINDOW_WEEKS = 8
DEFAULT_RANGE_DAYS = 30
NAMED_WINDOWS = ("today", "week", "month", "next-month", "8-weeks")


def default_window(now: Optional[datetime] = None, weeks: int = DEFAULT_WINDOW_WEEKS) -> tuple[datetime, datetime]:
    """Return the published window ``[now, now + weeks)``."""
    start = (now or now_utc()).astimezone(UTC)
    return start, start + timedelta(weeks=weeks)


def _display_rule(display_timezone: Optional[str]) -> TimezoneRule:
    try:
        return TimezoneTable().get(display_timezone or "UTC")
    except UnknownTimezone:
        logger.warning("Unknown display timezone %r, using UTC", display_timezone)
        return TimezoneRule.fixed("UTC", timedelta(0))


def _local_midnight(rule: TimezoneRule, year: int, month: int, day: int) -> datetime:
    return resolve_wall_clock(rule, datetime(year, month, day)).instant


def _month_start(year: int, month: int, months_ahead: int) -> tuple[int, int]:
    index = year * 12 + (month - 1) + months_ahead
    return index // 12, index % 12 + 1


def named_window(
    name: Optional[str],
    now: Optional[datetime] = None,
    display_timezone: Optional[str] = "UTC",
) -> tuple[datetime, datetime]:
    """Return the UTC bounds of a named inspection window.

    Args:
        name: One of ``today``, ``week``, ``month``, ``next-month``, ``8-weeks``;
            anything else selects the next 30 days
        now: Reference instant (defaults to the current time)
        display_timezone: Zone whose local midnight aligns the window

    Returns:
        ``(start, end)`` as aware UTC datetimes
    """
    current = (now or now_utc()).astimezone(UTC)
    key = (name or "").strip().lower()

    if key == "8-weeks":
        return default_window(current, DEFAULT_WINDOW_WEEKS)
    if key not in NAMED_WINDOWS:
        if key:
            logger.debug("Unknown range %r, using the next %d days", name, DEFAULT_RANGE_DAYS)
        return current, current + timedelta(days=DEFAULT_RANGE_DAYS)

    rule = _display_rule(display_timezone)
    local = wall_clock_at(rule, current)

    if key == "today":
        start_date = local.date()
        end_date = start_date + timedelta(days=1)
    elif key == "week":
        start_date = local.date()
        end_date = start_date + timedelta(days=7)
    else:
        offset = 1 if key == "next-month" else 0
        start_year, start_month = _month_start(local.year, local.month, offset)
        end_year, end_month = _month_start(local.year, local.month, offset + 1)
        return (
            _local_midnight(rule, start_year, start_month, 1),
            _local_midnight(rule, end_year, end_month, 1),
        )

    return (
        _local_midnight(rule, start_date.year, start_date.month, start_date.day),
        _local_midnight(rule, end_date.year, end_date.month, end_date.day),
    )


def parse_instant(value: str) -> datetime:
    """Parse an ISO 8601 instant; naive values are taken as UTC.

    Raises:
        ValueError: If ``value`` is not ISO 8601
    """
    parsed = isoparse(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)
