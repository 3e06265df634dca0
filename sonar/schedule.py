"""
Monitor active-hours evaluation.

Users can restrict a monitor to, say, 9am-5pm on weekdays in their own
timezone. Windows whose start hour is later than the end hour wrap past
midnight (22 -> 6 covers 22:00-05:59).
"""

import logging
from datetime import datetime
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .models import ScheduleWindow, utcnow

logger = logging.getLogger("sonar.schedule")

DEFAULT_TIMEZONE = "America/New_York"
WEEKDAYS = [1, 2, 3, 4, 5]


def _zone(name: str | None) -> ZoneInfo:
    try:
        return ZoneInfo(name or DEFAULT_TIMEZONE)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning(f"Unknown timezone '{name}', falling back to {DEFAULT_TIMEZONE}")
        return ZoneInfo(DEFAULT_TIMEZONE)


def local_hour_and_day(window: ScheduleWindow, now: datetime) -> tuple[int, int]:
    """Return (hour, day) in the window's timezone, day 0=Sunday."""
    local = now.astimezone(_zone(window.timezone))
    # Python weekday() is Monday=0
    return local.hour, (local.weekday() + 1) % 7


def is_schedule_active(window: ScheduleWindow, now: datetime | None = None) -> bool:
    """
    Check whether a monitor may scan right now.

    Args:
        window: The monitor's schedule settings.
        now: Aware datetime to evaluate at (defaults to current UTC time).

    Returns:
        True when scheduling is disabled or the current local time is inside
        the configured hours and days.
    """
    if not window.enabled:
        return True

    hour, day = local_hour_and_day(window, now or utcnow())

    if window.days and day not in window.days:
        return False

    if window.start_hour <= window.end_hour:
        return window.start_hour <= hour < window.end_hour
    # Overnight
    return hour >= window.start_hour or hour < window.end_hour
