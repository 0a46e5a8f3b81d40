"""Role calling hours.

A role's ``call_window`` looks like::

    {"timezone": "Asia/Kolkata",
     "allowedHours": {"start": "9:00", "end": "18:00"},
     "days": [0, 1, 2, 3, 4]}

``days`` uses Python weekday numbers (Monday is 0) and defaults to every
day. A missing or unparseable window places no restriction.
"""

from datetime import datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import structlog

logger = structlog.get_logger()

DEFAULT_TIMEZONE = "UTC"


def _parse_hhmm(value: str) -> time:
    hours, _, minutes = str(value).partition(":")
    return time(int(hours), int(minutes or 0))


def _parse_window(window: dict | None):
    if not window:
        return None
    hours = window.get("allowedHours") or {}
    try:
        start = _parse_hhmm(hours.get("start", "9:00"))
        end = _parse_hhmm(hours.get("end", "18:00"))
    except ValueError:
        logger.warning("call_window_invalid_hours", window=window)
        return None
    if end <= start:
        logger.warning("call_window_unsupported_range", window=window)
        return None

    tz_name = window.get("timezone") or DEFAULT_TIMEZONE
    try:
        tz = ZoneInfo(tz_name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("call_window_unknown_timezone", timezone=tz_name)
        tz = timezone.utc

    return tz, start, end, _parse_days(window)


def _parse_days(window: dict) -> set[int]:
    raw = window.get("days")
    if not raw:
        return set(range(7))
    try:
        days = {int(day) for day in raw}
    except (TypeError, ValueError):
        days = set()
    days &= set(range(7))
    if not days:
        logger.warning("call_window_invalid_days", window=window)
        return set(range(7))
    return days


def is_within_call_window(window: dict | None, now: datetime) -> bool:
    parsed = _parse_window(window)
    if parsed is None:
        return True
    tz, start, end, days = parsed
    local = now.astimezone(tz)
    return local.weekday() in days and start <= local.time() < end


def next_window_start(window: dict | None, now: datetime) -> datetime:
    """Earliest moment at or after ``now`` that falls inside the window."""
    parsed = _parse_window(window)
    if parsed is None or is_within_call_window(window, now):
        return now
    tz, start, _end, days = parsed
    local = now.astimezone(tz)
    for offset in range(8):
        day = local.date() + timedelta(days=offset)
        candidate = datetime.combine(day, start, tzinfo=tz)
        if candidate > local and day.weekday() in days:
            return candidate.astimezone(timezone.utc)
    return now
