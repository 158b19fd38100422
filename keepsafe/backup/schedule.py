"""
Due-time computation for scheduled backups.

A plan runs at one local time of day on a set of weekdays (every day when
the set is empty). Planned instants are kept in UTC.
"""

import logging
from datetime import datetime, time, timedelta, timezone
from typing import Optional

from keepsafe.models import ScheduleConfig


logger = logging.getLogger(__name__)

DEFAULT_TIME_OF_DAY = time(2, 0)
LOOKAHEAD_DAYS = 14

_TIME_FORMATS = ('%H:%M', '%H:%M:%S')


def parse_time_of_day(text: Optional[str]) -> Optional[time]:
    """
    Parse 'H:mm', 'HH:mm' or 'HH:mm:ss'.

    Returns:
        time, or None if the text is not a valid time of day
    """
    if not text or not text.strip():
        return None

    for fmt in _TIME_FORMATS:
        try:
            return datetime.strptime(text.strip(), fmt).time()
        except ValueError:
            continue
    return None


def _as_local(now_local: datetime) -> datetime:
    # Naive values are taken as system local time
    if now_local.tzinfo is None:
        return now_local.astimezone()
    return now_local


def compute_next_due(schedule: ScheduleConfig, now_local: datetime) -> datetime:
    """
    Compute the next planned run strictly after now.

    Candidates are today and the following 14 days at the configured time,
    filtered by weekday; the first one more than a second in the future wins.
    An unparseable time falls back to 02:00.

    Args:
        schedule: Plan schedule
        now_local: Current local time

    Returns:
        Planned instant as an aware UTC datetime
    """
    now = _as_local(now_local)

    at = parse_time_of_day(schedule.time_local)
    if at is None:
        logger.warning(f"Invalid schedule time {schedule.time_local!r}, using 02:00")
        at = DEFAULT_TIME_OF_DAY

    days = set(int(d) for d in schedule.days or [])
    threshold = now + timedelta(seconds=1)

    for offset in range(LOOKAHEAD_DAYS + 1):
        day = now.date() + timedelta(days=offset)
        if days and day.weekday() not in days:
            continue

        candidate = datetime.combine(day, at, tzinfo=now.tzinfo)
        if candidate > threshold:
            return candidate.astimezone(timezone.utc)

    logger.warning("No schedule slot found in the next two weeks, retrying in 24h")
    return (now + timedelta(days=1)).astimezone(timezone.utc)


def is_due(now_local: datetime, planned_utc: Optional[datetime]) -> bool:
    """True once the planned instant has been reached."""
    if planned_utc is None:
        return False
    return _as_local(now_local) >= planned_utc
