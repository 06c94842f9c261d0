from datetime import datetime, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError
import logging

logger = logging.getLogger("automation")

DEFAULT_TIMEZONE = 'UTC'


def get_zone(tz_name):
    try:
        return ZoneInfo(tz_name or DEFAULT_TIMEZONE)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning(f"[WARN] Unknown timezone '{tz_name}', falling back to {DEFAULT_TIMEZONE}")
        return ZoneInfo(DEFAULT_TIMEZONE)


def to_local(naive_utc, tz_name):
    """Naive UTC datetime -> aware datetime in the tenant's zone."""
    return naive_utc.replace(tzinfo=timezone.utc).astimezone(get_zone(tz_name))


def to_utc(local_dt):
    """Aware local datetime -> naive UTC datetime (the storage format)."""
    return local_dt.astimezone(timezone.utc).replace(tzinfo=None)


def local_wall_time(day, hour, minute, tz_name):
    """Naive UTC instant of a wall-clock time on ``day`` in the tenant's zone."""
    local = datetime(day.year, day.month, day.day, hour, minute, tzinfo=get_zone(tz_name))
    return to_utc(local)


def local_date(naive_utc, tz_name):
    return to_local(naive_utc, tz_name).date()


class Clock:
    """Current time source. All engine components read time through this."""

    def now(self):
        return datetime.utcnow()


class FixedClock(Clock):
    """A clock that only moves when told to. Used by tests and replays."""

    def __init__(self, at):
        self.at = at

    def now(self):
        return self.at

    def advance(self, delta):
        self.at = self.at + delta
        return self.at
