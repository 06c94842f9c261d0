from datetime import timedelta
from services.clock import to_local, to_utc


def in_quiet_hours(hour, start, end):
    # [start, end) in hours of day; start > end wraps midnight (e.g. 22-6)
    if start < end:
        return start <= hour < end
    return hour >= start or hour < end


def shift_out_of_quiet_hours(desired, start, end, tz_name):
    """
    Move ``desired`` (naive UTC) forward to the end of the quiet window it falls in.

    The check uses the tenant's wall-clock time so that DST transitions do not
    skew the window. Applying the shift to its own result is a no-op, and the
    result is never earlier than ``desired``.
    """
    if start is None or end is None or start == end:
        return desired

    local = to_local(desired, tz_name)
    if not in_quiet_hours(local.hour, start, end):
        return desired

    window_end = local.replace(hour=end, minute=0, second=0, microsecond=0)
    if window_end <= local:
        window_end = (local + timedelta(days=1)).replace(hour=end, minute=0, second=0, microsecond=0)
    shifted = to_utc(window_end)
    return shifted if shifted > desired else desired
