"""Quiet hours evaluation in the recipient's local time."""

import datetime
from zoneinfo import ZoneInfo


def is_within_quiet_hours(
    current: datetime.time,
    start: datetime.time,
    end: datetime.time,
) -> bool:
    """Check whether a local wall-clock time falls in the ``[start, end)`` window.

    Handles wrap-around: start=22:00, end=06:00 means 22:00 to midnight
    to 06:00. An empty window (start == end) never matches.
    """
    if start <= end:
        # Simple range: e.g. 01:00 -> 06:00
        return start <= current < end
    # Wrap-around: e.g. 22:00 -> 06:00
    return current >= start or current < end


def quiet_hours_end(
    now_utc: datetime.datetime,
    start: datetime.time | None,
    end: datetime.time | None,
    timezone: str,
) -> datetime.datetime | None:
    """Return the UTC instant the current quiet window ends.

    Returns None when either bound is unset or ``now_utc`` is outside the
    window, meaning delivery can proceed immediately.
    """
    if start is None or end is None:
        return None

    tz = ZoneInfo(timezone)
    now_local = now_utc.astimezone(tz)
    if not is_within_quiet_hours(now_local.time().replace(tzinfo=None), start, end):
        return None

    end_local = datetime.datetime.combine(now_local.date(), end, tzinfo=tz)
    # Inside a wrapped window before midnight, the window closes tomorrow.
    if end_local <= now_local:
        end_local = datetime.datetime.combine(
            now_local.date() + datetime.timedelta(days=1), end, tzinfo=tz
        )

    return end_local.astimezone(datetime.UTC)
