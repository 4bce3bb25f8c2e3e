import re
from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from checkout_recovery.utils.helpers import as_naive_utc

DEFAULT_WINDOW_START = 9 * 60
DEFAULT_WINDOW_END = 19 * 60

_HHMM = re.compile(r"^(\d{2}):(\d{2})$")


def parse_hhmm(value) -> int | None:
    """'HH:MM' -> minutes after midnight, or None when malformed."""
    m = _HHMM.match((value or "").strip()) if isinstance(value, str) else None
    if not m:
        return None
    hh, mm = int(m.group(1)), int(m.group(2))
    if hh > 23 or mm > 59:
        return None
    return hh * 60 + mm


def _zone(name: str | None):
    try:
        return ZoneInfo(name or "UTC")
    except (ZoneInfoNotFoundError, ValueError):
        return timezone.utc


def adjust_to_window(target: datetime, start_hhmm: str, end_hhmm: str, tz_name: str | None = "UTC") -> datetime:
    """
    Snap a naive-UTC target into the daily [start, end] window of the shop's
    timezone: inside the window it is kept, before the start it moves to
    that day's start, after the end it moves to the next day's start.
    """
    start = parse_hhmm(start_hhmm)
    end = parse_hhmm(end_hhmm)
    start = DEFAULT_WINDOW_START if start is None else start
    end = DEFAULT_WINDOW_END if end is None else end
    window_start, window_end = min(start, end), max(start, end)

    local = target.replace(tzinfo=timezone.utc).astimezone(_zone(tz_name))
    t_mins = local.hour * 60 + local.minute
    if window_start <= t_mins <= window_end:
        return target

    nxt = local.replace(hour=window_start // 60, minute=window_start % 60, second=0, microsecond=0)
    if t_mins > window_end:
        nxt = nxt + timedelta(days=1)
    return as_naive_utc(nxt)


def next_retry_at(now: datetime, retry_minutes: int, start_hhmm: str, end_hhmm: str, tz_name: str | None = "UTC") -> datetime:
    return adjust_to_window(now + timedelta(minutes=retry_minutes), start_hhmm, end_hhmm, tz_name)
