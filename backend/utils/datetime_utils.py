from datetime import datetime, date, timedelta, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from config import settings


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_naive_utc(dt: datetime) -> datetime:
    """Normalize to the naive-UTC form used by the DateTime columns."""
    if dt.tzinfo is None:
        return dt
    return dt.astimezone(timezone.utc).replace(tzinfo=None)


def resolve_tz(tz_name: str | None) -> ZoneInfo:
    for name in (tz_name, settings.DEFAULT_TIMEZONE):
        if not name:
            continue
        try:
            return ZoneInfo(name)
        except (ZoneInfoNotFoundError, ValueError):
            continue
    return ZoneInfo("UTC")


def to_local(dt: datetime, tz_name: str | None) -> datetime:
    """Convert a UTC datetime (naive or aware) to the user's timezone."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(resolve_tz(tz_name))


def today_for_tz(tz_name: str | None, now: datetime | None = None) -> date:
    """Return today's date in the user's timezone."""
    return to_local(now or utcnow(), tz_name).date()


def format_display_time(dt: datetime, tz_name: str | None) -> str:
    """Human timestamp participants copy onto paper, e.g. '18 Oct 2026, 14:32'."""
    local = to_local(dt, tz_name)
    return f"{local.day} {local:%b %Y, %H:%M}"


def start_of_week(d: date) -> date:
    """Return Monday of the week containing d."""
    return d - timedelta(days=d.weekday())


def end_of_week(d: date) -> date:
    """Return Sunday of the week containing d."""
    return start_of_week(d) + timedelta(days=6)


def iter_days(start: date, end: date):
    """Yield every date in [start, end]."""
    current = start
    while current <= end:
        yield current
        current += timedelta(days=1)
