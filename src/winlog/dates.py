"""Local-calendar day keys and period boundaries.

Every aggregate map is keyed by a local day key (``YYYY-MM-DD``). Week and
month comparisons go through :func:`period_key` so that all callers agree
on where a period starts and ends.
"""

from __future__ import annotations

from datetime import date, datetime, time, timedelta, timezone, tzinfo
from enum import Enum


class Granularity(str, Enum):
    DAY = "day"
    WEEK = "week"
    MONTH = "month"


def parse_timestamp(ts: str) -> datetime:
    """Parse ISO 8601 timestamp to datetime."""
    return datetime.fromisoformat(ts.replace("Z", "+00:00"))


def format_timestamp(dt: datetime) -> str:
    """Format an instant as a UTC ISO 8601 string with microseconds."""
    if dt.tzinfo is None:
        dt = dt.astimezone()
    return dt.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def to_local(instant: datetime, tz: tzinfo | None = None) -> datetime:
    """Convert an instant to local wall-clock time.

    Naive datetimes are taken to already be local wall-clock time. With
    ``tz=None`` the system's local zone is used.
    """
    if instant.tzinfo is None:
        return instant if tz is None else instant.replace(tzinfo=tz)
    return instant.astimezone(tz)


def local_date(instant: date | datetime, tz: tzinfo | None = None) -> date:
    if isinstance(instant, datetime):
        return to_local(instant, tz).date()
    return instant


def day_key(instant: date | datetime, tz: tzinfo | None = None) -> str:
    """Return the ``YYYY-MM-DD`` key of the local day containing ``instant``."""
    return local_date(instant, tz).isoformat()


def key_to_date(key: str) -> date:
    return date.fromisoformat(key)


def add_days(key: str, n: int) -> str:
    """Shift a day key by ``n`` calendar days."""
    return (key_to_date(key) + timedelta(days=n)).isoformat()


def period_key(
    instant: date | datetime,
    granularity: Granularity | str,
    tz: tzinfo | None = None,
) -> str:
    """Return a key shared by every instant in the same period.

    Days use :func:`day_key`, weeks use the ISO week (``2024-W01``, Monday
    start, week 1 contains the year's first Thursday), months use ``YYYY-MM``.
    """
    granularity = Granularity(granularity)
    day = local_date(instant, tz)
    if granularity is Granularity.DAY:
        return day.isoformat()
    if granularity is Granularity.WEEK:
        iso_year, iso_week, _ = day.isocalendar()
        return f"{iso_year}-W{iso_week:02d}"
    return f"{day.year}-{day.month:02d}"


def period_start(day: date, granularity: Granularity | str) -> date:
    granularity = Granularity(granularity)
    if granularity is Granularity.DAY:
        return day
    if granularity is Granularity.WEEK:
        return day - timedelta(days=day.weekday())
    return day.replace(day=1)


def next_period_start(day: date, granularity: Granularity | str) -> date:
    granularity = Granularity(granularity)
    start = period_start(day, granularity)
    if granularity is Granularity.DAY:
        return start + timedelta(days=1)
    if granularity is Granularity.WEEK:
        return start + timedelta(days=7)
    return (start.replace(day=28) + timedelta(days=4)).replace(day=1)


def _local_midnight(day: date, tz: tzinfo | None) -> datetime:
    if tz is None:
        return datetime.combine(day, time()).astimezone()
    return datetime.combine(day, time(), tzinfo=tz)


def period_range(
    instant: date | datetime,
    granularity: Granularity | str,
    tz: tzinfo | None = None,
) -> tuple[datetime, datetime]:
    """Get local midnight at the start of the period to the start of the next.

    Args:
        instant: Any instant (or date) within the period.
        granularity: Day, week (Monday start) or month.
        tz: Zone for local time (default: system local zone).

    Returns:
        Tuple of aware datetimes (start inclusive, end exclusive).
    """
    day = local_date(instant, tz)
    start = period_start(day, granularity)
    end = next_period_start(day, granularity)
    return _local_midnight(start, tz), _local_midnight(end, tz)


def is_last_day_of_month(day: date) -> bool:
    return (day + timedelta(days=1)).month != day.month
