"""Current streak from sparse per-day counts."""

from __future__ import annotations

from collections.abc import Mapping
from datetime import date, datetime, tzinfo
from typing import Any

from winlog.dates import add_days, day_key


def count_of(counts: Mapping[str, Any] | None, key: str) -> int:
    """Read a count, treating missing or malformed values as zero."""
    if not counts:
        return 0
    try:
        return max(0, int(counts.get(key) or 0))
    except (TypeError, ValueError):
        return 0


def resolve_day(
    today: date | datetime | str | None, tz: tzinfo | None = None
) -> str:
    if today is None:
        return day_key(datetime.now().astimezone(tz))
    if isinstance(today, str):
        return today
    return day_key(today, tz)


def current_streak(
    daily_counts: Mapping[str, Any] | None,
    today: date | datetime | str | None = None,
    *,
    tz: tzinfo | None = None,
) -> int:
    """Count consecutive active days ending today, or yesterday.

    Today is still in progress, so a streak that ended yesterday is kept
    alive until the day is over. If neither today nor yesterday has
    activity the streak is already broken.

    Args:
        daily_counts: Map of day key to entry count.
        today: Reference day (default: today in local time).
        tz: Zone used to resolve ``today`` when it is a datetime.

    Returns:
        Number of consecutive days with a positive count.
    """
    if not daily_counts:
        return 0

    today_key = resolve_day(today, tz)
    yesterday_key = add_days(today_key, -1)

    if count_of(daily_counts, today_key) > 0:
        key = today_key
    elif count_of(daily_counts, yesterday_key) > 0:
        key = yesterday_key
    else:
        return 0

    streak = 0
    while count_of(daily_counts, key) > 0:
        streak += 1
        key = add_days(key, -1)
    return streak
