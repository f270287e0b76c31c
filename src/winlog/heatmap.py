"""Heatmap and calendar projections of the aggregate."""

from __future__ import annotations

import math
from collections.abc import Iterable, Mapping
from datetime import date, datetime, timedelta, tzinfo
from typing import Any

from pydantic import BaseModel, ConfigDict

from winlog.colors import color_for
from winlog.dates import add_days, day_key, next_period_start
from winlog.models import Entry
from winlog.streak import count_of, resolve_day

DEFAULT_WINDOW_DAYS = 140


class HeatmapCell(BaseModel):
    model_config = ConfigDict(frozen=True)

    day_key: str
    count: int
    dominant_tag_color: str | None = None


class CalendarDay(BaseModel):
    model_config = ConfigDict(frozen=True)

    day_key: str
    in_month: bool
    count: int = 0
    has_daily_top: bool = False


def dominant_tag(tags: Mapping[str, Any] | None) -> str | None:
    """Return the tag with the highest count; ties go to the earliest key."""
    if not tags:
        return None
    best: str | None = None
    best_count = -1
    for tag in tags:
        count = count_of(tags, tag)
        if count > best_count:
            best, best_count = tag, count
    return best


def build_window(
    daily_counts: Mapping[str, Any] | None,
    daily_tag_counts: Mapping[str, Mapping[str, Any]] | None,
    window_size_days: int = DEFAULT_WINDOW_DAYS,
    today: date | datetime | str | None = None,
    *,
    tz: tzinfo | None = None,
) -> list[HeatmapCell]:
    """Build ``window_size_days`` cells ending at ``today``, oldest first.

    Each cell carries the day's count and the color of its most used tag,
    or None when the day has no tags.
    """
    if window_size_days <= 0:
        return []

    daily_counts = daily_counts or {}
    daily_tag_counts = daily_tag_counts or {}
    start = add_days(resolve_day(today, tz), -(window_size_days - 1))

    cells = []
    for offset in range(window_size_days):
        key = add_days(start, offset)
        tag = dominant_tag(daily_tag_counts.get(key))
        cells.append(
            HeatmapCell(
                day_key=key,
                count=count_of(daily_counts, key),
                dominant_tag_color=color_for(tag) if tag else None,
            )
        )
    return cells


def level_for_count(count: int, max_count: int) -> int:
    """Bucket a count into intensity levels 0-4."""
    if count <= 0 or max_count <= 0:
        return 0
    if max_count <= 1:
        return 1
    return min(4, max(1, math.ceil((count / max_count) * 4)))


def month_grid(
    entries: Iterable[Entry],
    year: int,
    month: int,
    *,
    tz: tzinfo | None = None,
) -> list[list[CalendarDay]]:
    """Lay out a month as Monday-first weeks with per-day entry counts.

    Leading and trailing days from neighbouring months pad the first and
    last week and are marked ``in_month=False``.
    """
    counts: dict[str, int] = {}
    tops: set[str] = set()
    for entry in entries:
        if entry.created_at is None:
            continue
        key = day_key(entry.created_at, tz)
        counts[key] = counts.get(key, 0) + 1
        if entry.is_daily_top:
            tops.add(key)

    first = date(year, month, 1)
    end = next_period_start(first, "month")
    current = first - timedelta(days=first.weekday())

    weeks: list[list[CalendarDay]] = []
    while current < end:
        week = []
        for _ in range(7):
            key = current.isoformat()
            week.append(
                CalendarDay(
                    day_key=key,
                    in_month=current.month == month,
                    count=counts.get(key, 0),
                    has_daily_top=key in tops,
                )
            )
            current += timedelta(days=1)
        weeks.append(week)
    return weeks
