"""Per-period "top entry" markers.

Within one day, ISO week or month at most one entry may carry the matching
flag. Promoting an entry demotes the other holders of that same period
first; holders from other periods are left alone.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from datetime import datetime, timezone, tzinfo

from winlog.dates import Granularity, period_key
from winlog.errors import PersistenceError
from winlog.models import Entry

logger = logging.getLogger(__name__)

FLAG_FIELDS = {
    Granularity.DAY: "is_daily_top",
    Granularity.WEEK: "is_weekly_top",
    Granularity.MONTH: "is_monthly_top",
}


def flag_for(granularity: Granularity | str) -> str:
    return FLAG_FIELDS[Granularity(granularity)]


def holders(
    entries: Iterable[Entry],
    granularity: Granularity | str,
    period: str,
    *,
    tz: tzinfo | None = None,
) -> list[Entry]:
    """Entries holding the marker for ``period``."""
    field = flag_for(granularity)
    return [
        e
        for e in entries
        if getattr(e, field)
        and e.created_at is not None
        and period_key(e.created_at, granularity, tz) == period
    ]


def duplicate_holders(
    entries: Iterable[Entry],
    granularity: Granularity | str,
    *,
    tz: tzinfo | None = None,
) -> dict[str, list[str]]:
    """Periods with more than one holder, mapped to the holders' IDs.

    Two holders can coexist briefly when promotions race; the next
    promotion in that period converges them.
    """
    field = flag_for(granularity)
    by_period: dict[str, list[str]] = {}
    for entry in entries:
        if not getattr(entry, field) or entry.created_at is None:
            continue
        by_period.setdefault(period_key(entry.created_at, granularity, tz), []).append(entry.id)
    return {period: ids for period, ids in by_period.items() if len(ids) > 1}


class PeriodTopSelector:
    """Moves a period marker onto a chosen entry.

    ``set_flag(entry_id, granularity, value)`` performs the write; it is
    expected to raise PersistenceError on failure.
    """

    def __init__(
        self,
        set_flag: Callable[[str, Granularity, bool], object],
        *,
        tz: tzinfo | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._set_flag = set_flag
        self._tz = tz
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def select(
        self,
        entries: Iterable[Entry],
        target_id: str,
        granularity: Granularity | str,
    ) -> bool:
        """Make ``target_id`` the only holder of the marker in its period.

        Demotions are best-effort: a failed demotion is logged and the rest
        proceed. Returns False if the target is unknown or its promotion
        fails.
        """
        granularity = Granularity(granularity)
        entries = list(entries)
        target = next((e for e in entries if e.id == target_id), None)
        if target is None:
            logger.warning("Cannot mark %s top: entry %s not loaded", granularity.value, target_id)
            return False

        # An unconfirmed entry belongs to the current period
        period = period_key(target.created_at or self._clock(), granularity, self._tz)
        conflicts = [
            e for e in holders(entries, granularity, period, tz=self._tz) if e.id != target_id
        ]

        for old in conflicts:
            try:
                self._set_flag(old.id, granularity, False)
            except PersistenceError as e:
                logger.warning("Failed to demote %s top entry %s: %s", granularity.value, old.id, e)

        try:
            self._set_flag(target.id, granularity, True)
        except PersistenceError as e:
            logger.error("Failed to promote %s top entry %s: %s", granularity.value, target.id, e)
            return False

        logger.debug(
            "Marked %s as %s top for %s (demoted %d)",
            target.id,
            granularity.value,
            period,
            len(conflicts),
        )
        return True
