"""Heal aggregate drift against the entry log.

The aggregate is updated optimistically at write time, so it can miss
increments: a write that failed halfway, entries imported straight into the
log, or an aggregate that was reset. Reconciliation only ever fills gaps.
Counts already recorded may cover entries outside the sampled window, so
they are never lowered.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from datetime import tzinfo
from typing import NamedTuple

from winlog.dates import day_key
from winlog.models import Aggregate, Entry
from winlog.streak import count_of

logger = logging.getLogger(__name__)

DEFAULT_SAMPLE_SIZE = 500


class ReconcileResult(NamedTuple):
    aggregate: Aggregate
    healed: bool


def _sample(entries: Iterable[Entry], sample_size: int | None) -> list[Entry]:
    """Most recent ``sample_size`` entries that have a timestamp."""
    dated = [e for e in entries if e.created_at is not None]
    dated.sort(key=lambda e: e.created_at, reverse=True)
    if sample_size is None:
        return dated
    return dated[:sample_size]


def observed_counts(
    entries: Iterable[Entry], tz: tzinfo | None = None
) -> tuple[dict[str, int], dict[str, dict[str, int]]]:
    """Count entries and tags per local day.

    Entries whose timestamp cannot be resolved are skipped.
    """
    counts: dict[str, int] = {}
    tag_counts: dict[str, dict[str, int]] = {}
    for entry in entries:
        try:
            key = day_key(entry.created_at, tz)
        except (AttributeError, TypeError, ValueError, OverflowError) as e:
            logger.debug("Skipping entry %s without usable timestamp: %s", entry.id, e)
            continue
        counts[key] = counts.get(key, 0) + 1
        if entry.tags:
            day_tags = tag_counts.setdefault(key, {})
            for tag in dict.fromkeys(entry.tags):
                day_tags[tag] = day_tags.get(tag, 0) + 1
    return counts, tag_counts


def reconcile(
    entries: Iterable[Entry],
    aggregate: Aggregate,
    *,
    sample_size: int | None = DEFAULT_SAMPLE_SIZE,
    tz: tzinfo | None = None,
) -> ReconcileResult:
    """Fill missing day and tag counts from a sample of the log.

    A day (or a tag on a day) that the sample proves active but the
    aggregate records as missing or zero is set to the number of sampled
    entries for it. Non-zero counts are left untouched.

    Args:
        entries: Entries from the log, any order.
        aggregate: Aggregate to check. Not modified.
        sample_size: How many of the most recent entries to inspect
            (None for the whole log).
        tz: Zone for local day keys.

    Returns:
        ReconcileResult with the healed aggregate (the input itself when
        nothing was missing) and whether anything was healed.
    """
    counts_seen, tags_seen = observed_counts(_sample(entries, sample_size), tz)

    counts = dict(aggregate.daily_counts)
    tag_counts = {day: dict(tags) for day, tags in aggregate.daily_tag_counts.items()}
    healed = False

    for key, observed in counts_seen.items():
        if count_of(counts, key) <= 0:
            counts[key] = observed
            healed = True

    for key, tags in tags_seen.items():
        day_tags = tag_counts.get(key, {})
        for tag, observed in tags.items():
            if count_of(day_tags, tag) <= 0:
                day_tags[tag] = observed
                healed = True
        if day_tags:
            tag_counts[key] = day_tags

    if not healed:
        return ReconcileResult(aggregate, False)

    return ReconcileResult(
        aggregate.model_copy(
            update={"daily_counts": counts, "daily_tag_counts": tag_counts}
        ),
        True,
    )
