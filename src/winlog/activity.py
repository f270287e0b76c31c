"""Orchestrates entries, aggregate state and the derived views.

The in-memory aggregate is a confirmed base (last state read from or
written to the store) plus an ordered list of pending deltas for writes
still in flight. Reads see the base with every pending delta applied, so a
new entry shows up in counts before the store acknowledges it, and a
failed write is undone by dropping exactly its delta.
"""

from __future__ import annotations

import logging
import random
import uuid
from collections.abc import Callable, Iterable
from datetime import datetime, timedelta, timezone, tzinfo
from typing import Any

import pydantic
from pydantic import BaseModel, Field

from winlog.dates import (
    Granularity,
    day_key,
    format_timestamp,
    is_last_day_of_month,
    period_key,
    to_local,
)
from winlog.db import EntryStore
from winlog.errors import EntryNotCountedError, PersistenceError, ValidationError
from winlog.heatmap import DEFAULT_WINDOW_DAYS, CalendarDay, HeatmapCell, build_window, month_grid
from winlog.models import (
    MAX_TEXT_LENGTH,
    Aggregate,
    Entry,
    Snapshot,
    UserSettings,
    extract_tags,
)
from winlog.reconcile import DEFAULT_SAMPLE_SIZE, reconcile
from winlog.streak import count_of, current_streak
from winlog.top import PeriodTopSelector, duplicate_holders, flag_for, holders

logger = logging.getLogger(__name__)

# Daily reflection opens at this local hour
EVENING_HOUR = 18

MEMORY_MIN_ENTRIES = 3


class AggregateDelta(BaseModel):
    """Change to one day's count and tag counts."""

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    day_key: str
    count: int
    tags: list[str] = Field(default_factory=list)

    def apply(
        self,
        daily_counts: dict[str, int],
        daily_tag_counts: dict[str, dict[str, int]],
    ) -> tuple[dict[str, int], dict[str, dict[str, int]]]:
        """Return new maps with this delta applied.

        Counts never go below zero, and keys that reach zero are removed so
        that absence keeps meaning "no entries".
        """
        counts = dict(daily_counts)
        tag_counts = {day: dict(tags) for day, tags in daily_tag_counts.items()}

        counts[self.day_key] = max(0, counts.get(self.day_key, 0) + self.count)
        if counts[self.day_key] == 0:
            del counts[self.day_key]

        if self.tags:
            day_tags = tag_counts.get(self.day_key, {})
            for tag in dict.fromkeys(self.tags):
                day_tags[tag] = max(0, day_tags.get(tag, 0) + self.count)
                if day_tags[tag] == 0:
                    del day_tags[tag]
            if day_tags:
                tag_counts[self.day_key] = day_tags
            else:
                tag_counts.pop(self.day_key, None)

        return counts, tag_counts


def pick_memory(
    entries: Iterable[Entry],
    now: datetime,
    rng: random.Random | None = None,
) -> Entry | None:
    """Pick an older entry to resurface.

    Prefers entries older than a week, then older than two days, and among
    those the ones that were marked top of their period.
    """
    entries = [e for e in entries if e.created_at is not None]
    if len(entries) < MEMORY_MIN_ENTRIES:
        return None
    rng = rng or random.Random()

    week_ago = now - timedelta(days=7)
    two_days_ago = now - timedelta(days=2)
    candidates = [e for e in entries if e.created_at < week_ago]
    if not candidates:
        candidates = [e for e in entries if e.created_at < two_days_ago]
    if not candidates:
        return None

    top_moments = [e for e in candidates if e.is_any_top]
    return rng.choice(top_moments or candidates)


class ActivityStore:
    """In-memory view of one owner's entries and aggregate.

    Args:
        persistence: Store providing the entry log and aggregate document.
        owner_id: Owner whose data is loaded.
        user_settings: Preferences; loaded from the store on start if None.
        entry_window: Number of most recent entries kept loaded, which is
            also the reconciliation sample.
        heatmap_days: Default heatmap length.
        tz: Zone for local day keys (default: system local zone).
        clock: Returns the current instant (default: now).
        rng: Random source for memory picks.
    """

    def __init__(
        self,
        persistence: EntryStore,
        owner_id: str,
        *,
        user_settings: UserSettings | None = None,
        entry_window: int = DEFAULT_SAMPLE_SIZE,
        heatmap_days: int = DEFAULT_WINDOW_DAYS,
        tz: tzinfo | None = None,
        clock: Callable[[], datetime] | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self._persistence = persistence
        self.owner_id = owner_id
        self._settings = user_settings
        self._entry_window = entry_window
        self._heatmap_days = heatmap_days
        self._tz = tz
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._rng = rng or random.Random()

        self._confirmed = Aggregate(owner_id=owner_id)
        self._pending: list[AggregateDelta] = []
        self._entries: list[Entry] = []
        self._unsubscribe: Callable[[], None] | None = None
        self.heal_count = 0

    def __enter__(self) -> "ActivityStore":
        self.start()
        return self

    def __exit__(self, exc_type: type | None, exc_val: Exception | None, exc_tb: object) -> None:
        self.close()

    def start(self) -> None:
        """Subscribe to store changes and load the initial snapshot."""
        if self._settings is None:
            self._settings = self._persistence.get_settings(self.owner_id)
        if self._unsubscribe is None:
            self._unsubscribe = self._persistence.subscribe(
                self.owner_id, self._on_snapshot, limit=self._entry_window
            )
        self.refresh()

    def close(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    # State

    @property
    def settings(self) -> UserSettings:
        if self._settings is None:
            self._settings = UserSettings()
        return self._settings

    @property
    def aggregate(self) -> Aggregate:
        """Confirmed aggregate with pending deltas applied."""
        counts = dict(self._confirmed.daily_counts)
        tag_counts = {day: dict(tags) for day, tags in self._confirmed.daily_tag_counts.items()}
        for delta in self._pending:
            counts, tag_counts = delta.apply(counts, tag_counts)
        return self._confirmed.model_copy(
            update={
                "daily_counts": counts,
                "daily_tag_counts": tag_counts,
                "streak": current_streak(counts, self._today()),
            }
        )

    @property
    def pending(self) -> list[AggregateDelta]:
        return list(self._pending)

    def _now(self) -> datetime:
        return to_local(self._clock(), self._tz)

    def _today(self) -> str:
        return day_key(self._clock(), self._tz)

    def _discard(self, delta: AggregateDelta) -> None:
        self._pending = [d for d in self._pending if d.id != delta.id]

    def _replace_entry(self, entry_id: str, **update: Any) -> None:
        self._entries = [
            e.model_copy(update=update) if e.id == entry_id else e for e in self._entries
        ]

    # Snapshots and reconciliation

    def refresh(self) -> None:
        """Pull the current snapshot from the store and reconcile it."""
        self._on_snapshot(self._persistence.snapshot(self.owner_id, limit=self._entry_window))

    def _refresh_quietly(self) -> None:
        try:
            self.refresh()
        except PersistenceError as e:
            logger.warning("Refresh failed, keeping local state until next snapshot: %s", e)

    def _on_snapshot(self, snapshot: Snapshot) -> None:
        self._confirmed = snapshot.aggregate
        optimistic = [e for e in self._entries if e.is_pending]
        self._entries = optimistic + list(snapshot.entries)
        # An add in flight may land on a day its delta does not cover yet;
        # the refresh after its commit reconciles instead
        if any(delta.count > 0 for delta in self._pending):
            logger.debug("Deferring reconciliation while an add is in flight")
        else:
            self._heal(snapshot.entries, sample_size=self._entry_window)
        self._log_top_conflicts()

    def _heal(self, entries: list[Entry], *, sample_size: int | None) -> bool:
        """Reconcile the aggregate against ``entries`` and persist any heal.

        Runs against the effective aggregate so that writes still in flight
        do not look like drift. Only the filled-in gaps are merged into the
        confirmed state.
        """
        effective = self.aggregate
        result = reconcile(entries, effective, sample_size=sample_size, tz=self._tz)
        if not result.healed:
            return False

        counts = dict(self._confirmed.daily_counts)
        tag_counts = {day: dict(tags) for day, tags in self._confirmed.daily_tag_counts.items()}
        filled = 0
        for key, value in result.aggregate.daily_counts.items():
            if effective.daily_counts.get(key) != value and count_of(counts, key) <= 0:
                counts[key] = value
                filled += 1
        for key, tags in result.aggregate.daily_tag_counts.items():
            effective_tags = effective.daily_tag_counts.get(key, {})
            for tag, value in tags.items():
                if effective_tags.get(tag) != value and count_of(tag_counts.get(key), tag) <= 0:
                    tag_counts.setdefault(key, {})[tag] = value
                    filled += 1

        logger.info("Healed aggregate drift for %s (%d counts filled)", self.owner_id, filled)
        self.heal_count += 1
        self._confirmed = self._confirmed.model_copy(
            update={"daily_counts": counts, "daily_tag_counts": tag_counts}
        )
        try:
            self._confirmed = self._persistence.merge_aggregate(
                self.owner_id,
                daily_counts=counts,
                daily_tag_counts=tag_counts,
                streak=current_streak(counts, self._today()),
            )
        except PersistenceError as e:
            logger.warning("Could not persist healed aggregate, retrying on next snapshot: %s", e)
        return True

    def _log_top_conflicts(self) -> None:
        for granularity in Granularity:
            for period, ids in duplicate_holders(self._entries, granularity, tz=self._tz).items():
                logger.warning(
                    "Multiple %s top entries for %s: %s", granularity.value, period, ", ".join(ids)
                )

    def backfill(self) -> bool:
        """Reconcile against the complete entry log.

        Snapshots only sample the most recent entries; this pass also heals
        drift older than that window. Returns True if anything was healed.
        """
        entries = self._persistence.get_entries(self.owner_id)
        return self._heal(entries, sample_size=None)

    # Mutations

    def _validate_text(self, text: str) -> str:
        if text is None or not text.strip():
            raise ValidationError("Entry text cannot be empty")
        if len(text) > MAX_TEXT_LENGTH:
            raise ValidationError(
                f"Entry text is {len(text)} characters; the limit is {MAX_TEXT_LENGTH}"
            )
        return text

    def _commit(self, delta: AggregateDelta) -> None:
        """Persist a pending delta on top of the confirmed aggregate."""
        counts, tag_counts = delta.apply(
            self._confirmed.daily_counts, self._confirmed.daily_tag_counts
        )
        try:
            confirmed = self._persistence.merge_aggregate(
                self.owner_id,
                daily_counts=counts,
                daily_tag_counts=tag_counts,
                streak=current_streak(counts, self._today()),
            )
        finally:
            self._discard(delta)
        self._confirmed = confirmed

    def add_entry(self, text: str) -> Entry:
        """Record a new entry.

        Counts for today and the entry's tags update immediately. If the
        entry cannot be stored the update is rolled back.

        Raises:
            ValidationError: If the text is empty or too long.
            PersistenceError: If the entry could not be stored.
            EntryNotCountedError: If the entry was stored but the aggregate
                update failed. The stored entry is on the exception.
        """
        text = self._validate_text(text)
        tags = extract_tags(text)

        delta = AggregateDelta(day_key=self._today(), count=1, tags=tags)
        placeholder = Entry(id=f"pending-{delta.id}", owner_id=self.owner_id, text=text, tags=tags)
        self._pending.append(delta)
        self._entries.insert(0, placeholder)

        try:
            entry = self._persistence.create_entry(self.owner_id, text, tags)
        except PersistenceError:
            self._discard(delta)
            raise
        finally:
            self._entries = [e for e in self._entries if e.id != placeholder.id]

        if not any(e.id == entry.id for e in self._entries):
            self._entries.insert(0, entry)

        # The stored timestamp decides the day, not the local clock
        delta.day_key = day_key(entry.created_at, self._tz)
        try:
            self._commit(delta)
        except PersistenceError as e:
            logger.error("Entry %s saved but aggregate update failed: %s", entry.id, e)
            raise EntryNotCountedError(
                f"Entry {entry.id[:7]} was saved but its counts were not updated: {e}", entry
            ) from e
        finally:
            self._refresh_quietly()
        return entry

    def delete_entry(self, entry: Entry) -> bool:
        """Delete an entry and remove it from the counts.

        Returns:
            True if the entry was deleted, False if it no longer existed.

        Raises:
            ValidationError: If the entry has not been stored yet.
            PersistenceError: If the deletion or the aggregate update failed.
                The local counts are restored in both cases.
        """
        if entry.created_at is None:
            raise ValidationError("Entry has not been saved yet")

        delta = AggregateDelta(
            day_key=day_key(entry.created_at, self._tz), count=-1, tags=entry.tags
        )
        previous_entries = list(self._entries)
        self._pending.append(delta)
        self._entries = [e for e in self._entries if e.id != entry.id]

        try:
            deleted = self._persistence.delete_entry(entry.id)
        except PersistenceError:
            self._discard(delta)
            self._entries = previous_entries
            raise

        if not deleted:
            logger.warning("Entry %s was already gone; counts left unchanged", entry.id)
            self._discard(delta)
            self._refresh_quietly()
            return False

        try:
            self._commit(delta)
        except PersistenceError:
            logger.error("Entry %s deleted but aggregate update failed", entry.id)
            raise
        finally:
            self._refresh_quietly()
        return True

    def update_entry_text(self, entry_id: str, new_text: str) -> bool:
        """Replace an entry's text.

        Counts are unaffected, and tags stay as extracted at creation.

        Returns:
            True if the entry was updated, False if it doesn't exist.
        """
        new_text = self._validate_text(new_text)
        if entry_id.startswith("pending-"):
            raise ValidationError("Entry has not been saved yet")
        updated = self._persistence.update_entry_text(entry_id, new_text)
        if updated:
            self._replace_entry(entry_id, text=new_text)
        return updated

    def _set_top_flag(self, entry_id: str, granularity: Granularity, value: bool) -> None:
        if not self._persistence.set_top_flag(entry_id, granularity, value):
            raise PersistenceError(f"Entry {entry_id} not found")
        self._replace_entry(entry_id, **{flag_for(granularity): value})

    def mark_top(self, entry_id: str, granularity: Granularity | str) -> bool:
        """Make an entry the single top entry of its day, week or month."""
        selector = PeriodTopSelector(self._set_top_flag, tz=self._tz, clock=self._clock)
        selected = selector.select(self._entries, entry_id, granularity)
        self._refresh_quietly()
        return selected

    def update_settings(self, **fields: Any) -> UserSettings:
        """Validate, persist and apply preference changes.

        Raises:
            ValidationError: If a value is invalid or the field is unknown.
            PersistenceError: If the settings could not be saved; local
                settings are unchanged.
        """
        unknown = set(fields) - set(UserSettings.model_fields)
        if unknown:
            raise ValidationError(f"Unknown settings: {', '.join(sorted(unknown))}")
        try:
            updated = UserSettings.model_validate({**self.settings.model_dump(), **fields})
        except pydantic.ValidationError as e:
            raise ValidationError(str(e)) from e
        self._settings = self._persistence.save_settings(self.owner_id, **updated.model_dump())
        return self._settings

    def delete_all(self) -> int:
        """Remove all of the owner's data. Returns the number of entries deleted."""
        deleted = self._persistence.delete_owner_data(self.owner_id)
        self._pending.clear()
        self._entries = []
        self._confirmed = Aggregate(owner_id=self.owner_id)
        self._settings = UserSettings()
        return deleted

    # Queries

    def entries(self, tag: str | None = None) -> list[Entry]:
        """Loaded entries, newest first, optionally filtered by tag.

        An entry matches if it has the tag or its text contains it,
        case-insensitively.
        """
        if not tag:
            return list(self._entries)
        needle = tag.lower()
        return [e for e in self._entries if tag in e.tags or needle in e.text.lower()]

    def get_entry(self, entry_id: str) -> Entry | None:
        return next((e for e in self._entries if e.id == entry_id), None)

    def resolve_entry(self, prefix: str) -> Entry | None:
        """Find a stored entry by ID prefix.

        Raises:
            ValueError: If the prefix matches more than one entry.
        """
        return self._persistence.get_entry_by_prefix(self.owner_id, prefix)

    def get_streak(self) -> int:
        return current_streak(self.aggregate.daily_counts, self._today())

    def get_heatmap(self, window_size_days: int | None = None) -> list[HeatmapCell]:
        aggregate = self.aggregate
        return build_window(
            aggregate.daily_counts,
            aggregate.daily_tag_counts,
            self._heatmap_days if window_size_days is None else window_size_days,
            self._today(),
        )

    def today_count(self) -> int:
        return self.aggregate.daily_counts.get(self._today(), 0)

    def goal_reached(self) -> bool:
        """True when today's count is exactly the daily goal."""
        return self.today_count() == self.settings.daily_goal

    def has_top(self, granularity: Granularity | str) -> bool:
        period = period_key(self._clock(), granularity, self._tz)
        return bool(holders(self._entries, granularity, period, tz=self._tz))

    def reflection_candidates(self, granularity: Granularity | str) -> list[Entry]:
        """Entries of the current day, week or month, newest first."""
        period = period_key(self._clock(), granularity, self._tz)
        return [
            e
            for e in self._entries
            if e.created_at is not None and period_key(e.created_at, granularity, self._tz) == period
        ]

    def reflection_due(self, granularity: Granularity | str) -> bool:
        """Whether it is time to pick the period's top entry.

        Daily in the evening, weekly on Sunday, monthly on the last day.
        """
        granularity = Granularity(granularity)
        now = self._now()
        if granularity is Granularity.DAY:
            return now.hour >= EVENING_HOUR
        if granularity is Granularity.WEEK:
            return now.weekday() == 6
        return is_last_day_of_month(now.date())

    def memory(self) -> Entry | None:
        return pick_memory(self._entries, self._clock(), self._rng)

    def calendar(self, year: int, month: int) -> list[list[CalendarDay]]:
        return month_grid(self._entries, year, month, tz=self._tz)

    def export(self) -> dict[str, Any]:
        """Everything stored for the owner, JSON-serializable."""
        return {
            "owner_id": self.owner_id,
            "exported_at": format_timestamp(self._clock()),
            "settings": self.settings.model_dump(mode="json"),
            "aggregate": self.aggregate.model_dump(mode="json"),
            "entries": [
                e.model_dump(mode="json") for e in self._persistence.get_entries(self.owner_id)
            ],
        }
