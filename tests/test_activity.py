"""Tests for the activity orchestrator."""

import logging
import random
from datetime import datetime, timedelta, timezone

import pytest

from winlog.activity import ActivityStore, AggregateDelta, pick_memory
from winlog.db import EntryStore
from winlog.errors import EntryNotCountedError, PersistenceError, ValidationError
from winlog.models import Entry, ImportedEntry

NOW = datetime(2024, 1, 3, 12, 0, tzinfo=timezone.utc)
TODAY = "2024-01-03"


class Clock:
    """Fixed clock that tests can move forward."""

    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class FailingStore(EntryStore):
    """EntryStore whose writes can be made to fail a set number of times."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.failures: dict[str, int] = {}

    def fail(self, operation: str, times: int = 1) -> None:
        self.failures[operation] = times

    def _maybe_fail(self, operation: str) -> None:
        if self.failures.get(operation, 0) > 0:
            self.failures[operation] -= 1
            raise PersistenceError(f"{operation} unavailable")

    def create_entry(self, *args, **kwargs):
        self._maybe_fail("create_entry")
        return super().create_entry(*args, **kwargs)

    def delete_entry(self, entry_id):
        self._maybe_fail("delete_entry")
        return super().delete_entry(entry_id)

    def merge_aggregate(self, owner_id, **fields):
        self._maybe_fail("merge_aggregate")
        return super().merge_aggregate(owner_id, **fields)


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def store(clock):
    store = FailingStore.open_in_memory(clock=clock)
    yield store
    store.close()


@pytest.fixture
def activity(store, clock):
    with ActivityStore(store, "alice", tz=timezone.utc, clock=clock, rng=random.Random(0)) as activity:
        yield activity


def import_entry(store, text, created_at, **flags):
    store.insert_imported_entry(
        "alice",
        ImportedEntry(text=text, created_at=created_at, **flags),
        [t for t in text.split() if t.startswith("#")],
    )


class TestAggregateDelta:
    """Tests for applying deltas to count maps."""

    def test_increment(self):
        delta = AggregateDelta(day_key=TODAY, count=1, tags=["#a", "#a", "#b"])
        counts, tags = delta.apply({}, {})
        assert counts == {TODAY: 1}
        assert tags == {TODAY: {"#a": 1, "#b": 1}}

    def test_decrement_removes_zero_keys(self):
        delta = AggregateDelta(day_key=TODAY, count=-1, tags=["#a"])
        counts, tags = delta.apply({TODAY: 1}, {TODAY: {"#a": 1}})
        assert counts == {}
        assert tags == {}

    def test_never_negative(self):
        delta = AggregateDelta(day_key=TODAY, count=-1, tags=["#a"])
        counts, tags = delta.apply({}, {})
        assert counts == {}
        assert tags == {}

    def test_inputs_unchanged(self):
        counts = {TODAY: 1}
        AggregateDelta(day_key=TODAY, count=1).apply(counts, {})
        assert counts == {TODAY: 1}


class TestAddEntry:
    """Tests for recording entries."""

    def test_counts_update(self, activity, store):
        entry = activity.add_entry("shipped #work #work and #gym")
        assert entry.tags == ["#work", "#gym"]
        assert activity.today_count() == 1
        assert activity.aggregate.daily_tag_counts == {TODAY: {"#work": 1, "#gym": 1}}
        assert activity.aggregate.streak == 1
        assert activity.pending == []

        stored = store.get_aggregate("alice")
        assert stored.daily_counts == {TODAY: 1}
        assert stored.daily_tag_counts == {TODAY: {"#work": 1, "#gym": 1}}
        assert stored.streak == 1

    def test_entry_listed_newest_first(self, activity, clock):
        activity.add_entry("first")
        clock.advance(minutes=5)
        second = activity.add_entry("second")
        assert activity.entries()[0].id == second.id
        assert [e.text for e in activity.entries()] == ["second", "first"]

    def test_visible_before_store_confirms(self, store, activity):
        seen = {}
        original = store.create_entry

        def observing_create(*args, **kwargs):
            seen["count"] = activity.today_count()
            seen["first"] = activity.entries()[0]
            return original(*args, **kwargs)

        store.create_entry = observing_create
        activity.add_entry("optimistic #fast")

        assert seen["count"] == 1
        assert seen["first"].is_pending
        assert seen["first"].text == "optimistic #fast"
        assert not any(e.is_pending for e in activity.entries())

    @pytest.mark.parametrize("text", ["", "   ", "x" * 281])
    def test_rejects_invalid_text(self, activity, store, text):
        with pytest.raises(ValidationError):
            activity.add_entry(text)
        assert activity.today_count() == 0
        assert store.get_entries("alice") == []

    def test_limit_counts_code_points(self, activity):
        entry = activity.add_entry("\U0001F600" * 280)
        assert len(entry.text) == 280

    def test_failed_create_rolls_back(self, activity, store):
        store.fail("create_entry")
        with pytest.raises(PersistenceError):
            activity.add_entry("lost #work")
        assert activity.today_count() == 0
        assert activity.aggregate.daily_tag_counts == {}
        assert activity.entries() == []
        assert activity.pending == []

    def test_failed_aggregate_update_raises_with_entry(self, activity, store):
        """A lost increment on a day that already has a count is reported."""
        activity.add_entry("first #work")
        store.fail("merge_aggregate")
        with pytest.raises(EntryNotCountedError) as excinfo:
            activity.add_entry("second #work")

        assert isinstance(excinfo.value, PersistenceError)
        assert store.get_entry(excinfo.value.entry.id) is not None
        assert len(store.get_entries("alice")) == 2
        assert activity.pending == []

    def test_failed_aggregate_update_on_empty_day_heals(self, activity, store, caplog):
        store.fail("merge_aggregate")
        with caplog.at_level(logging.INFO, logger="winlog.activity"):
            with pytest.raises(EntryNotCountedError):
                activity.add_entry("saved #work")

        assert "aggregate update failed" in caplog.text
        assert "Healed aggregate drift" in caplog.text
        assert activity.today_count() == 1
        assert store.get_aggregate("alice").daily_tag_counts == {TODAY: {"#work": 1}}

    def test_add_across_midnight_counts_once(self):
        """The store stamps the next day while the local clock is still on the previous one."""
        store_clock = Clock(datetime(2024, 1, 4, 0, 0, 0, 1000, tzinfo=timezone.utc))
        local_clock = Clock(datetime(2024, 1, 3, 23, 59, 59, 999000, tzinfo=timezone.utc))
        store = EntryStore.open_in_memory(clock=store_clock)
        with ActivityStore(store, "alice", tz=timezone.utc, clock=local_clock) as activity:
            activity.add_entry("edge #x")
            assert activity.aggregate.daily_counts == {"2024-01-04": 1}
            assert activity.aggregate.daily_tag_counts == {"2024-01-04": {"#x": 1}}
            assert activity.heal_count == 0
        assert store.get_aggregate("alice").daily_counts == {"2024-01-04": 1}
        store.close()


class TestDeleteEntry:
    """Tests for deleting entries."""

    def test_add_then_delete_nets_zero(self, activity, store):
        entry = activity.add_entry("oops #typo")
        assert activity.delete_entry(entry)

        assert activity.today_count() == 0
        assert TODAY not in activity.aggregate.daily_counts
        assert activity.aggregate.daily_tag_counts == {}
        assert activity.entries() == []
        assert store.get_aggregate("alice").daily_counts == {}

    def test_delete_uses_entry_day(self, activity, store, clock):
        entry = activity.add_entry("yesterday's win")
        clock.advance(days=1)
        activity.add_entry("today's win")
        activity.delete_entry(entry)
        assert activity.aggregate.daily_counts == {"2024-01-04": 1}

    def test_pending_entry_rejected(self, activity):
        placeholder = Entry(id="pending-1", owner_id="alice", text="x")
        with pytest.raises(ValidationError):
            activity.delete_entry(placeholder)

    def test_already_deleted(self, activity, store):
        entry = activity.add_entry("a")
        store.delete_entry(entry.id)
        assert not activity.delete_entry(entry)

    def test_failed_delete_restores_state(self, activity, store):
        entry = activity.add_entry("keep #me")
        store.fail("delete_entry")
        with pytest.raises(PersistenceError):
            activity.delete_entry(entry)
        assert activity.today_count() == 1
        assert activity.aggregate.daily_tag_counts == {TODAY: {"#me": 1}}
        assert [e.id for e in activity.entries()] == [entry.id]
        assert activity.pending == []

    def test_failed_aggregate_update_raises(self, activity, store):
        entry = activity.add_entry("gone")
        store.fail("merge_aggregate")
        with pytest.raises(PersistenceError):
            activity.delete_entry(entry)
        assert store.get_entry(entry.id) is None
        assert activity.pending == []


class TestEditAndTop:
    """Tests for text edits and top markers."""

    def test_update_text(self, activity, store):
        entry = activity.add_entry("draft #work")
        assert activity.update_entry_text(entry.id, "final text")
        assert activity.get_entry(entry.id).text == "final text"
        assert store.get_entry(entry.id).tags == ["#work"]
        assert activity.aggregate.daily_tag_counts == {TODAY: {"#work": 1}}

    def test_update_text_validation(self, activity):
        entry = activity.add_entry("draft")
        with pytest.raises(ValidationError):
            activity.update_entry_text(entry.id, " ")

    def test_update_missing(self, activity):
        assert not activity.update_entry_text("nope", "text")

    def test_mark_top_moves_marker(self, activity, store):
        first = activity.add_entry("first")
        second = activity.add_entry("second")

        assert activity.mark_top(first.id, "day")
        assert activity.has_top("day")
        assert activity.mark_top(second.id, "day")

        assert not store.get_entry(first.id).is_daily_top
        assert store.get_entry(second.id).is_daily_top
        assert activity.get_entry(second.id).is_daily_top

    def test_mark_top_unknown(self, activity):
        assert not activity.mark_top("nope", "week")
        assert not activity.has_top("week")

    def test_conflicting_tops_logged(self, store, clock, caplog):
        import_entry(store, "a", "2024-01-03T08:00:00Z", is_daily_top=True)
        import_entry(store, "b", "2024-01-03T09:00:00Z", is_daily_top=True)
        with caplog.at_level(logging.WARNING, logger="winlog.activity"):
            with ActivityStore(store, "alice", tz=timezone.utc, clock=clock):
                pass
        assert "Multiple day top entries for 2024-01-03" in caplog.text


class TestReconciliation:
    """Tests for healing on snapshots and backfill."""

    def test_imported_entries_heal_aggregate(self, activity, store):
        import_entry(store, "old #gym", "2024-01-01T10:00:00Z")
        assert activity.heal_count == 1
        assert activity.aggregate.daily_counts == {"2024-01-01": 1}
        assert store.get_aggregate("alice").daily_tag_counts == {"2024-01-01": {"#gym": 1}}

    def test_consistent_snapshot_does_not_heal(self, activity):
        activity.add_entry("a")
        activity.add_entry("b")
        assert activity.heal_count == 0

    def test_backfill_heals_outside_window(self, store, clock):
        import_entry(store, "oldest", "2023-12-01T10:00:00Z")
        import_entry(store, "older", "2023-12-02T10:00:00Z")
        import_entry(store, "recent", "2023-12-03T10:00:00Z")

        with ActivityStore(store, "alice", entry_window=2, tz=timezone.utc, clock=clock) as activity:
            assert len(activity.entries()) == 2
            assert "2023-12-01" not in activity.aggregate.daily_counts

            assert activity.backfill()
            assert activity.aggregate.daily_counts == {
                "2023-12-01": 1,
                "2023-12-02": 1,
                "2023-12-03": 1,
            }
            assert not activity.backfill()

    def test_higher_counts_not_lowered(self, store, clock):
        store.merge_aggregate("alice", daily_counts={"2024-01-01": 5})
        import_entry(store, "one", "2024-01-01T10:00:00Z")
        with ActivityStore(store, "alice", tz=timezone.utc, clock=clock) as activity:
            assert activity.aggregate.daily_counts == {"2024-01-01": 5}
            assert activity.heal_count == 0


class TestViews:
    """Tests for streak, heatmap and reflection queries."""

    def test_streak_and_heatmap(self, activity, clock):
        activity.add_entry("day one #gym")
        clock.advance(days=1)
        activity.add_entry("day two #gym")
        clock.advance(days=1)

        # Today is still open, so yesterday keeps the streak alive
        assert activity.get_streak() == 2

        cells = activity.get_heatmap(7)
        assert len(cells) == 7
        assert cells[-1].day_key == "2024-01-05"
        assert [c.count for c in cells[-3:]] == [1, 1, 0]
        assert len(activity.get_heatmap()) == 140
        assert activity.get_heatmap(0) == []

    def test_goal(self, activity):
        activity.update_settings(daily_goal=2)
        activity.add_entry("a")
        assert not activity.goal_reached()
        activity.add_entry("b")
        assert activity.goal_reached()
        activity.add_entry("c")
        assert not activity.goal_reached()

    def test_filter_by_tag(self, activity):
        activity.add_entry("ran #gym")
        activity.add_entry("wrote #Work report")
        activity.add_entry("plain")
        assert [e.text for e in activity.entries("#gym")] == ["ran #gym"]
        assert [e.text for e in activity.entries("#work")] == ["wrote #Work report"]
        assert len(activity.entries()) == 3

    def test_reflection_candidates(self, activity, clock):
        activity.add_entry("monday-ish")
        clock.advance(days=1)
        activity.add_entry("thursday")
        assert [e.text for e in activity.reflection_candidates("day")] == ["thursday"]
        assert len(activity.reflection_candidates("week")) == 2

    def test_reflection_due(self, activity, clock):
        assert not activity.reflection_due("day")
        clock.now = datetime(2024, 1, 3, 18, 0, tzinfo=timezone.utc)
        assert activity.reflection_due("day")

        assert not activity.reflection_due("week")
        clock.now = datetime(2024, 1, 7, 9, 0, tzinfo=timezone.utc)
        assert activity.reflection_due("week")

        assert not activity.reflection_due("month")
        clock.now = datetime(2024, 1, 31, 9, 0, tzinfo=timezone.utc)
        assert activity.reflection_due("month")

    def test_calendar(self, activity):
        activity.add_entry("a")
        days = {d.day_key: d for week in activity.calendar(2024, 1) for d in week}
        assert days[TODAY].count == 1


class TestMemory:
    """Tests for resurfacing older entries."""

    def test_needs_enough_entries(self, activity, store):
        import_entry(store, "old", "2023-12-01T10:00:00Z")
        assert activity.memory() is None

    def test_prefers_top_entries(self, activity, store):
        import_entry(store, "old", "2023-12-01T10:00:00Z")
        import_entry(store, "old top", "2023-12-02T10:00:00Z", is_weekly_top=True)
        import_entry(store, "new", "2024-01-03T10:00:00Z")
        assert activity.memory().text == "old top"

    def test_falls_back_to_two_days(self):
        entries = [
            Entry(id=str(i), owner_id="alice", text=str(i), created_at=NOW - timedelta(days=i))
            for i in range(4)
        ]
        picked = pick_memory(entries, NOW, random.Random(1))
        assert picked.id == "3"

    def test_nothing_old_enough(self):
        entries = [
            Entry(id=str(i), owner_id="alice", text=str(i), created_at=NOW - timedelta(hours=i))
            for i in range(4)
        ]
        assert pick_memory(entries, NOW) is None


class TestSettingsAndWipe:
    """Tests for preferences, export and delete-all."""

    def test_update_settings_persists(self, activity, store):
        activity.update_settings(lang="en", daily_goal=5)
        assert activity.settings.daily_goal == 5
        assert store.get_settings("alice").lang == "en"

    @pytest.mark.parametrize(
        "fields", [{"bogus": 1}, {"daily_goal": 0}, {"lang": "de"}, {"accent_color": "red"}]
    )
    def test_invalid_settings(self, activity, fields):
        with pytest.raises(ValidationError):
            activity.update_settings(**fields)
        assert activity.settings.daily_goal == 3

    def test_export(self, activity):
        activity.add_entry("exported #x")
        data = activity.export()
        assert data["owner_id"] == "alice"
        assert data["aggregate"]["daily_counts"] == {TODAY: 1}
        assert [e["text"] for e in data["entries"]] == ["exported #x"]
        assert data["settings"]["daily_goal"] == 3

    def test_delete_all(self, activity, store):
        activity.add_entry("a")
        activity.add_entry("b")
        activity.update_settings(daily_goal=9)

        assert activity.delete_all() == 2
        assert activity.entries() == []
        assert activity.aggregate.daily_counts == {}
        assert activity.settings.daily_goal == 3
        assert store.get_entries("alice") == []
