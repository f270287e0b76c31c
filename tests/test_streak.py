"""Tests for streak calculation."""

from datetime import date, datetime, timezone

from winlog.streak import current_streak


class TestCurrentStreak:
    """Tests for current_streak."""

    def test_empty_map(self):
        assert current_streak({}, "2024-01-03") == 0
        assert current_streak(None, "2024-01-03") == 0

    def test_only_today(self):
        assert current_streak({"2024-01-03": 1}, "2024-01-03") == 1

    def test_broken_when_today_and_yesterday_missing(self):
        counts = {"2024-01-01": 4, "2023-12-31": 2}
        assert current_streak(counts, "2024-01-03") == 0

    def test_zero_counts_are_missing(self):
        counts = {"2024-01-03": 0, "2024-01-02": 0, "2024-01-01": 3}
        assert current_streak(counts, "2024-01-03") == 0

    def test_grace_day_counts_through_yesterday(self):
        """Today is still in progress, so yesterday's streak survives."""
        counts = {"2024-01-01": 1, "2024-01-02": 1, "2024-01-03": 0}
        assert current_streak(counts, "2024-01-03") == 2

    def test_today_plus_preceding_days(self):
        counts = {
            "2024-01-03": 2,
            "2024-01-02": 1,
            "2024-01-01": 5,
            "2023-12-31": 1,
        }
        assert current_streak(counts, "2024-01-03") == 4

    def test_stops_at_first_gap(self):
        counts = {"2024-01-03": 1, "2024-01-02": 1, "2023-12-31": 1, "2023-12-30": 1}
        assert current_streak(counts, "2024-01-03") == 2

    def test_crosses_month_boundary(self):
        counts = {"2024-03-01": 1, "2024-02-29": 1, "2024-02-28": 1}
        assert current_streak(counts, "2024-03-01") == 3

    def test_malformed_values_count_as_zero(self):
        counts = {"2024-01-03": "lots", "2024-01-02": None}
        assert current_streak(counts, "2024-01-03") == 0

    def test_numeric_strings_are_read(self):
        assert current_streak({"2024-01-03": "2"}, "2024-01-03") == 1

    def test_accepts_date_and_datetime(self):
        counts = {"2024-01-03": 1, "2024-01-02": 1}
        assert current_streak(counts, date(2024, 1, 3)) == 2
        noon = datetime(2024, 1, 3, 12, tzinfo=timezone.utc)
        assert current_streak(counts, noon, tz=timezone.utc) == 2

    def test_lower_bound_for_consecutive_days(self):
        """k active days before an active today give at least k + 1."""
        counts = {f"2024-01-{d:02d}": 1 for d in range(1, 11)}
        for k in range(10):
            assert current_streak(counts, f"2024-01-{k + 1:02d}") >= k + 1
