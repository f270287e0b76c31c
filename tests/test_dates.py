"""Tests for day keys and period boundaries."""

from datetime import date, datetime, timedelta, timezone

import pytest

from winlog.dates import (
    Granularity,
    add_days,
    day_key,
    format_timestamp,
    is_last_day_of_month,
    parse_timestamp,
    period_key,
    period_range,
)

UTC_MINUS_5 = timezone(timedelta(hours=-5))
UTC_PLUS_2 = timezone(timedelta(hours=2))


class TestDayKey:
    """Tests for local-day keys."""

    def test_uses_local_day_not_utc(self):
        """Late evening UTC is still the previous day west of Greenwich."""
        instant = datetime(2024, 1, 2, 3, 30, tzinfo=timezone.utc)
        assert day_key(instant, UTC_MINUS_5) == "2024-01-01"
        assert day_key(instant, UTC_PLUS_2) == "2024-01-02"

    def test_same_local_day_same_key(self):
        morning = datetime(2024, 3, 5, 0, 1, tzinfo=UTC_PLUS_2)
        night = datetime(2024, 3, 5, 23, 59, tzinfo=UTC_PLUS_2)
        assert day_key(morning, UTC_PLUS_2) == day_key(night, UTC_PLUS_2)

    def test_naive_datetime_is_local_wall_time(self):
        assert day_key(datetime(2024, 6, 1, 23, 59)) == "2024-06-01"

    def test_date_passes_through(self):
        assert day_key(date(2024, 2, 29)) == "2024-02-29"


class TestAddDays:
    """Tests for calendar day arithmetic on keys."""

    def test_leap_day(self):
        assert add_days("2024-02-28", 1) == "2024-02-29"
        assert add_days("2024-03-01", -1) == "2024-02-29"

    def test_year_rollover(self):
        assert add_days("2023-12-31", 1) == "2024-01-01"
        assert add_days("2024-01-01", -1) == "2023-12-31"

    def test_large_offset(self):
        assert add_days("2024-01-01", -139) == "2023-08-15"


class TestPeriodKey:
    """Tests for period keys."""

    def test_day_matches_day_key(self):
        instant = datetime(2024, 5, 17, 8, tzinfo=timezone.utc)
        assert period_key(instant, Granularity.DAY, timezone.utc) == "2024-05-17"

    def test_accepts_string_granularity(self):
        assert period_key(date(2024, 5, 17), "month") == "2024-05"

    def test_week_spans_monday_to_sunday(self):
        keys = {period_key(date(2024, 1, d), "week") for d in range(1, 8)}
        assert keys == {"2024-W01"}
        assert period_key(date(2024, 1, 8), "week") == "2024-W02"

    def test_week_at_year_end_belongs_to_next_iso_year(self):
        """Dec 30, 2024 is a Monday in the week containing Jan 2, 2025."""
        assert period_key(date(2024, 12, 30), "week") == "2025-W01"
        assert period_key(date(2025, 1, 5), "week") == "2025-W01"
        assert period_key(date(2024, 12, 29), "week") == "2024-W52"

    def test_week_at_year_start_belongs_to_previous_iso_year(self):
        assert period_key(date(2021, 1, 1), "week") == "2020-W53"

    def test_month(self):
        assert period_key(date(2024, 2, 29), Granularity.MONTH) == "2024-02"
        assert period_key(date(2024, 3, 1), Granularity.MONTH) == "2024-03"

    def test_unknown_granularity_rejected(self):
        with pytest.raises(ValueError):
            period_key(date(2024, 1, 1), "year")


class TestPeriodRange:
    """Tests for period start/end instants."""

    def test_day_range(self):
        start, end = period_range(datetime(2024, 1, 3, 15, tzinfo=timezone.utc), "day", timezone.utc)
        assert start == datetime(2024, 1, 3, tzinfo=timezone.utc)
        assert end == datetime(2024, 1, 4, tzinfo=timezone.utc)

    def test_week_range_starts_monday(self):
        start, end = period_range(date(2024, 1, 3), "week", timezone.utc)
        assert start == datetime(2024, 1, 1, tzinfo=timezone.utc)
        assert end == datetime(2024, 1, 8, tzinfo=timezone.utc)

    def test_month_range_crosses_year(self):
        start, end = period_range(date(2024, 12, 15), "month", timezone.utc)
        assert start == datetime(2024, 12, 1, tzinfo=timezone.utc)
        assert end == datetime(2025, 1, 1, tzinfo=timezone.utc)


class TestHelpers:
    def test_last_day_of_month(self):
        assert is_last_day_of_month(date(2024, 2, 29))
        assert not is_last_day_of_month(date(2024, 2, 28))
        assert is_last_day_of_month(date(2023, 12, 31))

    def test_timestamp_roundtrip(self):
        instant = datetime(2024, 1, 3, 12, 30, 15, 123456, tzinfo=timezone.utc)
        text = format_timestamp(instant)
        assert text == "2024-01-03T12:30:15.123456Z"
        assert parse_timestamp(text) == instant

    def test_format_converts_to_utc(self):
        instant = datetime(2024, 1, 3, 1, 0, tzinfo=UTC_PLUS_2)
        assert format_timestamp(instant) == "2024-01-02T23:00:00.000000Z"
