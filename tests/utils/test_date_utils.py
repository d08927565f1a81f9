# tests/utils/test_date_utils.py
"""
Tests for date utility functions.
"""

from datetime import date, datetime, timezone
from zoneinfo import ZoneInfo

import pytest

from portfolio_engine.utils.date_utils import (
    count_business_days,
    get_business_days,
    is_business_day,
    month_key,
    previous_business_day,
    processing_date,
    shift_months,
)


class TestBusinessDays:
    """Tests for business day helpers."""

    def test_week_has_five_business_days(self):
        """Should skip Saturday and Sunday."""
        days = get_business_days(date(2024, 1, 1), date(2024, 1, 7))

        assert days == [date(2024, 1, d) for d in range(1, 6)]

    def test_empty_range(self):
        assert get_business_days(date(2024, 1, 7), date(2024, 1, 1)) == []

    @pytest.mark.parametrize("start,end", [
        (date(2024, 1, 1), date(2024, 1, 1)),
        (date(2024, 1, 6), date(2024, 1, 7)),
        (date(2024, 1, 3), date(2024, 2, 20)),
        (date(2023, 12, 30), date(2024, 3, 4)),
    ])
    def test_count_matches_list(self, start, end):
        """Should agree with get_business_days for any range."""
        assert count_business_days(start, end) == len(get_business_days(start, end))

    def test_count_empty_range(self):
        assert count_business_days(date(2024, 1, 7), date(2024, 1, 1)) == 0

    def test_is_business_day(self):
        assert is_business_day(date(2024, 3, 1)) is True
        assert is_business_day(date(2024, 3, 2)) is False

    @pytest.mark.parametrize("day,expected", [
        (date(2024, 3, 5), date(2024, 3, 4)),   # Tuesday → Monday
        (date(2024, 3, 4), date(2024, 3, 1)),   # Monday → Friday
        (date(2024, 3, 3), date(2024, 3, 1)),   # Sunday → Friday
        (date(2024, 3, 2), date(2024, 3, 1)),   # Saturday → Friday
    ])
    def test_previous_business_day(self, day, expected):
        assert previous_business_day(day) == expected


class TestProcessingDate:
    """Tests for the snapshot processing date."""

    def test_uses_reference_zone(self):
        """23:30 UTC Sunday is already Monday in Madrid → Friday."""
        now = datetime(2024, 3, 3, 23, 30, tzinfo=timezone.utc)

        assert processing_date(ZoneInfo("Europe/Madrid"), now=now) == date(2024, 3, 1)

    def test_same_instant_utc(self):
        now = datetime(2024, 3, 3, 23, 30, tzinfo=timezone.utc)

        assert processing_date(timezone.utc, now=now) == date(2024, 3, 1)

    def test_tuesday_run(self):
        now = datetime(2024, 3, 5, 1, 0, tzinfo=ZoneInfo("Europe/Madrid"))

        assert processing_date(ZoneInfo("Europe/Madrid"), now=now) == date(2024, 3, 4)


class TestMonthHelpers:
    """Tests for month helpers used by reports."""

    def test_month_key(self):
        assert month_key(date(2024, 3, 15)) == "2024-03"

    @pytest.mark.parametrize("months,expected", [
        (0, date(2024, 3, 1)),
        (-2, date(2024, 1, 1)),
        (-3, date(2023, 12, 1)),
        (10, date(2025, 1, 1)),
    ])
    def test_shift_months(self, months, expected):
        assert shift_months(date(2024, 3, 15), months) == expected
