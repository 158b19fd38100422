"""
Unit tests for due-time computation (keepsafe/backup/schedule.py).
"""

from datetime import datetime, time, timedelta, timezone

import pytest

from keepsafe.backup.schedule import compute_next_due, is_due, parse_time_of_day
from keepsafe.models import ScheduleConfig, Weekday

PLUS_TWO = timezone(timedelta(hours=2))


class TestParseTimeOfDay:
    """Test schedule time parsing."""

    @pytest.mark.parametrize('text,expected', [
        ('02:00', time(2, 0)),
        ('7:30', time(7, 30)),
        ('23:59:30', time(23, 59, 30)),
        (' 06:15 ', time(6, 15)),
    ])
    def test_valid(self, text, expected):
        assert parse_time_of_day(text) == expected

    @pytest.mark.parametrize('text', ['', None, 'noon', '25:00', '12:60', '12'])
    def test_invalid(self, text):
        assert parse_time_of_day(text) is None


class TestComputeNextDue:
    """Test compute_next_due."""

    def test_later_today(self):
        """Test a slot later today is chosen."""
        now = datetime(2024, 1, 15, 1, 0, tzinfo=timezone.utc)

        due = compute_next_due(ScheduleConfig(time_local='02:00'), now)

        assert due == datetime(2024, 1, 15, 2, 0, tzinfo=timezone.utc)

    def test_passed_today_rolls_to_tomorrow(self):
        now = datetime(2024, 1, 15, 3, 0, tzinfo=timezone.utc)

        due = compute_next_due(ScheduleConfig(time_local='02:00'), now)

        assert due == datetime(2024, 1, 16, 2, 0, tzinfo=timezone.utc)

    def test_exactly_now_is_not_due_again(self):
        """Test the slot being run right now is not chosen again."""
        now = datetime(2024, 1, 15, 2, 0, 0, 500000, tzinfo=timezone.utc)

        due = compute_next_due(ScheduleConfig(time_local='02:00'), now)

        assert due == datetime(2024, 1, 16, 2, 0, tzinfo=timezone.utc)

    def test_weekday_filter_in_local_time(self):
        """Test Tuesday 10:00 with a Monday schedule is due next Monday, in UTC."""
        now = datetime(2024, 1, 16, 10, 0, tzinfo=PLUS_TWO)
        schedule = ScheduleConfig(time_local='02:00', days=[Weekday.MONDAY])

        due = compute_next_due(schedule, now)

        assert due == datetime(2024, 1, 22, 0, 0, tzinfo=timezone.utc)
        assert due.tzinfo == timezone.utc

    def test_multiple_weekdays(self):
        now = datetime(2024, 1, 16, 10, 0, tzinfo=timezone.utc)
        schedule = ScheduleConfig(time_local='21:30', days=[Weekday.FRIDAY, Weekday.TUESDAY])

        assert compute_next_due(schedule, now) == datetime(2024, 1, 16, 21, 30, tzinfo=timezone.utc)

    def test_invalid_time_falls_back(self):
        """Test an unparseable time uses 02:00."""
        now = datetime(2024, 1, 15, 12, 0, tzinfo=timezone.utc)

        due = compute_next_due(ScheduleConfig(time_local='later'), now)

        assert due == datetime(2024, 1, 16, 2, 0, tzinfo=timezone.utc)

    def test_naive_now_is_local(self):
        """Test naive input is treated as system local time."""
        due = compute_next_due(ScheduleConfig(time_local='02:00'), datetime(2024, 1, 15, 12, 0))

        assert due.tzinfo == timezone.utc
        assert due > datetime(2024, 1, 15, 12, 0).astimezone()

    def test_always_in_future(self):
        """Test the result is in the future for every hour of a week."""
        schedule = ScheduleConfig(time_local='04:00', days=[Weekday.SUNDAY])
        start = datetime(2024, 1, 15, 0, 0, tzinfo=PLUS_TWO)

        for hours in range(0, 24 * 7, 5):
            now = start + timedelta(hours=hours)
            due = compute_next_due(schedule, now)
            assert now < due <= now + timedelta(days=7)


class TestIsDue:
    """Test is_due."""

    def test_not_planned(self):
        assert not is_due(datetime.now(timezone.utc), None)

    def test_due(self):
        planned = datetime(2024, 1, 15, 2, 0, tzinfo=timezone.utc)

        assert is_due(datetime(2024, 1, 15, 4, 0, tzinfo=PLUS_TWO), planned)
        assert not is_due(datetime(2024, 1, 15, 3, 59, tzinfo=PLUS_TWO), planned)
