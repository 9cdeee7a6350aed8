"""Unit tests for ResetScheduler."""

import pytest
from datetime import datetime, timedelta, timezone
from usage_limiter.exceptions import InvalidArgumentError
from usage_limiter.models import ResetFrequency
from usage_limiter.scheduler import ResetScheduler

UTC = timezone.utc


@pytest.fixture
def scheduler():
    """Create a ResetScheduler"""
    return ResetScheduler()


def test_monthly_reset_clamps_to_end_of_february(scheduler):
    """Test that a monthly reset from Jan 31 lands on Feb 28, not in March"""
    next_reset = scheduler.next_reset_at("every month", datetime(2025, 1, 31, 9, 30, tzinfo=UTC))

    assert next_reset == datetime(2025, 2, 28, 9, 30, tzinfo=UTC)


def test_monthly_reset_clamps_to_leap_day(scheduler):
    """Test that a monthly reset from Jan 31 of a leap year lands on Feb 29"""
    next_reset = scheduler.next_reset_at(ResetFrequency.EVERY_MONTH, datetime(2024, 1, 31, tzinfo=UTC))

    assert next_reset == datetime(2024, 2, 29, tzinfo=UTC)


@pytest.mark.parametrize(
    "frequency,expected",
    [
        ("every second", datetime(2025, 3, 31, 12, 0, 1, tzinfo=UTC)),
        ("every minute", datetime(2025, 3, 31, 12, 1, tzinfo=UTC)),
        ("every hour", datetime(2025, 3, 31, 13, 0, tzinfo=UTC)),
        ("every day", datetime(2025, 4, 1, 12, 0, tzinfo=UTC)),
        ("every week", datetime(2025, 4, 7, 12, 0, tzinfo=UTC)),
        ("every two weeks", datetime(2025, 4, 14, 12, 0, tzinfo=UTC)),
        ("every month", datetime(2025, 4, 30, 12, 0, tzinfo=UTC)),
        ("every quarter", datetime(2025, 6, 30, 12, 0, tzinfo=UTC)),
        ("every six months", datetime(2025, 9, 30, 12, 0, tzinfo=UTC)),
        ("every year", datetime(2026, 3, 31, 12, 0, tzinfo=UTC)),
    ],
)
def test_next_reset_at_for_each_frequency(scheduler, frequency, expected):
    """Test the next boundary for every recurring frequency"""
    start = datetime(2025, 3, 31, 12, 0, tzinfo=UTC)

    next_reset = scheduler.next_reset_at(frequency, start)

    assert next_reset == expected
    assert next_reset > start


def test_yearly_reset_from_leap_day(scheduler):
    """Test that a yearly reset from Feb 29 lands on Feb 28"""
    next_reset = scheduler.next_reset_at("every year", datetime(2024, 2, 29, tzinfo=UTC))

    assert next_reset == datetime(2025, 2, 28, tzinfo=UTC)


@pytest.mark.parametrize("frequency", [None, "", "never", ResetFrequency.NEVER])
def test_never_has_no_next_reset(scheduler, frequency):
    """Test that non-recurring frequencies never schedule a reset"""
    start = datetime(2025, 1, 1, tzinfo=UTC)

    assert scheduler.next_reset_at(frequency, start) is None
    assert scheduler.is_due(start, frequency, start + timedelta(days=3650)) is False


def test_naive_datetimes_are_treated_as_utc(scheduler):
    """Test the UTC policy for naive input"""
    next_reset = scheduler.next_reset_at("every day", datetime(2025, 1, 1, 23, 0))

    assert next_reset == datetime(2025, 1, 2, 23, 0, tzinfo=UTC)


def test_aware_datetimes_are_converted_to_utc(scheduler):
    """Test that month boundaries are computed in UTC, not local time"""
    # 2025-02-01 01:00 at +02:00 is still Jan 31 in UTC
    local = datetime(2025, 2, 1, 1, 0, tzinfo=timezone(timedelta(hours=2)))

    next_reset = scheduler.next_reset_at("every month", local)

    assert next_reset == datetime(2025, 2, 28, 23, 0, tzinfo=UTC)


def test_is_due_at_and_after_boundary(scheduler):
    """Test that a reset is due exactly at the boundary and after it"""
    last_reset = datetime(2025, 1, 31, tzinfo=UTC)
    boundary = datetime(2025, 2, 28, tzinfo=UTC)

    assert scheduler.is_due(last_reset, "every month", boundary - timedelta(seconds=1)) is False
    assert scheduler.is_due(last_reset, "every month", boundary) is True
    assert scheduler.is_due(last_reset, "every month", boundary + timedelta(days=40)) is True


def test_is_due_without_last_reset(scheduler):
    """Test that a state that was never reset is not due"""
    assert scheduler.is_due(None, "every second", datetime(2025, 1, 1, tzinfo=UTC)) is False


def test_unknown_frequency_raises(scheduler):
    """Test that an unknown frequency cannot reach the recurrence table"""
    with pytest.raises(InvalidArgumentError):
        scheduler.next_reset_at("every decade", datetime(2025, 1, 1, tzinfo=UTC))
