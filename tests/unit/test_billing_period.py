"""Tests for billing interval utilities."""

import pytest

from billing_engine.utils.billing_period import (
    MILLIS_PER_DAY,
    MILLIS_PER_MONTH,
    MILLIS_PER_WEEK,
    MILLIS_PER_YEAR,
    add_billing_interval,
    interval_to_millis,
)


class TestIntervalToMillis:
    """Test interval_to_millis function."""

    def test_single_units(self):
        assert interval_to_millis("day") == MILLIS_PER_DAY
        assert interval_to_millis("week") == MILLIS_PER_WEEK
        assert interval_to_millis("month") == MILLIS_PER_MONTH
        assert interval_to_millis("year") == MILLIS_PER_YEAR

    def test_interval_count(self):
        assert interval_to_millis("month", 3) == 3 * MILLIS_PER_MONTH
        assert interval_to_millis("week", 2) == 2 * MILLIS_PER_WEEK

    def test_case_and_whitespace_insensitive(self):
        assert interval_to_millis(" Month ") == MILLIS_PER_MONTH

    def test_unknown_unit(self):
        with pytest.raises(ValueError, match="Unsupported interval"):
            interval_to_millis("fortnight")

    def test_empty_unit(self):
        with pytest.raises(ValueError, match="non-empty string"):
            interval_to_millis("")

    def test_non_positive_count(self):
        with pytest.raises(ValueError, match="must be positive"):
            interval_to_millis("month", 0)


class TestAddBillingInterval:
    def test_monthly_window(self):
        start = 1_700_000_000_000
        assert add_billing_interval(start, "month") == start + 30 * MILLIS_PER_DAY

    def test_yearly_window(self):
        assert add_billing_interval(0, "year") == 365 * MILLIS_PER_DAY


class TestBillingPeriodConstants:
    """Months and years use fixed billing approximations."""

    def test_month_is_thirty_days(self):
        assert MILLIS_PER_MONTH == 30 * 24 * 60 * 60 * 1000

    def test_year_is_365_days(self):
        assert MILLIS_PER_YEAR == 365 * 24 * 60 * 60 * 1000
