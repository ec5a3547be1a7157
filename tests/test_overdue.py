"""
Test suite for the overdue / grace period calculator
"""

import pytest
from datetime import datetime, timezone, timedelta, date

from pawnshop_core.loans import LoanStatus
from pawnshop_core.overdue import (
    is_overdue, is_in_grace_period, days_until_due, days_overdue, assess
)


DUE = datetime(2024, 6, 1, 0, 0, tzinfo=timezone.utc)


class TestIsOverdue:
    """Test the overdue predicate"""

    def test_active_loan_past_due_is_overdue(self):
        assert is_overdue(DUE, LoanStatus.ACTIVE, DUE + timedelta(seconds=1))

    def test_exactly_at_due_date_is_not_overdue(self):
        assert not is_overdue(DUE, LoanStatus.ACTIVE, DUE)

    @pytest.mark.parametrize("status", [
        LoanStatus.OVERDUE, LoanStatus.DEFAULTED, LoanStatus.PAID, LoanStatus.CONFISCATED
    ])
    def test_already_classified_loans_report_false(self, status):
        assert not is_overdue(DUE, status, DUE + timedelta(days=30))


class TestGracePeriod:
    """Test grace period window"""

    def test_inside_grace_window(self):
        assert is_in_grace_period(DUE, 5, LoanStatus.ACTIVE, DUE + timedelta(days=4, hours=23))

    def test_grace_window_end_is_exclusive(self):
        assert not is_in_grace_period(DUE, 5, LoanStatus.ACTIVE, DUE + timedelta(days=5))

    def test_not_in_grace_before_due(self):
        assert not is_in_grace_period(DUE, 5, LoanStatus.ACTIVE, DUE - timedelta(hours=1))

    def test_zero_grace_days(self):
        assert not is_in_grace_period(DUE, 0, LoanStatus.ACTIVE, DUE + timedelta(hours=1))


class TestDayCounts:
    """Test whole-day arithmetic"""

    def test_days_until_due_floors_partial_days(self):
        assert days_until_due(DUE, DUE - timedelta(days=2, hours=23)) == 2

    def test_days_until_due_never_negative(self):
        assert days_until_due(DUE, DUE + timedelta(days=3)) == 0

    def test_days_overdue(self):
        assert days_overdue(DUE, LoanStatus.ACTIVE, DUE + timedelta(days=3, hours=5)) == 3
        assert days_overdue(DUE, LoanStatus.ACTIVE, DUE + timedelta(hours=23)) == 0

    def test_days_overdue_zero_when_not_overdue(self):
        assert days_overdue(DUE, LoanStatus.PAID, DUE + timedelta(days=10)) == 0

    def test_naive_datetimes_are_treated_as_utc(self):
        naive_now = datetime(2024, 6, 3, 1, 0)
        assert days_overdue(DUE, LoanStatus.ACTIVE, naive_now) == 2


class TestAssess:
    """Test the aging snapshot"""

    def test_assess_bundles_all_figures(self, make_loan):
        loan = make_loan(due_date=date(2024, 6, 1), grace_period_days=5)

        aging = assess(loan, DUE + timedelta(days=2, hours=6))

        assert aging.loan_id == loan.id
        assert aging.is_overdue
        assert aging.is_in_grace_period
        assert aging.days_overdue == 2
        assert aging.days_until_due == 0
        assert aging.to_dict()['status'] == "active"
