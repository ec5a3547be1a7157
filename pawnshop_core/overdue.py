"""
Overdue / Grace Period Calculator

Read-only date arithmetic over a loan's due date, grace period and status.
Nothing here changes a loan's status; moving loans to ``overdue`` is done by
an external scheduler.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from .loans import Loan, LoanStatus


def _aware(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _whole_days(delta: timedelta) -> int:
    """floor(hours / 24) for a timedelta"""
    return int(delta.total_seconds() // 3600) // 24


def is_overdue(due_date: datetime, status: LoanStatus, now: datetime) -> bool:
    """
    True for an ``active`` loan past its due date.

    Loans already classified (overdue, defaulted, paid...) report False.
    """
    return status == LoanStatus.ACTIVE and _aware(now) > _aware(due_date)


def is_in_grace_period(due_date: datetime, grace_period_days: int,
                       status: LoanStatus, now: datetime) -> bool:
    if not is_overdue(due_date, status, now):
        return False
    return _aware(now) < _aware(due_date) + timedelta(days=grace_period_days)


def days_until_due(due_date: datetime, now: datetime) -> int:
    return max(0, _whole_days(_aware(due_date) - _aware(now)))


def days_overdue(due_date: datetime, status: LoanStatus, now: datetime) -> int:
    if not is_overdue(due_date, status, now):
        return 0
    return _whole_days(_aware(now) - _aware(due_date))


@dataclass(frozen=True)
class LoanAging:
    """Snapshot of a loan's due-date position at one instant"""
    loan_id: str
    status: LoanStatus
    due_date: datetime
    grace_period_days: int
    as_of: datetime
    is_overdue: bool
    is_in_grace_period: bool
    days_until_due: int
    days_overdue: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            'loan_id': self.loan_id,
            'status': self.status.value,
            'due_date': self.due_date.isoformat(),
            'grace_period_days': self.grace_period_days,
            'as_of': self.as_of.isoformat(),
            'is_overdue': self.is_overdue,
            'is_in_grace_period': self.is_in_grace_period,
            'days_until_due': self.days_until_due,
            'days_overdue': self.days_overdue
        }


def assess(loan: Loan, now: Optional[datetime] = None) -> LoanAging:
    """Compute every aging figure for ``loan`` as of ``now`` (defaults to current UTC time)"""
    now = _aware(now or datetime.now(timezone.utc))
    return LoanAging(
        loan_id=loan.id,
        status=loan.status,
        due_date=loan.due_date,
        grace_period_days=loan.grace_period_days,
        as_of=now,
        is_overdue=is_overdue(loan.due_date, loan.status, now),
        is_in_grace_period=is_in_grace_period(loan.due_date, loan.grace_period_days, loan.status, now),
        days_until_due=days_until_due(loan.due_date, now),
        days_overdue=days_overdue(loan.due_date, loan.status, now)
    )
