"""
Loan Module

The pawn loan aggregate: outstanding balances, status state machine and the
installment ledger rows, plus the store that persists them.

The three remaining balances (late fee, interest, principal) are only ever
changed through ``apply_allocation`` and ``restore_allocation``, which the
settlement and reversal engines call inside a unit of work.
"""

from decimal import Decimal
from datetime import datetime, date, timezone
from dataclasses import dataclass
from typing import Dict, List, Optional
from enum import Enum

from .currency import Money, Currency, money_from_record
from .storage import StorageInterface, StorageRecord
from .allocation import Allocation
from .events import DomainEvent, EventPayload
from .errors import LoanNotFoundError, ConcurrencyConflictError


class LoanStatus(Enum):
    """Loan lifecycle states"""
    ACTIVE = "active"
    OVERDUE = "overdue"            # Set by the external overdue scheduler
    PAID = "paid"                  # Fully settled
    DEFAULTED = "defaulted"
    RENEWED = "renewed"
    CONFISCATED = "confiscated"    # Collateral kept by the shop


# Statuses that reject any new payment
CLOSED_FOR_PAYMENT = (LoanStatus.PAID, LoanStatus.CONFISCATED)


class PaymentPlanType(Enum):
    """How the customer repays the loan"""
    SINGLE = "single"
    MINIMUM_PAYMENT = "minimum_payment"
    INSTALLMENTS = "installments"


def _as_utc_datetime(value) -> datetime:
    """Accept a date or datetime; naive values are taken as UTC"""
    if isinstance(value, str):
        value = datetime.fromisoformat(value)
    if not isinstance(value, datetime):
        value = datetime(value.year, value.month, value.day)
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value


@dataclass
class Loan(StorageRecord):
    """Pawn loan with its outstanding balances and status"""
    loan_number: str
    branch_id: str
    customer_id: str
    item_id: str                        # Pledged collateral
    loan_amount: Money                  # Original principal, never changes
    principal_remaining: Money
    interest_remaining: Money
    late_fee_remaining: Money
    due_date: datetime
    amount_paid: Money = None
    status: LoanStatus = LoanStatus.ACTIVE
    grace_period_days: int = 0
    payment_plan_type: PaymentPlanType = PaymentPlanType.SINGLE
    paid_date: Optional[datetime] = None

    # Minimum payment plan
    requires_minimum_payment: bool = False
    minimum_payment_amount: Optional[Money] = None

    updated_by: Optional[str] = None
    version: int = 1

    def __post_init__(self):
        self.due_date = _as_utc_datetime(self.due_date)

        if not self.amount_paid:
            self.amount_paid = Money.zero(self.currency)

        amounts = [self.principal_remaining, self.interest_remaining,
                   self.late_fee_remaining, self.amount_paid]
        if self.minimum_payment_amount is not None:
            amounts.append(self.minimum_payment_amount)
        for amount in amounts:
            if amount.currency != self.currency:
                raise ValueError("All loan amounts must share the loan currency")

        self.validate_balances()

    @property
    def currency(self) -> Currency:
        return self.loan_amount.currency

    @property
    def remaining_balance(self) -> Money:
        """Payoff amount: late fee + interest + principal still owed"""
        return self.late_fee_remaining + self.interest_remaining + self.principal_remaining

    @property
    def accepts_payments(self) -> bool:
        return self.status not in CLOSED_FOR_PAYMENT

    @property
    def is_installment_plan(self) -> bool:
        return self.payment_plan_type == PaymentPlanType.INSTALLMENTS

    @property
    def is_settled(self) -> bool:
        """All three balances are exactly zero"""
        return (self.principal_remaining.is_zero() and
                self.interest_remaining.is_zero() and
                self.late_fee_remaining.is_zero())

    def to_event(self, event_type: DomainEvent, payment_id: str) -> EventPayload:
        return EventPayload(
            event_type=event_type,
            entity_type="loan",
            entity_id=self.id,
            data={
                'loan_number': self.loan_number,
                'customer_id': self.customer_id,
                'item_id': self.item_id,
                'payment_id': payment_id,
                'status': self.status.value
            }
        )

    def validate_balances(self) -> None:
        """Raise ValueError if any balance component is negative"""
        for name in ('principal_remaining', 'interest_remaining', 'late_fee_remaining', 'amount_paid'):
            if getattr(self, name).is_negative():
                raise ValueError(f"Loan {self.id} {name} cannot be negative: {getattr(self, name).to_string()}")

    def apply_allocation(self, allocation: Allocation, amount: Money, now: datetime,
                         updated_by: Optional[str] = None) -> bool:
        """
        Decrement balances by the waterfall splits and record the payment.

        Returns True when the loan became fully paid; it is then moved to
        PAID with ``paid_date`` stamped.
        """
        self.late_fee_remaining = self.late_fee_remaining - allocation.late_fee
        self.interest_remaining = self.interest_remaining - allocation.interest
        self.principal_remaining = self.principal_remaining - allocation.principal
        self.amount_paid = self.amount_paid + amount
        self.validate_balances()

        self.updated_by = updated_by
        self.updated_at = now

        if self.is_settled:
            self.status = LoanStatus.PAID
            self.paid_date = now
            return True
        return False

    def restore_allocation(self, late_fee: Money, interest: Money, principal: Money,
                           amount: Money, now: datetime, updated_by: Optional[str] = None) -> bool:
        """
        Add a reversed payment's splits back onto the balances.

        Returns True when a PAID loan was reactivated.
        """
        reactivated = self.status == LoanStatus.PAID
        if reactivated:
            self.status = LoanStatus.ACTIVE
            self.paid_date = None

        self.late_fee_remaining = self.late_fee_remaining + late_fee
        self.interest_remaining = self.interest_remaining + interest
        self.principal_remaining = self.principal_remaining + principal
        self.amount_paid = self.amount_paid - amount
        self.validate_balances()

        self.updated_by = updated_by
        self.updated_at = now
        return reactivated


@dataclass
class LoanInstallment(StorageRecord):
    """One scheduled sub-payment of an installment-plan loan"""
    loan_id: str
    installment_number: int
    due_date: date
    principal_amount: Money
    interest_amount: Money
    total_amount: Money
    amount_paid: Money = None
    is_paid: bool = False
    paid_date: Optional[datetime] = None

    def __post_init__(self):
        if not self.amount_paid:
            self.amount_paid = Money.zero(self.total_amount.currency)
        self.validate()

    @property
    def remaining_amount(self) -> Money:
        return self.total_amount - self.amount_paid

    def validate(self) -> None:
        """0 <= amount_paid <= total_amount, is_paid iff fully paid"""
        if self.amount_paid.is_negative() or self.amount_paid > self.total_amount:
            raise ValueError(
                f"Installment {self.installment_number} amount paid {self.amount_paid.to_string()} "
                f"outside 0..{self.total_amount.to_string()}"
            )
        if self.is_paid != (self.amount_paid == self.total_amount):
            raise ValueError(f"Installment {self.installment_number} is_paid flag out of sync")


class LoanStore:
    """
    Persists loans and their installment ledger
    """

    def __init__(self, storage: StorageInterface):
        self.storage = storage
        self.loans_table = "loans"
        self.installments_table = "loan_installments"

    def create(self, loan: Loan) -> Loan:
        """Persist a new loan (origination itself lives outside this core)"""
        self.storage.save(self.loans_table, loan.id, self._loan_to_dict(loan))
        return loan

    def get(self, loan_id: str) -> Loan:
        """Get loan by ID"""
        data = self.storage.load(self.loans_table, loan_id)
        if not data:
            raise LoanNotFoundError(loan_id)
        return self._loan_from_dict(data)

    def get_for_update(self, loan_id: str) -> Loan:
        """Get loan by ID and hold its row lock until the transaction ends"""
        data = self.storage.load_for_update(self.loans_table, loan_id)
        if not data:
            raise LoanNotFoundError(loan_id)
        return self._loan_from_dict(data)

    def update(self, loan: Loan) -> None:
        """
        Save balance/status changes.

        The stored version must still match the one the loan was read with,
        otherwise another writer got there first.
        """
        stored = self.storage.load(self.loans_table, loan.id)
        if not stored:
            raise LoanNotFoundError(loan.id)
        if stored.get('version', 1) != loan.version:
            raise ConcurrencyConflictError(
                f"Loan {loan.id} was modified concurrently "
                f"(expected version {loan.version}, found {stored.get('version')})",
                entity_id=loan.id
            )
        loan.version += 1
        self.storage.save(self.loans_table, loan.id, self._loan_to_dict(loan))

    def create_installments(self, installments: List[LoanInstallment]) -> None:
        """Persist an installment schedule created at origination"""
        for installment in installments:
            self.storage.save(self.installments_table, installment.id,
                              self._installment_to_dict(installment))

    def get_installments(self, loan_id: str) -> List[LoanInstallment]:
        """Installments of a loan ordered by installment_number"""
        rows = self.storage.find(self.installments_table, {"loan_id": loan_id})
        installments = [self._installment_from_dict(row) for row in rows]
        installments.sort(key=lambda x: x.installment_number)
        return installments

    def update_installment(self, installment: LoanInstallment) -> None:
        installment.validate()
        self.storage.save(self.installments_table, installment.id,
                          self._installment_to_dict(installment))

    def _loan_to_dict(self, loan: Loan) -> Dict:
        """Convert loan to dictionary"""
        return {
            'id': loan.id,
            'created_at': loan.created_at.isoformat(),
            'updated_at': loan.updated_at.isoformat(),
            'loan_number': loan.loan_number,
            'branch_id': loan.branch_id,
            'customer_id': loan.customer_id,
            'item_id': loan.item_id,
            'currency': loan.currency.code,
            'loan_amount': str(loan.loan_amount.amount),
            'principal_remaining': str(loan.principal_remaining.amount),
            'interest_remaining': str(loan.interest_remaining.amount),
            'late_fee_remaining': str(loan.late_fee_remaining.amount),
            'amount_paid': str(loan.amount_paid.amount),
            'status': loan.status.value,
            'due_date': loan.due_date.isoformat(),
            'grace_period_days': loan.grace_period_days,
            'payment_plan_type': loan.payment_plan_type.value,
            'paid_date': loan.paid_date.isoformat() if loan.paid_date else None,
            'requires_minimum_payment': loan.requires_minimum_payment,
            'minimum_payment_amount': (str(loan.minimum_payment_amount.amount)
                                       if loan.minimum_payment_amount is not None else None),
            'updated_by': loan.updated_by,
            'version': loan.version
        }

    def _loan_from_dict(self, data: Dict) -> Loan:
        """Convert dictionary to loan"""
        currency = Currency[data['currency']]

        minimum_payment_amount = None
        if data.get('minimum_payment_amount') is not None:
            minimum_payment_amount = Money(Decimal(data['minimum_payment_amount']), currency)

        paid_date = None
        if data.get('paid_date'):
            paid_date = datetime.fromisoformat(data['paid_date'])

        return Loan(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            loan_number=data['loan_number'],
            branch_id=data['branch_id'],
            customer_id=data['customer_id'],
            item_id=data['item_id'],
            loan_amount=money_from_record(data, 'loan_amount', currency),
            principal_remaining=money_from_record(data, 'principal_remaining', currency),
            interest_remaining=money_from_record(data, 'interest_remaining', currency),
            late_fee_remaining=money_from_record(data, 'late_fee_remaining', currency),
            amount_paid=money_from_record(data, 'amount_paid', currency),
            status=LoanStatus(data['status']),
            due_date=datetime.fromisoformat(data['due_date']),
            grace_period_days=data.get('grace_period_days', 0),
            payment_plan_type=PaymentPlanType(data['payment_plan_type']),
            paid_date=paid_date,
            requires_minimum_payment=data.get('requires_minimum_payment', False),
            minimum_payment_amount=minimum_payment_amount,
            updated_by=data.get('updated_by'),
            version=data.get('version', 1)
        )

    def _installment_to_dict(self, installment: LoanInstallment) -> Dict:
        return {
            'id': installment.id,
            'created_at': installment.created_at.isoformat(),
            'updated_at': installment.updated_at.isoformat(),
            'loan_id': installment.loan_id,
            'installment_number': installment.installment_number,
            'due_date': installment.due_date.isoformat(),
            'currency': installment.total_amount.currency.code,
            'principal_amount': str(installment.principal_amount.amount),
            'interest_amount': str(installment.interest_amount.amount),
            'total_amount': str(installment.total_amount.amount),
            'amount_paid': str(installment.amount_paid.amount),
            'is_paid': installment.is_paid,
            'paid_date': installment.paid_date.isoformat() if installment.paid_date else None
        }

    def _installment_from_dict(self, data: Dict) -> LoanInstallment:
        currency = Currency[data['currency']]
        return LoanInstallment(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            loan_id=data['loan_id'],
            installment_number=data['installment_number'],
            due_date=date.fromisoformat(data['due_date']),
            principal_amount=money_from_record(data, 'principal_amount', currency),
            interest_amount=money_from_record(data, 'interest_amount', currency),
            total_amount=money_from_record(data, 'total_amount', currency),
            amount_paid=money_from_record(data, 'amount_paid', currency),
            is_paid=data['is_paid'],
            paid_date=datetime.fromisoformat(data['paid_date']) if data.get('paid_date') else None
        )
