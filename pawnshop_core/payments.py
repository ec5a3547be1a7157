"""
Payment Module

Payment records produced by the settlement engine and the store that keeps
them. A payment is immutable once created apart from its reversal fields,
which move it from ``completed`` to ``reversed`` exactly once.
"""

from datetime import datetime
from dataclasses import dataclass
from typing import Dict, List, Optional
from enum import Enum

from .currency import Money, Currency, money_from_record
from .storage import StorageInterface, StorageRecord
from .events import DomainEvent, EventPayload
from .errors import PaymentNotFoundError, PaymentNotReversibleError


class PaymentMethod(Enum):
    """How the customer paid"""
    CASH = "cash"
    CARD = "card"
    TRANSFER = "transfer"
    CHECK = "check"
    OTHER = "other"


class PaymentStatus(Enum):
    """Payment lifecycle states"""
    COMPLETED = "completed"
    PENDING = "pending"
    REVERSED = "reversed"
    FAILED = "failed"


@dataclass
class Payment(StorageRecord):
    """
    A payment applied to a loan, with the waterfall splits recorded verbatim
    """
    payment_number: str
    branch_id: str
    loan_id: str
    customer_id: str
    amount: Money
    principal_amount: Money
    interest_amount: Money
    late_fee_amount: Money
    loan_balance_after: Money       # Principal remaining after this payment
    interest_balance_after: Money   # Interest remaining after this payment
    payment_method: PaymentMethod
    payment_date: datetime
    created_by: str
    status: PaymentStatus = PaymentStatus.COMPLETED
    reference_number: Optional[str] = None
    notes: Optional[str] = None
    cash_session_id: Optional[str] = None

    # Portion of the amount absorbed by the installment ledger
    installment_amount_applied: Optional[Money] = None

    # Reversal
    reversed_at: Optional[datetime] = None
    reversed_by: Optional[str] = None
    reversal_reason: Optional[str] = None

    def __post_init__(self):
        if not self.amount.is_positive():
            raise ValueError("Payment amount must be positive")

        if self.installment_amount_applied is None:
            self.installment_amount_applied = Money.zero(self.amount.currency)

        for split in (self.principal_amount, self.interest_amount, self.late_fee_amount,
                      self.installment_amount_applied):
            if split.currency != self.amount.currency:
                raise ValueError("Payment splits must use the payment currency")
            if split.is_negative():
                raise ValueError("Payment splits cannot be negative")

    @property
    def currency(self) -> Currency:
        return self.amount.currency

    @property
    def is_reversible(self) -> bool:
        """Only completed payments can be reversed"""
        return self.status == PaymentStatus.COMPLETED

    def to_event(self, event_type: DomainEvent) -> EventPayload:
        """Event carrying what the customer stats projection needs"""
        return EventPayload(
            event_type=event_type,
            entity_type="payment",
            entity_id=self.id,
            data={
                'payment_number': self.payment_number,
                'loan_id': self.loan_id,
                'customer_id': self.customer_id,
                'amount': str(self.amount.amount),
                'currency': self.currency.code
            }
        )

    def mark_reversed(self, reversed_by: str, reason: str, now: datetime) -> None:
        """Move the payment to ``reversed``; allowed once, from ``completed`` only"""
        if not self.is_reversible:
            raise PaymentNotReversibleError(self.id, self.status.value)
        self.status = PaymentStatus.REVERSED
        self.reversed_at = now
        self.reversed_by = reversed_by
        self.reversal_reason = reason
        self.updated_at = now


class PaymentStore:
    """
    Persists payments and hands out sequential payment numbers
    """

    def __init__(self, storage: StorageInterface, number_prefix: str = "PY"):
        self.storage = storage
        self.number_prefix = number_prefix
        self.table_name = "payments"
        self.sequence_table = "payment_sequences"

    def create(self, payment: Payment) -> Payment:
        self.storage.save(self.table_name, payment.id, self._payment_to_dict(payment))
        return payment

    def update(self, payment: Payment) -> None:
        """Save reversal fields; the payment must already exist"""
        if not self.storage.exists(self.table_name, payment.id):
            raise PaymentNotFoundError(payment.id)
        self.storage.save(self.table_name, payment.id, self._payment_to_dict(payment))

    def get(self, payment_id: str) -> Payment:
        """Get payment by ID"""
        data = self.storage.load(self.table_name, payment_id)
        if not data:
            raise PaymentNotFoundError(payment_id)
        return self._payment_from_dict(data)

    def get_loan_payments(self, loan_id: str) -> List[Payment]:
        """All payments of a loan, oldest first"""
        payments = [self._payment_from_dict(data)
                    for data in self.storage.find(self.table_name, {"loan_id": loan_id})]
        payments.sort(key=lambda p: (p.payment_date, p.payment_number))
        return payments

    def generate_number(self, now: datetime) -> str:
        """
        Next payment number for the year of ``now``, e.g. ``PY-2024-000001``.

        The per-year counter row is locked for update, so numbers handed out
        inside concurrent transactions never collide.
        """
        year = str(now.year)
        data = self.storage.load_for_update(self.sequence_table, year)
        sequence = (data['last_value'] if data else 0) + 1

        self.storage.save(self.sequence_table, year, {
            'id': year,
            'created_at': data['created_at'] if data else now.isoformat(),
            'updated_at': now.isoformat(),
            'last_value': sequence
        })
        return f"{self.number_prefix}-{year}-{sequence:06d}"

    def _payment_to_dict(self, payment: Payment) -> Dict:
        """Convert payment to dictionary"""
        return {
            'id': payment.id,
            'created_at': payment.created_at.isoformat(),
            'updated_at': payment.updated_at.isoformat(),
            'payment_number': payment.payment_number,
            'branch_id': payment.branch_id,
            'loan_id': payment.loan_id,
            'customer_id': payment.customer_id,
            'currency': payment.currency.code,
            'amount': str(payment.amount.amount),
            'principal_amount': str(payment.principal_amount.amount),
            'interest_amount': str(payment.interest_amount.amount),
            'late_fee_amount': str(payment.late_fee_amount.amount),
            'loan_balance_after': str(payment.loan_balance_after.amount),
            'interest_balance_after': str(payment.interest_balance_after.amount),
            'installment_amount_applied': str(payment.installment_amount_applied.amount),
            'payment_method': payment.payment_method.value,
            'payment_date': payment.payment_date.isoformat(),
            'created_by': payment.created_by,
            'status': payment.status.value,
            'reference_number': payment.reference_number,
            'notes': payment.notes,
            'cash_session_id': payment.cash_session_id,
            'reversed_at': payment.reversed_at.isoformat() if payment.reversed_at else None,
            'reversed_by': payment.reversed_by,
            'reversal_reason': payment.reversal_reason
        }

    def _payment_from_dict(self, data: Dict) -> Payment:
        """Convert dictionary to payment"""
        currency = Currency[data['currency']]
        return Payment(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            payment_number=data['payment_number'],
            branch_id=data['branch_id'],
            loan_id=data['loan_id'],
            customer_id=data['customer_id'],
            amount=money_from_record(data, 'amount', currency),
            principal_amount=money_from_record(data, 'principal_amount', currency),
            interest_amount=money_from_record(data, 'interest_amount', currency),
            late_fee_amount=money_from_record(data, 'late_fee_amount', currency),
            loan_balance_after=money_from_record(data, 'loan_balance_after', currency),
            interest_balance_after=money_from_record(data, 'interest_balance_after', currency),
            installment_amount_applied=money_from_record(data, 'installment_amount_applied', currency),
            payment_method=PaymentMethod(data['payment_method']),
            payment_date=datetime.fromisoformat(data['payment_date']),
            created_by=data['created_by'],
            status=PaymentStatus(data['status']),
            reference_number=data.get('reference_number'),
            notes=data.get('notes'),
            cash_session_id=data.get('cash_session_id'),
            reversed_at=datetime.fromisoformat(data['reversed_at']) if data.get('reversed_at') else None,
            reversed_by=data.get('reversed_by'),
            reversal_reason=data.get('reversal_reason')
        )
