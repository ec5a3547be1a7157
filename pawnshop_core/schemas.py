"""
Pydantic schemas for settlement requests and API responses
"""

from decimal import Decimal
from typing import List, Optional
from pydantic import BaseModel, Field, field_validator

from .currency import Money
from .payments import Payment, PaymentMethod
from .loans import Loan


class MoneyModel(BaseModel):
    amount: str = Field(..., description="Decimal amount as string")
    currency: str = Field(..., description="Currency code (GTQ, USD, etc.)")

    @classmethod
    def from_money(cls, money: Money) -> 'MoneyModel':
        return cls(amount=str(money.amount), currency=money.currency.code)


def _strip_required(value: str, field_name: str) -> str:
    value = value.strip()
    if not value:
        raise ValueError(f"{field_name} is required")
    return value


# Settlement schemas
class SettleRequest(BaseModel):
    """A payment against a loan; the amount is in the loan's currency"""
    loan_id: str
    amount: Decimal = Field(..., gt=0, max_digits=18, description="Payment amount, must be positive")
    payment_method: PaymentMethod
    branch_id: str
    created_by: str
    currency: Optional[str] = Field(None, description="Must match the loan currency when given")
    reference_number: Optional[str] = None
    notes: Optional[str] = None
    cash_session_id: Optional[str] = None


class ReverseRequest(BaseModel):
    payment_id: str
    reason: str = Field(..., min_length=1)
    reversed_by: str

    @field_validator("reason")
    @classmethod
    def reason_not_blank(cls, value: str) -> str:
        return _strip_required(value, "Reversal reason")


class ReversePaymentBody(BaseModel):
    """HTTP body for POST /payments/{payment_id}/reverse"""
    reason: str = Field(..., min_length=1)
    reversed_by: str

    @field_validator("reason")
    @classmethod
    def reason_not_blank(cls, value: str) -> str:
        return _strip_required(value, "Reversal reason")

    def to_request(self, payment_id: str) -> ReverseRequest:
        return ReverseRequest(payment_id=payment_id, reason=self.reason, reversed_by=self.reversed_by)


# Response schemas
class PaymentResponse(BaseModel):
    id: str
    payment_number: str
    loan_id: str
    customer_id: str
    branch_id: str
    amount: MoneyModel
    late_fee_amount: MoneyModel
    interest_amount: MoneyModel
    principal_amount: MoneyModel
    loan_balance_after: MoneyModel
    interest_balance_after: MoneyModel
    installment_amount_applied: MoneyModel
    payment_method: str
    status: str
    payment_date: str
    created_by: str
    reference_number: Optional[str] = None
    notes: Optional[str] = None
    cash_session_id: Optional[str] = None
    reversed_at: Optional[str] = None
    reversed_by: Optional[str] = None
    reversal_reason: Optional[str] = None

    @classmethod
    def from_payment(cls, payment: Payment) -> 'PaymentResponse':
        return cls(
            id=payment.id,
            payment_number=payment.payment_number,
            loan_id=payment.loan_id,
            customer_id=payment.customer_id,
            branch_id=payment.branch_id,
            amount=MoneyModel.from_money(payment.amount),
            late_fee_amount=MoneyModel.from_money(payment.late_fee_amount),
            interest_amount=MoneyModel.from_money(payment.interest_amount),
            principal_amount=MoneyModel.from_money(payment.principal_amount),
            loan_balance_after=MoneyModel.from_money(payment.loan_balance_after),
            interest_balance_after=MoneyModel.from_money(payment.interest_balance_after),
            installment_amount_applied=MoneyModel.from_money(payment.installment_amount_applied),
            payment_method=payment.payment_method.value,
            status=payment.status.value,
            payment_date=payment.payment_date.isoformat(),
            created_by=payment.created_by,
            reference_number=payment.reference_number,
            notes=payment.notes,
            cash_session_id=payment.cash_session_id,
            reversed_at=payment.reversed_at.isoformat() if payment.reversed_at else None,
            reversed_by=payment.reversed_by,
            reversal_reason=payment.reversal_reason
        )


class LoanBalanceResponse(BaseModel):
    id: str
    loan_number: str
    status: str
    late_fee_remaining: MoneyModel
    interest_remaining: MoneyModel
    principal_remaining: MoneyModel
    remaining_balance: MoneyModel
    amount_paid: MoneyModel
    paid_date: Optional[str] = None

    @classmethod
    def from_loan(cls, loan: Loan) -> 'LoanBalanceResponse':
        return cls(
            id=loan.id,
            loan_number=loan.loan_number,
            status=loan.status.value,
            late_fee_remaining=MoneyModel.from_money(loan.late_fee_remaining),
            interest_remaining=MoneyModel.from_money(loan.interest_remaining),
            principal_remaining=MoneyModel.from_money(loan.principal_remaining),
            remaining_balance=MoneyModel.from_money(loan.remaining_balance),
            amount_paid=MoneyModel.from_money(loan.amount_paid),
            paid_date=loan.paid_date.isoformat() if loan.paid_date else None
        )


class SettlementResponse(BaseModel):
    payment: PaymentResponse
    loan: LoanBalanceResponse
    is_fully_paid: bool
    remaining_balance: MoneyModel


class PaymentListResponse(BaseModel):
    loan_id: str
    payments: List[PaymentResponse]
