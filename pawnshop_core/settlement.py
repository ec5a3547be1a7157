"""
Settlement Engine

Applies a payment to a pawn loan. Within one unit of work it locks the loan,
runs the allocation waterfall, updates the loan's balances and status,
spreads the payment over the installment ledger, records the payment and
writes the ``payment.settled`` event to the outbox. After commit the outbox
is relayed (customer stats) and a fully paid loan releases its collateral.

The engine holds no state of its own between calls.
"""

import uuid
from dataclasses import dataclass
from decimal import InvalidOperation
from datetime import datetime, timezone
from typing import Callable, List, Optional

from .currency import Money, Currency
from .loans import Loan
from .payments import Payment, PaymentStatus
from .allocation import allocate
from .installments import distribute_payment
from .collateral import CollateralSignal, ItemStatus
from .events import DomainEvent
from .outbox import OutboxRelay
from .unit_of_work import UnitOfWork
from .schemas import SettleRequest
from .errors import PawnshopError, LoanNotPayableError, OverpaymentError
from .logging_config import get_logger, log_action


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class SettlementResult:
    """Committed outcome of a settlement"""
    payment: Payment
    loan: Loan
    is_fully_paid: bool
    remaining_balance: Money


@dataclass
class PayoffQuote:
    """Amount needed to close a loan in one payment, broken down"""
    loan: Loan
    late_fee: Money
    interest: Money
    principal: Money
    total: Money


class PostCommitEffectsMixin:
    """
    Side effects that run once the financial record is committed.

    Neither may undo a settlement or reversal: failures are logged and
    absorbed. Undelivered outbox messages stay pending for the next
    ``OutboxRelay.process_pending`` run.
    """

    relay: Optional[OutboxRelay]
    collateral: Optional[CollateralSignal]

    def _relay(self, message_ids: List[str]) -> None:
        if self.relay is None:
            return
        for message_id in message_ids:
            try:
                self.relay.dispatch(message_id)
            except Exception as e:
                log_action(
                    self.logger, "error", f"Outbox relay failed, message left pending: {e}",
                    action="relay_outbox",
                    resource=f"outbox:{message_id}",
                    exc_info=True
                )

    def _signal_collateral(self, loan: Loan, status: ItemStatus) -> None:
        if self.collateral is None:
            return
        try:
            self.collateral.update_status(loan.item_id, status)
        except Exception as e:
            log_action(
                self.logger, "error", f"Collateral status update failed: {e}",
                action="update_item_status",
                resource=f"item:{loan.item_id}",
                extra={"loan_id": loan.id, "status": status.value},
                exc_info=True
            )


class SettlementEngine(PostCommitEffectsMixin):
    """
    Settles payments against loans
    """

    def __init__(self, uow: UnitOfWork, collateral: Optional[CollateralSignal] = None,
                 relay: Optional[OutboxRelay] = None, clock: Optional[Callable[[], datetime]] = None):
        self.uow = uow
        self.collateral = collateral
        self.relay = relay
        self.clock = clock or utc_now
        self.logger = get_logger("pawnshop.settlement")

    def settle(self, request: SettleRequest) -> SettlementResult:
        """
        Apply a payment to a loan.

        Raises:
            LoanNotFoundError: loan does not exist
            LoanNotPayableError: loan is paid or confiscated
            OverpaymentError: amount exceeds late fee + interest + principal
            ConcurrencyConflictError: lock/version race lost on every retry
            PersistenceError: the store failed; nothing was written
        """
        resource = f"loan:{request.loan_id}"
        try:
            result, message_ids = self.uow.run(
                lambda: self._settle(request),
                action="settle_payment",
                resource=resource,
                user_id=request.created_by
            )
        except (PawnshopError, ValueError) as e:
            log_action(
                self.logger, "warning", f"Settlement rejected: {e}",
                user_id=request.created_by,
                action="settle_payment",
                resource=resource,
                extra={"amount": str(request.amount), "error": type(e).__name__}
            )
            raise

        log_action(
            self.logger, "info", "Payment settled",
            user_id=request.created_by,
            action="settle_payment",
            resource=resource,
            extra={
                "payment_id": result.payment.id,
                "payment_number": result.payment.payment_number,
                "amount": str(result.payment.amount.amount),
                "late_fee": str(result.payment.late_fee_amount.amount),
                "interest": str(result.payment.interest_amount.amount),
                "principal": str(result.payment.principal_amount.amount),
                "remaining_balance": str(result.remaining_balance.amount),
                "fully_paid": result.is_fully_paid
            }
        )

        self._relay(message_ids)
        if result.is_fully_paid:
            self._signal_collateral(result.loan, ItemStatus.AVAILABLE)

        return result

    def _settle(self, request: SettleRequest):
        now = self.clock()
        loans, payments = self.uow.loans, self.uow.payments

        loan = loans.get_for_update(request.loan_id)
        if not loan.accepts_payments:
            raise LoanNotPayableError(loan.id, loan.status.value)

        amount = self._to_money(request, loan.currency)
        total_owed = loan.remaining_balance
        if amount > total_owed:
            raise OverpaymentError(amount, total_owed)

        allocation = allocate(amount, loan.late_fee_remaining, loan.interest_remaining,
                              loan.principal_remaining)
        fully_paid = loan.apply_allocation(allocation, amount, now, updated_by=request.created_by)

        installment_applied = Money.zero(loan.currency)
        if loan.is_installment_plan:
            touched, installment_applied = distribute_payment(loans.get_installments(loan.id), amount, now)
            for installment in touched:
                loans.update_installment(installment)

        loans.update(loan)

        # The per-year sequence row stays locked until commit and every
        # settlement takes it, so it is numbered last to keep that window short
        payment = Payment(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            payment_number=payments.generate_number(now),
            branch_id=request.branch_id,
            loan_id=loan.id,
            customer_id=loan.customer_id,
            amount=amount,
            principal_amount=allocation.principal,
            interest_amount=allocation.interest,
            late_fee_amount=allocation.late_fee,
            loan_balance_after=loan.principal_remaining,
            interest_balance_after=loan.interest_remaining,
            payment_method=request.payment_method,
            payment_date=now,
            created_by=request.created_by,
            status=PaymentStatus.COMPLETED,
            reference_number=request.reference_number,
            notes=request.notes,
            cash_session_id=request.cash_session_id,
            installment_amount_applied=installment_applied
        )
        payments.create(payment)

        messages = [self.uow.outbox.enqueue(payment.to_event(DomainEvent.PAYMENT_SETTLED))]
        if fully_paid:
            messages.append(self.uow.outbox.enqueue(loan.to_event(DomainEvent.LOAN_PAID, payment.id)))

        result = SettlementResult(
            payment=payment,
            loan=loan,
            is_fully_paid=fully_paid,
            remaining_balance=loan.remaining_balance
        )
        return result, [message.id for message in messages]

    @staticmethod
    def _to_money(request: SettleRequest, currency: Currency) -> Money:
        if request.currency and request.currency.upper() != currency.code:
            raise ValueError(
                f"Payment currency {request.currency} does not match loan currency {currency.code}"
            )
        try:
            amount = Money(request.amount, currency)
        except InvalidOperation:
            raise ValueError(f"Payment amount {request.amount} is out of range")
        if not amount.is_positive():
            raise ValueError(f"Payment amount must be positive, got {amount.to_string()}")
        return amount

    # Read side

    def calculate_payoff(self, loan_id: str) -> PayoffQuote:
        """Amount that closes the loan in a single payment"""
        loan = self.uow.loans.get(loan_id)
        return PayoffQuote(
            loan=loan,
            late_fee=loan.late_fee_remaining,
            interest=loan.interest_remaining,
            principal=loan.principal_remaining,
            total=loan.remaining_balance
        )

    def calculate_minimum_payment(self, loan_id: str) -> Money:
        """
        Minimum payment currently due.

        Loans without a minimum owe their full balance. Otherwise it is the
        minimum plus any outstanding late fee, but never more than the
        balance itself.
        """
        loan = self.uow.loans.get(loan_id)
        balance = loan.remaining_balance
        if not loan.requires_minimum_payment or loan.minimum_payment_amount is None:
            return balance
        if balance < loan.minimum_payment_amount:
            return balance
        return (loan.minimum_payment_amount + loan.late_fee_remaining).min(balance)

    def get_payment(self, payment_id: str) -> Payment:
        return self.uow.payments.get(payment_id)

    def list_loan_payments(self, loan_id: str) -> List[Payment]:
        """Payments of a loan in chronological order; the loan must exist"""
        self.uow.loans.get(loan_id)
        return self.uow.payments.get_loan_payments(loan_id)
