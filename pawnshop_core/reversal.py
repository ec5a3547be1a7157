"""
Reversal Engine

Undoes a completed payment: the recorded waterfall splits go back onto the
loan, the installment ledger gives back what it absorbed (newest
installment first) and a paid loan is re-opened. Runs as one unit of work,
like settlement, with the same post-commit side effects in mirror image.
"""

from datetime import datetime
from typing import Callable, Optional

from .payments import Payment
from .installments import reverse_distribution
from .collateral import CollateralSignal, ItemStatus
from .events import DomainEvent
from .outbox import OutboxRelay
from .unit_of_work import UnitOfWork
from .schemas import ReverseRequest
from .settlement import PostCommitEffectsMixin, utc_now
from .errors import PawnshopError, PaymentNotReversibleError
from .logging_config import get_logger, log_action


class ReversalEngine(PostCommitEffectsMixin):
    """
    Reverses settled payments
    """

    def __init__(self, uow: UnitOfWork, collateral: Optional[CollateralSignal] = None,
                 relay: Optional[OutboxRelay] = None, clock: Optional[Callable[[], datetime]] = None):
        self.uow = uow
        self.collateral = collateral
        self.relay = relay
        self.clock = clock or utc_now
        self.logger = get_logger("pawnshop.reversal")

    def reverse(self, request: ReverseRequest) -> Payment:
        """
        Reverse a completed payment and return it in its ``reversed`` state.

        Raises:
            PaymentNotFoundError: payment does not exist
            PaymentNotReversibleError: payment is not ``completed``
            ValueError: blank reason
            ConcurrencyConflictError: lock/version race lost on every retry
        """
        resource = f"payment:{request.payment_id}"
        try:
            if not request.reason or not request.reason.strip():
                raise ValueError("Reversal reason is required")

            payment, loan, reactivated, message_ids = self.uow.run(
                lambda: self._reverse(request),
                action="reverse_payment",
                resource=resource,
                user_id=request.reversed_by
            )
        except (PawnshopError, ValueError) as e:
            log_action(
                self.logger, "warning", f"Reversal rejected: {e}",
                user_id=request.reversed_by,
                action="reverse_payment",
                resource=resource,
                extra={"error": type(e).__name__}
            )
            raise

        log_action(
            self.logger, "info", "Payment reversed",
            user_id=request.reversed_by,
            action="reverse_payment",
            resource=resource,
            extra={
                "payment_number": payment.payment_number,
                "loan_id": loan.id,
                "amount": str(payment.amount.amount),
                "reason": payment.reversal_reason,
                "loan_reactivated": reactivated,
                "remaining_balance": str(loan.remaining_balance.amount)
            }
        )

        self._relay(message_ids)
        if reactivated:
            self._signal_collateral(loan, ItemStatus.COLLATERAL)

        return payment

    def _reverse(self, request: ReverseRequest):
        now = self.clock()
        loans, payments = self.uow.loans, self.uow.payments

        payment = payments.get(request.payment_id)
        loan = loans.get_for_update(payment.loan_id)
        # Re-read under the loan lock so a concurrent reversal is visible
        payment = payments.get(request.payment_id)
        if not payment.is_reversible:
            raise PaymentNotReversibleError(payment.id, payment.status.value)

        reactivated = loan.restore_allocation(
            late_fee=payment.late_fee_amount,
            interest=payment.interest_amount,
            principal=payment.principal_amount,
            amount=payment.amount,
            now=now,
            updated_by=request.reversed_by
        )

        if loan.is_installment_plan and payment.installment_amount_applied.is_positive():
            touched, _ = reverse_distribution(loans.get_installments(loan.id),
                                              payment.installment_amount_applied, now)
            for installment in touched:
                loans.update_installment(installment)

        payment.mark_reversed(request.reversed_by, request.reason.strip(), now)
        payments.update(payment)
        loans.update(loan)

        messages = [self.uow.outbox.enqueue(payment.to_event(DomainEvent.PAYMENT_REVERSED))]
        if reactivated:
            messages.append(self.uow.outbox.enqueue(loan.to_event(DomainEvent.LOAN_REACTIVATED, payment.id)))

        return payment, loan, reactivated, [message.id for message in messages]
