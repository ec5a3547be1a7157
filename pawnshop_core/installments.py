"""
Installment Ledger Engine

Spreads a settled payment over an installment-plan loan's schedule and pulls
it back on reversal. Distribution is oldest-unpaid-first; reversal walks the
schedule newest-first so the two are mirror images.

Both functions mutate the installments they are given and return only the
ones they touched; persisting them is the caller's job (inside the same unit
of work as the loan and payment).
"""

from datetime import datetime
from typing import List, Tuple

from .currency import Money
from .loans import LoanInstallment


def distribute_payment(installments: List[LoanInstallment], amount: Money,
                       now: datetime) -> Tuple[List[LoanInstallment], Money]:
    """
    Apply ``amount`` to unpaid installments in ascending installment_number.

    Each installment absorbs at most its own remaining balance. Whatever is
    left once every installment is paid is not distributed.

    Returns:
        (touched installments, amount distributed)
    """
    remaining = amount
    touched = []

    for installment in sorted(installments, key=lambda x: x.installment_number):
        if not remaining.is_positive():
            break
        if installment.is_paid:
            continue

        applied = remaining.min(installment.remaining_amount)
        if not applied.is_positive():
            continue

        installment.amount_paid = installment.amount_paid + applied
        installment.updated_at = now
        if installment.amount_paid == installment.total_amount:
            installment.is_paid = True
            installment.paid_date = now

        remaining = remaining - applied
        touched.append(installment)

    return touched, amount - remaining


def reverse_distribution(installments: List[LoanInstallment], amount: Money,
                         now: datetime) -> Tuple[List[LoanInstallment], Money]:
    """
    Pull ``amount`` back out of installments in descending installment_number.

    Each installment gives back at most what has been paid into it; an
    installment that drops below its total is unmarked as paid.

    Returns:
        (touched installments, amount pulled back)
    """
    remaining = amount
    touched = []

    for installment in sorted(installments, key=lambda x: x.installment_number, reverse=True):
        if not remaining.is_positive():
            break

        pulled = remaining.min(installment.amount_paid)
        if not pulled.is_positive():
            continue

        installment.amount_paid = installment.amount_paid - pulled
        installment.updated_at = now
        if installment.amount_paid < installment.total_amount:
            installment.is_paid = False
            installment.paid_date = None

        remaining = remaining - pulled
        touched.append(installment)

    return touched, amount - remaining
