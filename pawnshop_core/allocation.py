"""
Allocation Waterfall

Splits a payment across a loan's outstanding components in fixed priority:
late fee first, then interest, then principal. Pure function, no I/O.
"""

from dataclasses import dataclass

from .currency import Money


@dataclass(frozen=True)
class Allocation:
    """How much of a payment went to each loan component"""
    late_fee: Money
    interest: Money
    principal: Money
    unapplied: Money    # Left over after principal; zero for a validated payment

    @property
    def applied(self) -> Money:
        return self.late_fee + self.interest + self.principal


def allocate(payment: Money, late_fee_remaining: Money,
             interest_remaining: Money, principal_remaining: Money) -> Allocation:
    """
    Distribute ``payment`` over the three remaining balances.

    Each split is ``min(what is left of the payment, component)`` so no split
    is ever negative or larger than its component. Callers reject
    overpayment before getting here; any excess is reported in ``unapplied``
    rather than absorbed.

    Raises:
        ValueError: non-positive payment, negative component or mixed currencies
    """
    if not payment.is_positive():
        raise ValueError(f"Payment amount must be positive, got {payment.to_string()}")

    components = (late_fee_remaining, interest_remaining, principal_remaining)
    for component in components:
        if component.currency != payment.currency:
            raise ValueError(
                f"Currency mismatch: payment in {payment.currency.code}, "
                f"balance in {component.currency.code}"
            )
        if component.is_negative():
            raise ValueError(f"Remaining balance cannot be negative: {component.to_string()}")

    remaining = payment
    splits = []
    for component in components:
        applied = remaining.min(component)
        splits.append(applied)
        remaining = remaining - applied

    late_fee, interest, principal = splits
    return Allocation(late_fee=late_fee, interest=interest, principal=principal, unapplied=remaining)
