"""
Error Taxonomy

Every failure the settlement core reports to its callers. Validation and
state-machine errors propagate unmodified; the HTTP adapter maps them to
status codes.
"""

from typing import Optional

from .currency import Money


class PawnshopError(Exception):
    """Base class for settlement core errors"""


class NotFoundError(PawnshopError):
    """A referenced aggregate does not exist"""

    entity_type = "entity"

    def __init__(self, entity_id: str):
        self.entity_id = entity_id
        super().__init__(f"{self.entity_type.capitalize()} {entity_id} not found")


class LoanNotFoundError(NotFoundError):
    entity_type = "loan"


class PaymentNotFoundError(NotFoundError):
    entity_type = "payment"


class CustomerNotFoundError(NotFoundError):
    entity_type = "customer"


class LoanNotPayableError(PawnshopError):
    """Loan is in a status that cannot receive payments (paid, confiscated)"""

    def __init__(self, loan_id: str, status: str):
        self.loan_id = loan_id
        self.status = status
        if status == "paid":
            reason = "is already fully paid"
        else:
            reason = f"has been {status}"
        super().__init__(f"Loan {loan_id} {reason}")


class PaymentNotReversibleError(PawnshopError):
    """Only completed payments can be reversed"""

    def __init__(self, payment_id: str, status: str):
        self.payment_id = payment_id
        self.status = status
        super().__init__(f"Payment {payment_id} cannot be reversed (status: {status})")


class OverpaymentError(PawnshopError):
    """Payment amount exceeds the total owed on the loan"""

    def __init__(self, amount: Money, total_owed: Money):
        self.amount = amount
        self.total_owed = total_owed
        super().__init__(
            f"Payment amount ({amount.to_string()}) exceeds total owed ({total_owed.to_string()})"
        )


class ConcurrencyConflictError(PawnshopError):
    """Lost the per-loan lock or version race; retry the whole operation"""

    def __init__(self, message: str, entity_id: Optional[str] = None):
        self.entity_id = entity_id
        super().__init__(message)


class PersistenceError(PawnshopError):
    """Store unreachable or a write failed; the transaction was rolled back"""
