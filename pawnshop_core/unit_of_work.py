"""
Unit of Work

The transaction-scoped set of stores a settlement or reversal writes
through, plus the bounded retry loop used when the per-loan lock or version
check is lost.
"""

import time
from typing import Callable, Optional, TypeVar

from .storage import StorageInterface
from .loans import LoanStore
from .payments import PaymentStore
from .outbox import Outbox
from .errors import ConcurrencyConflictError
from .logging_config import get_logger, log_action

T = TypeVar("T")


class UnitOfWork:
    """
    Stores sharing one storage backend, so everything written through them
    inside ``run`` commits or rolls back together.
    """

    def __init__(self, storage: StorageInterface, max_retries: int = 3,
                 retry_backoff: float = 0.01, payment_number_prefix: str = "PY"):
        self.storage = storage
        self.loans = LoanStore(storage)
        self.payments = PaymentStore(storage, number_prefix=payment_number_prefix)
        self.outbox = Outbox(storage)
        self.max_retries = max_retries
        self.retry_backoff = retry_backoff
        self.logger = get_logger("pawnshop.unit_of_work")

    def run(self, operation: Callable[[], T], action: str, resource: Optional[str] = None,
            user_id: Optional[str] = None) -> T:
        """
        Execute ``operation`` inside one storage transaction.

        On ConcurrencyConflictError the transaction is rolled back and the
        whole operation re-run, at most ``max_retries`` more times. Every
        other error rolls back and propagates unchanged.
        """
        attempt = 0
        while True:
            attempt += 1
            try:
                with self.storage.atomic():
                    return operation()
            except ConcurrencyConflictError as e:
                if attempt > self.max_retries:
                    log_action(
                        self.logger, "error", f"Giving up after {attempt} attempts: {e}",
                        user_id=user_id, action=action, resource=resource,
                        extra={"attempts": attempt}
                    )
                    raise
                log_action(
                    self.logger, "warning", f"Concurrency conflict, retrying: {e}",
                    user_id=user_id, action=action, resource=resource,
                    extra={"attempt": attempt, "max_retries": self.max_retries}
                )
                time.sleep(self.retry_backoff * attempt)
