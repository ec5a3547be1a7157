"""
Shared fixtures: in-memory storage, a fixed clock and loan/customer factories
"""

import uuid
import pytest
from datetime import date, timedelta

from pawnshop_core.storage import InMemoryStorage
from pawnshop_core.config import PawnshopConfig
from pawnshop_core.loans import Loan, LoanInstallment, LoanStore, LoanStatus, PaymentPlanType
from pawnshop_core.customers import Customer, CustomerStore
from pawnshop_core.system import PawnshopSystem

from helpers import NOW, gtq


@pytest.fixture
def storage():
    return InMemoryStorage(lock_timeout=2.0)


@pytest.fixture
def test_config():
    return PawnshopConfig(
        database_url="memory://",
        settlement_max_retries=3,
        outbox_dispatch_inline=True,
        outbox_max_attempts=3
    )


@pytest.fixture
def system(storage, test_config):
    return PawnshopSystem(config=test_config, storage=storage, clock=lambda: NOW)


@pytest.fixture
def make_customer(storage):
    def factory(total_paid="0.00") -> Customer:
        customer = Customer(
            id=str(uuid.uuid4()),
            created_at=NOW,
            updated_at=NOW,
            first_name="Ana",
            last_name="Lopez",
            branch_id="branch_1",
            total_paid=gtq(total_paid)
        )
        return CustomerStore(storage).create(customer)
    return factory


@pytest.fixture
def make_loan(storage, make_customer):
    """Create a loan (with its customer, pledged item and optional installment schedule)"""
    def factory(late_fee="10.00", interest="50.00", principal="500.00",
                status=LoanStatus.ACTIVE, installments=None, customer_id=None,
                due_date=date(2024, 7, 15), grace_period_days=5,
                requires_minimum_payment=False, minimum_payment_amount=None) -> Loan:
        customer_id = customer_id or make_customer().id
        item_id = str(uuid.uuid4())
        storage.save("items", item_id, {
            'id': item_id,
            'created_at': NOW.isoformat(),
            'updated_at': NOW.isoformat(),
            'description': "Gold ring 14k",
            'status': "collateral"
        })

        plan = PaymentPlanType.INSTALLMENTS if installments else PaymentPlanType.SINGLE
        if requires_minimum_payment:
            plan = PaymentPlanType.MINIMUM_PAYMENT

        loan = Loan(
            id=str(uuid.uuid4()),
            created_at=NOW,
            updated_at=NOW,
            loan_number=f"LN-{uuid.uuid4().hex[:8].upper()}",
            branch_id="branch_1",
            customer_id=customer_id,
            item_id=item_id,
            loan_amount=gtq(principal),
            principal_remaining=gtq(principal),
            interest_remaining=gtq(interest),
            late_fee_remaining=gtq(late_fee),
            due_date=due_date,
            status=status,
            grace_period_days=grace_period_days,
            payment_plan_type=plan,
            requires_minimum_payment=requires_minimum_payment,
            minimum_payment_amount=gtq(minimum_payment_amount) if minimum_payment_amount else None
        )
        store = LoanStore(storage)
        store.create(loan)

        if installments:
            schedule = []
            for number, total in enumerate(installments, start=1):
                schedule.append(LoanInstallment(
                    id=str(uuid.uuid4()),
                    created_at=NOW,
                    updated_at=NOW,
                    loan_id=loan.id,
                    installment_number=number,
                    due_date=due_date + timedelta(days=30 * (number - 1)),
                    principal_amount=gtq(total),
                    interest_amount=gtq(0),
                    total_amount=gtq(total)
                ))
            store.create_installments(schedule)

        return loan
    return factory
