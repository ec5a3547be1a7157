"""
Test suite for payments module
"""

import pytest
import uuid
from datetime import datetime, timezone

from pawnshop_core.payments import Payment, PaymentStore, PaymentMethod, PaymentStatus
from pawnshop_core.events import DomainEvent
from pawnshop_core.errors import PaymentNotFoundError, PaymentNotReversibleError

from helpers import NOW, gtq


def make_payment(payment_number="PY-2024-000001", loan_id="loan_1", payment_date=NOW, **overrides):
    fields = dict(
        id=str(uuid.uuid4()),
        created_at=payment_date,
        updated_at=payment_date,
        payment_number=payment_number,
        branch_id="branch_1",
        loan_id=loan_id,
        customer_id="customer_1",
        amount=gtq(100),
        principal_amount=gtq(40),
        interest_amount=gtq(50),
        late_fee_amount=gtq(10),
        loan_balance_after=gtq(460),
        interest_balance_after=gtq(0),
        payment_method=PaymentMethod.CASH,
        payment_date=payment_date,
        created_by="cashier_1"
    )
    fields.update(overrides)
    return Payment(**fields)


class TestPayment:
    """Test payment record rules"""

    def test_defaults(self):
        payment = make_payment()

        assert payment.status == PaymentStatus.COMPLETED
        assert payment.is_reversible
        assert payment.installment_amount_applied == gtq(0)

    def test_amount_must_be_positive(self):
        with pytest.raises(ValueError, match="positive"):
            make_payment(amount=gtq(0))

    def test_negative_split_rejected(self):
        with pytest.raises(ValueError, match="negative"):
            make_payment(principal_amount=gtq(-1))

    def test_mark_reversed_once(self):
        payment = make_payment()
        later = datetime(2024, 6, 16, tzinfo=timezone.utc)

        payment.mark_reversed("manager_1", "Wrong loan", later)

        assert payment.status == PaymentStatus.REVERSED
        assert payment.reversed_at == later
        assert payment.reversed_by == "manager_1"
        assert payment.reversal_reason == "Wrong loan"
        with pytest.raises(PaymentNotReversibleError, match="status: reversed"):
            payment.mark_reversed("manager_1", "Again", later)

    @pytest.mark.parametrize("status", [PaymentStatus.PENDING, PaymentStatus.FAILED])
    def test_only_completed_is_reversible(self, status):
        payment = make_payment(status=status)
        with pytest.raises(PaymentNotReversibleError):
            payment.mark_reversed("manager_1", "reason", NOW)

    def test_to_event(self):
        event = make_payment().to_event(DomainEvent.PAYMENT_SETTLED)

        assert event.event_type == DomainEvent.PAYMENT_SETTLED
        assert event.data['customer_id'] == "customer_1"
        assert event.data['amount'] == "100.00"
        assert event.data['currency'] == "GTQ"


class TestPaymentStore:
    """Test payment persistence and numbering"""

    def test_create_and_get(self, storage):
        store = PaymentStore(storage)
        payment = store.create(make_payment(notes="first visit", cash_session_id="cs_1"))

        loaded = store.get(payment.id)

        assert loaded.amount == gtq(100)
        assert loaded.late_fee_amount == gtq(10)
        assert loaded.payment_method == PaymentMethod.CASH
        assert loaded.notes == "first visit"
        assert loaded.cash_session_id == "cs_1"

    def test_get_missing(self, storage):
        with pytest.raises(PaymentNotFoundError):
            PaymentStore(storage).get("missing")

    def test_update_requires_existing(self, storage):
        with pytest.raises(PaymentNotFoundError):
            PaymentStore(storage).update(make_payment())

    def test_update_persists_reversal_fields(self, storage):
        store = PaymentStore(storage)
        payment = store.create(make_payment())
        payment.mark_reversed("manager_1", "Duplicate", NOW)

        store.update(payment)

        loaded = store.get(payment.id)
        assert loaded.status == PaymentStatus.REVERSED
        assert loaded.reversal_reason == "Duplicate"
        assert loaded.reversed_at == NOW

    def test_loan_payments_chronological(self, storage):
        store = PaymentStore(storage)
        late = make_payment("PY-2024-000002", payment_date=datetime(2024, 6, 20, tzinfo=timezone.utc))
        early = make_payment("PY-2024-000001", payment_date=datetime(2024, 6, 1, tzinfo=timezone.utc))
        store.create(late)
        store.create(early)
        store.create(make_payment("PY-2024-000003", loan_id="other_loan"))

        payments = store.get_loan_payments("loan_1")

        assert [p.payment_number for p in payments] == ["PY-2024-000001", "PY-2024-000002"]

    def test_generate_number_sequential_per_year(self, storage):
        store = PaymentStore(storage)

        assert store.generate_number(NOW) == "PY-2024-000001"
        assert store.generate_number(NOW) == "PY-2024-000002"
        assert store.generate_number(datetime(2025, 1, 1, tzinfo=timezone.utc)) == "PY-2025-000001"
        assert store.generate_number(NOW) == "PY-2024-000003"

    def test_generate_number_custom_prefix(self, storage):
        assert PaymentStore(storage, number_prefix="PAG").generate_number(NOW) == "PAG-2024-000001"

    def test_numbers_rolled_back_with_transaction(self, storage):
        store = PaymentStore(storage)

        with pytest.raises(RuntimeError):
            with storage.atomic():
                store.generate_number(NOW)
                raise RuntimeError("boom")

        assert store.generate_number(NOW) == "PY-2024-000001"
