"""
Customer Module

The slice of the customer aggregate the settlement core maintains: the
denormalised ``total_paid`` running total. It is a reporting cache kept
eventually consistent by projecting ``payment.settled`` and
``payment.reversed`` events from the outbox.
"""

from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Dict, Optional

from .currency import Money, Currency, money_from_record
from .storage import StorageInterface, StorageRecord
from .events import DomainEvent, EventDispatcher, EventPayload
from .errors import CustomerNotFoundError
from .logging_config import get_logger, log_action


@dataclass
class Customer(StorageRecord):
    """Pawnshop customer"""
    first_name: str
    last_name: str
    branch_id: Optional[str] = None
    identification_number: Optional[str] = None   # National ID (DPI)
    phone: Optional[str] = None
    total_paid: Money = None
    currency: Currency = Currency.GTQ

    def __post_init__(self):
        if not self.first_name or not self.last_name:
            raise ValueError("Customer first and last name are required")
        if self.total_paid is None:
            self.total_paid = Money.zero(self.currency)
        if self.total_paid.currency != self.currency:
            raise ValueError("Customer total_paid must use the customer currency")
        if self.total_paid.is_negative():
            raise ValueError("Customer total_paid cannot be negative")


class CustomerStore:
    """
    Persists customers
    """

    def __init__(self, storage: StorageInterface):
        self.storage = storage
        self.table_name = "customers"

    def create(self, customer: Customer) -> Customer:
        self.storage.save(self.table_name, customer.id, self._customer_to_dict(customer))
        return customer

    def get(self, customer_id: str) -> Customer:
        """Get customer by ID"""
        data = self.storage.load(self.table_name, customer_id)
        if not data:
            raise CustomerNotFoundError(customer_id)
        return self._customer_from_dict(data)

    def get_for_update(self, customer_id: str) -> Customer:
        """Get customer by ID and hold its row lock until the transaction ends"""
        data = self.storage.load_for_update(self.table_name, customer_id)
        if not data:
            raise CustomerNotFoundError(customer_id)
        return self._customer_from_dict(data)

    def update_credit_info(self, customer_id: str, total_paid: Money) -> Customer:
        """Overwrite the running total; the customer row is locked while doing so"""
        data = self.storage.load_for_update(self.table_name, customer_id)
        if not data:
            raise CustomerNotFoundError(customer_id)
        customer = self._customer_from_dict(data)
        if total_paid.is_negative():
            raise ValueError("Customer total_paid cannot be negative")

        customer.total_paid = total_paid
        customer.updated_at = datetime.now(timezone.utc)
        self.storage.save(self.table_name, customer.id, self._customer_to_dict(customer))
        return customer

    def _customer_to_dict(self, customer: Customer) -> Dict:
        return {
            'id': customer.id,
            'created_at': customer.created_at.isoformat(),
            'updated_at': customer.updated_at.isoformat(),
            'first_name': customer.first_name,
            'last_name': customer.last_name,
            'branch_id': customer.branch_id,
            'identification_number': customer.identification_number,
            'phone': customer.phone,
            'currency': customer.currency.code,
            'total_paid': str(customer.total_paid.amount)
        }

    def _customer_from_dict(self, data: Dict) -> Customer:
        currency = Currency[data['currency']]
        return Customer(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            first_name=data['first_name'],
            last_name=data['last_name'],
            branch_id=data.get('branch_id'),
            identification_number=data.get('identification_number'),
            phone=data.get('phone'),
            total_paid=money_from_record(data, 'total_paid', currency),
            currency=currency
        )


class CustomerStatsProjector:
    """
    Keeps Customer.total_paid in step with settled and reversed payments
    """

    def __init__(self, customers: CustomerStore):
        self.customers = customers
        self.logger = get_logger("pawnshop.customers")

    def register(self, dispatcher: EventDispatcher) -> None:
        dispatcher.subscribe(DomainEvent.PAYMENT_SETTLED, self.on_payment_settled)
        dispatcher.subscribe(DomainEvent.PAYMENT_REVERSED, self.on_payment_reversed)

    def on_payment_settled(self, event: EventPayload) -> None:
        customer_id, amount = self._unpack(event)
        customer = self.customers.get_for_update(customer_id)
        self._apply(customer.id, customer.total_paid + amount, event)

    def on_payment_reversed(self, event: EventPayload) -> None:
        customer_id, amount = self._unpack(event)
        customer = self.customers.get_for_update(customer_id)
        new_total = customer.total_paid - amount
        if new_total.is_negative():
            # Clamp rather than go negative
            new_total = Money.zero(new_total.currency)
        self._apply(customer.id, new_total, event)

    def _apply(self, customer_id: str, total_paid: Money, event: EventPayload) -> None:
        self.customers.update_credit_info(customer_id, total_paid)
        log_action(
            self.logger, "debug", "Customer total paid updated",
            action=event.event_type.value,
            resource=f"customer:{customer_id}",
            extra={"payment_id": event.entity_id, "total_paid": str(total_paid.amount)}
        )

    @staticmethod
    def _unpack(event: EventPayload):
        data = event.data
        amount = Money(Decimal(data['amount']), Currency[data['currency']])
        return data['customer_id'], amount
