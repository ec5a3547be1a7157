"""
Transactional Outbox

Domain events are saved as outbox rows in the same storage transaction as
the loan and payment writes, so an event exists if and only if the
settlement committed. The relay then publishes them to the event dispatcher.

Each message is published inside its own transaction together with the
status change to ``dispatched``; handlers that write through the same
storage (the customer stats projector) are therefore applied exactly once.
A failing handler leaves the message pending with its attempt counter
bumped, and after ``max_attempts`` the message is parked as ``failed``.
"""

from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Dict, List, Optional
from enum import Enum
import uuid

from .events import EventDispatcher, EventPayload
from .storage import StorageInterface, StorageRecord
from .logging_config import get_logger, log_action


class OutboxStatus(Enum):
    PENDING = "pending"
    DISPATCHED = "dispatched"
    FAILED = "failed"


@dataclass
class OutboxMessage(StorageRecord):
    """An event waiting to be published"""
    event: EventPayload
    status: OutboxStatus = OutboxStatus.PENDING
    attempts: int = 0
    last_error: Optional[str] = None
    dispatched_at: Optional[datetime] = None


class Outbox:
    """Writes events into the outbox table of the current transaction"""

    table_name = "outbox"

    def __init__(self, storage: StorageInterface):
        self.storage = storage

    def enqueue(self, event: EventPayload) -> OutboxMessage:
        now = datetime.now(timezone.utc)
        message = OutboxMessage(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            event=event
        )
        self.save(message)
        return message

    def get(self, message_id: str) -> Optional[OutboxMessage]:
        data = self.storage.load(self.table_name, message_id)
        return self._message_from_dict(data) if data else None

    def get_for_update(self, message_id: str) -> Optional[OutboxMessage]:
        data = self.storage.load_for_update(self.table_name, message_id)
        return self._message_from_dict(data) if data else None

    def pending(self, limit: Optional[int] = None) -> List[OutboxMessage]:
        """Pending messages, oldest first"""
        messages = [self._message_from_dict(data)
                    for data in self.storage.find(self.table_name, {"status": OutboxStatus.PENDING.value})]
        messages.sort(key=lambda m: m.created_at)
        return messages[:limit] if limit else messages

    def save(self, message: OutboxMessage) -> None:
        self.storage.save(self.table_name, message.id, self._message_to_dict(message))

    def _message_to_dict(self, message: OutboxMessage) -> Dict:
        return {
            'id': message.id,
            'created_at': message.created_at.isoformat(),
            'updated_at': message.updated_at.isoformat(),
            'event': message.event.to_dict(),
            'status': message.status.value,
            'attempts': message.attempts,
            'last_error': message.last_error,
            'dispatched_at': message.dispatched_at.isoformat() if message.dispatched_at else None
        }

    def _message_from_dict(self, data: Dict) -> OutboxMessage:
        return OutboxMessage(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            event=EventPayload.from_dict(data['event']),
            status=OutboxStatus(data['status']),
            attempts=data.get('attempts', 0),
            last_error=data.get('last_error'),
            dispatched_at=datetime.fromisoformat(data['dispatched_at']) if data.get('dispatched_at') else None
        )


class OutboxRelay:
    """
    Publishes outbox messages to an EventDispatcher
    """

    def __init__(self, storage: StorageInterface, dispatcher: EventDispatcher,
                 max_attempts: int = 5, batch_size: int = 100):
        self.storage = storage
        self.outbox = Outbox(storage)
        self.dispatcher = dispatcher
        self.max_attempts = max_attempts
        self.batch_size = batch_size
        self.logger = get_logger("pawnshop.outbox")

    def dispatch(self, message_id: str) -> bool:
        """
        Publish one message.

        Returns True if this call delivered it, False if it was already
        handled elsewhere or a handler failed (the failure is logged and the
        message stays pending until ``max_attempts``).
        """
        try:
            with self.storage.atomic():
                message = self.outbox.get_for_update(message_id)
                if message is None or message.status != OutboxStatus.PENDING:
                    return False

                self.dispatcher.publish(message.event, propagate=True)

                now = datetime.now(timezone.utc)
                message.status = OutboxStatus.DISPATCHED
                message.attempts += 1
                message.dispatched_at = now
                message.updated_at = now
                self.outbox.save(message)
        except Exception as e:
            self._record_failure(message_id, e)
            return False

        log_action(
            self.logger, "debug", "Outbox message dispatched",
            action="dispatch_event",
            resource=f"outbox:{message_id}",
            extra={"event_type": message.event.event_type.value, "entity_id": message.event.entity_id}
        )
        return True

    def process_pending(self) -> int:
        """Dispatch up to ``batch_size`` pending messages; returns how many were delivered"""
        delivered = 0
        for message in self.outbox.pending(limit=self.batch_size):
            if self.dispatch(message.id):
                delivered += 1
        return delivered

    def _record_failure(self, message_id: str, error: Exception) -> None:
        with self.storage.atomic():
            message = self.outbox.get_for_update(message_id)
            if message is None:
                return
            message.attempts += 1
            message.last_error = str(error)
            message.updated_at = datetime.now(timezone.utc)
            if message.attempts >= self.max_attempts:
                message.status = OutboxStatus.FAILED
            self.outbox.save(message)

        log_action(
            self.logger, "error" if message.status == OutboxStatus.FAILED else "warning",
            f"Outbox handler failed: {error}",
            action="dispatch_event",
            resource=f"outbox:{message_id}",
            extra={
                "event_type": message.event.event_type.value,
                "attempts": message.attempts,
                "status": message.status.value
            },
            exc_info=True
        )
