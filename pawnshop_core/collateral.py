"""
Collateral Signal

After a loan is fully paid its pledged item is released (``available``);
when a reversal re-opens the loan the item goes back to ``collateral``.
The settlement core only ever touches the item's status.
"""

from abc import ABC, abstractmethod
from datetime import datetime, timezone
from enum import Enum

from .storage import StorageInterface


class ItemStatus(Enum):
    """Pledged item states"""
    AVAILABLE = "available"
    COLLATERAL = "collateral"
    FOR_SALE = "for_sale"
    SOLD = "sold"
    CONFISCATED = "confiscated"


class CollateralSignal(ABC):
    """Receives item status changes from the settlement core"""

    @abstractmethod
    def update_status(self, item_id: str, status: ItemStatus) -> None:
        """Set the item's status; raise on failure"""
        pass


class StorageCollateralSignal(CollateralSignal):
    """Writes the item status straight into the ``items`` table"""

    def __init__(self, storage: StorageInterface):
        self.storage = storage
        self.table_name = "items"

    def update_status(self, item_id: str, status: ItemStatus) -> None:
        data = self.storage.load(self.table_name, item_id)
        if not data:
            raise LookupError(f"Item {item_id} not found")
        data['status'] = status.value
        data['updated_at'] = datetime.now(timezone.utc).isoformat()
        self.storage.save(self.table_name, item_id, data)

    def get_status(self, item_id: str) -> ItemStatus:
        data = self.storage.load(self.table_name, item_id)
        if not data:
            raise LookupError(f"Item {item_id} not found")
        return ItemStatus(data['status'])
