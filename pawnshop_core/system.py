"""
System Wiring

Builds the settlement core from configuration: storage backend, stores,
engines, event dispatcher and outbox relay.
"""

from datetime import datetime
from typing import Callable, Optional

from .config import PawnshopConfig, get_config
from .storage import StorageInterface, create_storage
from .unit_of_work import UnitOfWork
from .customers import CustomerStore, CustomerStatsProjector
from .collateral import CollateralSignal, StorageCollateralSignal
from .events import EventDispatcher
from .outbox import OutboxRelay
from .settlement import SettlementEngine
from .reversal import ReversalEngine
from .logging_config import get_logger


class PawnshopSystem:
    """Settlement core with all components initialized"""

    def __init__(self, config: Optional[PawnshopConfig] = None,
                 storage: Optional[StorageInterface] = None,
                 collateral: Optional[CollateralSignal] = None,
                 clock: Optional[Callable[[], datetime]] = None):
        self.config = config or get_config()
        self.logger = get_logger("pawnshop.system")

        # Initialize storage
        self.storage = storage or create_storage(
            self.config.database_url,
            lock_timeout=self.config.lock_timeout_seconds
        )

        self.uow = UnitOfWork(
            self.storage,
            max_retries=self.config.settlement_max_retries,
            payment_number_prefix=self.config.payment_number_prefix
        )
        self.customers = CustomerStore(self.storage)
        self.collateral = collateral or StorageCollateralSignal(self.storage)

        # Events flow: engines -> outbox -> relay -> dispatcher -> projections
        self.dispatcher = EventDispatcher()
        self.customer_stats = CustomerStatsProjector(self.customers)
        self.customer_stats.register(self.dispatcher)
        self.relay = OutboxRelay(
            self.storage, self.dispatcher,
            max_attempts=self.config.outbox_max_attempts,
            batch_size=self.config.outbox_batch_size
        )

        inline_relay = self.relay if self.config.outbox_dispatch_inline else None
        self.settlement = SettlementEngine(self.uow, collateral=self.collateral,
                                           relay=inline_relay, clock=clock)
        self.reversal = ReversalEngine(self.uow, collateral=self.collateral,
                                       relay=inline_relay, clock=clock)

    @property
    def loans(self):
        return self.uow.loans

    @property
    def payments(self):
        return self.uow.payments

    def process_outbox(self) -> int:
        """Relay pending outbox messages; returns how many were delivered"""
        delivered = self.relay.process_pending()
        if delivered:
            self.logger.info(f"Relayed {delivered} outbox messages")
        return delivered

    def close(self) -> None:
        self.storage.close()
