"""
Shared test values: a fixed clock instant and a GTQ money shorthand
"""

from decimal import Decimal
from datetime import datetime, timezone

from pawnshop_core.currency import Money, Currency


NOW = datetime(2024, 6, 15, 12, 0, tzinfo=timezone.utc)


def gtq(amount) -> Money:
    return Money(Decimal(str(amount)), Currency.GTQ)
