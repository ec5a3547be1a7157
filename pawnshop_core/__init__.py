"""
Pawnshop Loan Settlement Core

Settles and reverses payments on collateral-backed pawn loans, keeping loan
balances, the installment ledger and customer statistics consistent.
"""

__version__ = "1.0.0"
