"""
Test suite for the allocation waterfall

Late fee first, then interest, then principal; never a negative split.
"""

import pytest
from decimal import Decimal

from pawnshop_core.currency import Money, Currency
from pawnshop_core.allocation import allocate, Allocation


def gtq(amount) -> Money:
    return Money(Decimal(str(amount)), Currency.GTQ)


class TestWaterfallOrder:
    """Test fixed priority allocation"""

    def test_payment_smaller_than_late_fee(self):
        """A payment below the late fee goes entirely to the late fee"""
        result = allocate(gtq(5), gtq(10), gtq(50), gtq(500))

        assert result.late_fee == gtq(5)
        assert result.interest == gtq(0)
        assert result.principal == gtq(0)
        assert result.unapplied == gtq(0)

    def test_covers_fee_and_interest_then_principal(self):
        result = allocate(gtq(100), gtq(10), gtq(50), gtq(500))

        assert (result.late_fee, result.interest, result.principal) == (gtq(10), gtq(50), gtq(40))
        assert result.applied == gtq(100)

    def test_exact_payoff(self):
        result = allocate(gtq(560), gtq(10), gtq(50), gtq(500))

        assert (result.late_fee, result.interest, result.principal) == (gtq(10), gtq(50), gtq(500))
        assert result.unapplied.is_zero()

    def test_principal_only_when_fee_and_interest_clear(self):
        result = allocate(gtq(460), gtq(0), gtq(0), gtq(460))

        assert (result.late_fee, result.interest, result.principal) == (gtq(0), gtq(0), gtq(460))

    def test_excess_is_reported_not_absorbed(self):
        result = allocate(gtq(600), gtq(10), gtq(50), gtq(500))

        assert result.applied == gtq(560)
        assert result.unapplied == gtq(40)

    def test_cents_are_preserved(self):
        result = allocate(gtq('10.01'), gtq('0.02'), gtq('3.33'), gtq('100.00'))

        assert result.late_fee == gtq('0.02')
        assert result.interest == gtq('3.33')
        assert result.principal == gtq('6.66')
        assert result.applied == gtq('10.01')

    def test_splits_are_never_negative(self):
        for payment in ('0.01', '1', '9.99', '10', '59.99', '60', '559.99', '560'):
            result = allocate(gtq(payment), gtq(10), gtq(50), gtq(500))
            for split in (result.late_fee, result.interest, result.principal, result.unapplied):
                assert not split.is_negative()
            assert result.applied + result.unapplied == gtq(payment)


class TestAllocationValidation:
    """Test rejected inputs"""

    @pytest.mark.parametrize("amount", ['0', '-5'])
    def test_non_positive_payment_rejected(self, amount):
        with pytest.raises(ValueError, match="positive"):
            allocate(gtq(amount), gtq(10), gtq(50), gtq(500))

    def test_negative_component_rejected(self):
        with pytest.raises(ValueError, match="negative"):
            allocate(gtq(10), gtq(-1), gtq(50), gtq(500))

    def test_currency_mismatch_rejected(self):
        usd = Money(Decimal('10'), Currency.USD)
        with pytest.raises(ValueError, match="Currency mismatch"):
            allocate(usd, gtq(10), gtq(50), gtq(500))

    def test_allocation_is_immutable(self):
        result = allocate(gtq(1), gtq(1), gtq(1), gtq(1))
        assert isinstance(result, Allocation)
        with pytest.raises(Exception):
            result.late_fee = gtq(0)
