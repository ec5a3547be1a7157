"""
Test suite for currency module

Tests Money rounding, arithmetic and comparisons. All monetary calculations
must use Decimal precision.
"""

import pytest
from decimal import Decimal

from pawnshop_core.currency import Money, Currency, money_from_record


class TestMoney:
    """Test Money class operations"""

    def test_money_creation(self):
        """Test Money object creation and rounding"""
        money = Money(Decimal('100.50'), Currency.GTQ)
        assert money.amount == Decimal('100.50')
        assert money.currency == Currency.GTQ

        # Rounded half up to currency precision
        assert Money(Decimal('100.555'), Currency.GTQ).amount == Decimal('100.56')
        assert Money(Decimal('100.5'), Currency.JPY).amount == Decimal('101')

    def test_of_accepts_strings_and_ints(self):
        assert Money.of("12.3", Currency.USD).amount == Decimal('12.30')
        assert Money.of(7, Currency.GTQ) == Money(Decimal('7.00'), Currency.GTQ)

    def test_arithmetic(self):
        a = Money(Decimal('100.50'), Currency.GTQ)
        b = Money(Decimal('50.25'), Currency.GTQ)

        assert (a + b).amount == Decimal('150.75')
        assert (a - b).amount == Decimal('50.25')
        assert (-b).amount == Decimal('-50.25')

    def test_currency_mismatch_rejected(self):
        gtq = Money(Decimal('10'), Currency.GTQ)
        usd = Money(Decimal('10'), Currency.USD)

        with pytest.raises(ValueError, match="Cannot add"):
            gtq + usd
        with pytest.raises(ValueError, match="Cannot compare"):
            gtq < usd

    def test_equality_is_currency_aware(self):
        assert Money(Decimal('10'), Currency.GTQ) != Money(Decimal('10'), Currency.USD)
        assert Money(Decimal('10'), Currency.GTQ) == Money(Decimal('10.00'), Currency.GTQ)
        assert len({Money(Decimal('1'), Currency.GTQ), Money(Decimal('1.00'), Currency.GTQ)}) == 1

    def test_predicates_and_min(self):
        zero = Money.zero(Currency.GTQ)
        ten = Money(Decimal('10'), Currency.GTQ)

        assert zero.is_zero()
        assert ten.is_positive()
        assert (-ten).is_negative()
        assert ten.min(zero) == zero
        assert zero.min(ten) == zero

    def test_to_string(self):
        assert Money(Decimal('1234.5'), Currency.GTQ).to_string() == "GTQ 1,234.50"
        assert Money(Decimal('1234'), Currency.JPY).to_string() == "JPY 1,234"

    def test_money_from_record(self):
        money = money_from_record({'amount': '99.99'}, 'amount', Currency.MXN)
        assert money == Money(Decimal('99.99'), Currency.MXN)
