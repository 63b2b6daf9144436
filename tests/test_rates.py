"""
Tests for the Rate Table

Rates price usage at report time and must always be positive.
"""

import pytest
from settlement_rail.core.errors import AmountOverflow, InvalidRate, RatesLocked
from settlement_rail.core.rates import (
    MAX_AMOUNT,
    BillingCategory,
    RateTable,
    checked_add,
    checked_mul,
)


class TestRateTableConstruction:
    """Test rate validation at construction time."""

    def test_rates_are_stored_per_category(self):
        table = RateTable(100, 200)

        assert table.rate(BillingCategory.PRIMARY) == 100
        assert table.rate(BillingCategory.SECONDARY) == 200

    @pytest.mark.parametrize("primary,secondary", [
        (0, 200),
        (100, 0),
        (-1, 200),
        (100, 1.5),
        (True, 200),
    ])
    def test_invalid_rates_rejected(self, primary, secondary):
        """Zero, negative and non-integer rates are rejected."""
        with pytest.raises(InvalidRate):
            RateTable(primary, secondary)

    def test_convert_multiplies_units_by_rate(self):
        table = RateTable(100, 200)

        assert table.convert(BillingCategory.PRIMARY, 1000) == 100000
        assert table.convert(BillingCategory.SECONDARY, 500) == 100000


class TestRateUpdates:
    """Test administrator rate changes."""

    def test_update_returns_old_and_new(self):
        table = RateTable(100, 200)

        change = table.update(BillingCategory.PRIMARY, 150)

        assert change.old_rate == 100
        assert change.new_rate == 150
        assert table.primary_rate == 150
        assert table.secondary_rate == 200

    def test_update_recorded_in_history(self):
        table = RateTable(100, 200)
        table.update(BillingCategory.SECONDARY, 250)

        history = table.get_history()

        assert len(history) == 1
        assert history[0].category == BillingCategory.SECONDARY

    def test_zero_update_rejected(self):
        table = RateTable(100, 200)

        with pytest.raises(InvalidRate):
            table.update(BillingCategory.PRIMARY, 0)

        assert table.primary_rate == 100

    def test_fixed_table_cannot_change(self):
        table = RateTable.fixed(100, 200)

        with pytest.raises(RatesLocked):
            table.update(BillingCategory.PRIMARY, 150)


class TestCheckedArithmetic:
    """Overflow aborts instead of wrapping."""

    def test_mul_within_bound(self):
        assert checked_mul(2 ** 128, 2 ** 127) == 2 ** 255

    def test_mul_overflow(self):
        with pytest.raises(AmountOverflow):
            checked_mul(2 ** 200, 2 ** 100)

    def test_add_overflow(self):
        with pytest.raises(AmountOverflow):
            checked_add(MAX_AMOUNT, 1)

    def test_convert_overflow(self):
        table = RateTable(2 ** 200, 1)

        with pytest.raises(AmountOverflow):
            table.convert(BillingCategory.PRIMARY, 2 ** 60)
