"""
Tests for Epoch Validation
"""

import pytest
from settlement_rail.core.epoch import EpochValidator
from settlement_rail.core.errors import InvalidEpoch, InvalidUsageAmount


class TestEpochValidator:
    """Epochs must be non-zero and strictly above the high-water mark."""

    def test_first_epoch_accepted(self):
        EpochValidator().validate("ds-1", 1, 0)

    def test_gap_accepted(self):
        """Skipping epochs is allowed; only ordering matters."""
        EpochValidator().validate("ds-1", 10, 3)

    def test_zero_epoch_rejected(self):
        with pytest.raises(InvalidEpoch):
            EpochValidator().validate("ds-1", 0, 0)

    def test_duplicate_epoch_rejected(self):
        with pytest.raises(InvalidEpoch):
            EpochValidator().validate("ds-1", 5, 5)

    def test_out_of_order_epoch_rejected(self):
        with pytest.raises(InvalidEpoch) as exc_info:
            EpochValidator().validate("ds-1", 4, 5)

        assert exc_info.value.max_reported_epoch == 5

    @pytest.mark.parametrize("epoch", [-1, "3", 2.0, None, True])
    def test_non_integer_epoch_rejected(self, epoch):
        with pytest.raises(InvalidEpoch):
            EpochValidator().validate("ds-1", epoch, 0)


class TestUnitsAndShape:
    """Unit counts and batch column shapes."""

    def test_units_returned_when_valid(self):
        assert EpochValidator().validate_units("ds-1", 0) == 0
        assert EpochValidator().validate_units("ds-1", 42) == 42

    @pytest.mark.parametrize("units", [-1, 1.5, "10", None, False])
    def test_invalid_units_rejected(self, units):
        with pytest.raises(InvalidUsageAmount):
            EpochValidator().validate_units("ds-1", units)

    def test_matching_columns_return_size(self):
        size = EpochValidator().validate_batch_shape([1, 2], [3, 4], [5, 6])

        assert size == 2

    def test_mismatched_columns_rejected(self):
        with pytest.raises(InvalidUsageAmount):
            EpochValidator().validate_batch_shape(["a", "b"], [1, 2], [1], [1, 2])

    def test_empty_batch_has_size_zero(self):
        assert EpochValidator().validate_batch_shape([], [], []) == 0
