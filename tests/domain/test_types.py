"""Decimal coercion at the API boundary."""

from decimal import Decimal

import pytest

from stock_kernel.db.types import non_negative_decimal, positive_decimal, to_decimal
from stock_kernel.exceptions import StockValidationError


class TestToDecimal:

    @pytest.mark.parametrize("value", [5, "5", "5.000", Decimal("5")])
    def test_accepts_int_str_decimal(self, value):
        assert to_decimal(value, "quantity") == Decimal("5")

    def test_float_rejected(self):
        with pytest.raises(StockValidationError) as exc_info:
            to_decimal(0.1, "quantity")
        assert exc_info.value.field == "quantity"

    def test_bool_rejected(self):
        with pytest.raises(StockValidationError):
            to_decimal(True, "quantity")

    @pytest.mark.parametrize("value", ["0.0000000001", Decimal("1E-10"), "-2.1234567891"])
    def test_finer_than_ledger_scale_rejected(self, value):
        with pytest.raises(StockValidationError, match="decimal places"):
            to_decimal(value, "quantity")

    def test_trailing_zeros_beyond_scale_accepted(self):
        assert to_decimal("1.5000000000", "quantity") == Decimal("1.5")
        assert to_decimal("0.000000001", "quantity") == Decimal("1E-9")

    def test_out_of_range_rejected(self):
        with pytest.raises(StockValidationError, match="out of range"):
            to_decimal("1E+30", "quantity")

    @pytest.mark.parametrize("value", ["abc", "NaN", "Infinity", None, [1]])
    def test_garbage_rejected(self, value):
        with pytest.raises(StockValidationError):
            to_decimal(value, "quantity")


class TestRanges:

    def test_positive(self):
        assert positive_decimal("0.5", "q") == Decimal("0.5")
        with pytest.raises(StockValidationError):
            positive_decimal("0", "q")

    def test_non_negative(self):
        assert non_negative_decimal("0", "price") == Decimal("0")
        with pytest.raises(StockValidationError):
            non_negative_decimal("-0.01", "price")
