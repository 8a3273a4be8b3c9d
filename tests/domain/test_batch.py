"""Derived batch state and quantity bounds."""

from datetime import date
from decimal import Decimal
from uuid import uuid4

import pytest

from stock_kernel.domain.batch import (
    BatchKey,
    StockBatch,
    check_quantities,
    derive_batch_state,
    is_expired,
    is_expiring_soon,
)

TODAY = date(2025, 1, 15)


def _batch(expiry: date, quantity="10", allocated="4") -> StockBatch:
    return StockBatch(
        id=uuid4(),
        pharmacy_id=uuid4(),
        drug_id=5,
        batch_number="LOT-1",
        quantity=Decimal(quantity),
        allocated_quantity=Decimal(allocated),
        minimum_stock_level=Decimal("2"),
        expiry_date=expiry,
        cost_price=Decimal("1.00"),
        selling_price=Decimal("1.50"),
    )


class TestExpiryFlags:

    def test_expiry_day_itself_is_not_expired(self):
        assert not is_expired(TODAY, TODAY)

    def test_day_after_expiry_is_expired(self):
        assert is_expired(date(2025, 1, 14), TODAY)

    @pytest.mark.parametrize(
        "expiry, expected",
        [
            (date(2025, 1, 14), False),  # already expired
            (TODAY, True),
            (date(2025, 4, 15), True),   # exactly 90 days
            (date(2025, 4, 16), False),  # 91 days
        ],
    )
    def test_expiring_soon_window_is_inclusive(self, expiry, expected):
        assert is_expiring_soon(expiry, TODAY, 90) is expected


class TestDeriveBatchState:

    def test_available_quantity_excludes_reservation(self):
        state = derive_batch_state(_batch(date(2026, 1, 1)), TODAY)
        assert state.available_quantity == Decimal("6")

    def test_days_until_expiry_negative_when_expired(self):
        state = derive_batch_state(_batch(date(2025, 1, 10)), TODAY)
        assert state.is_expired
        assert not state.is_expiring_soon
        assert state.days_until_expiry == -5

    def test_custom_horizon(self):
        batch = _batch(date(2025, 2, 1))
        assert derive_batch_state(batch, TODAY, horizon_days=30).is_expiring_soon
        assert not derive_batch_state(batch, TODAY, horizon_days=10).is_expiring_soon


class TestQuantityBounds:

    @pytest.mark.parametrize(
        "quantity, allocated, ok",
        [
            ("10", "0", True),
            ("10", "10", True),
            ("0", "0", True),
            ("10", "11", False),
            ("10", "-1", False),
        ],
    )
    def test_check_quantities(self, quantity, allocated, ok):
        assert check_quantities(Decimal(quantity), Decimal(allocated)) is ok


class TestBatchKey:

    def test_key_string(self):
        pharmacy = uuid4()
        assert str(BatchKey(pharmacy, 3, "X")) == f"{pharmacy}/3/X"

    def test_batch_exposes_key(self):
        batch = _batch(date(2026, 1, 1))
        assert batch.key == BatchKey(batch.pharmacy_id, 5, "LOT-1")
