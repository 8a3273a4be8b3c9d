"""Inter-pharmacy transfers."""

from datetime import date
from decimal import Decimal

import pytest

from tests.conftest import (
    BRANCH_PHARMACY_ID,
    CLOSED_PHARMACY_ID,
    FOREIGN_PHARMACY_ID,
    MAIN_PHARMACY_ID,
    PARACETAMOL,
)
from stock_kernel.domain.batch import BatchKey
from stock_kernel.domain.movement import MovementType, ReferenceType
from stock_kernel.exceptions import (
    AccessDeniedError,
    InsufficientStockError,
    PharmacyInactiveError,
    StockBatchNotFoundError,
    StockValidationError,
)
from stock_kernel.services.movement_ledger import MovementLedger
from stock_kernel.services.stock_record_store import StockRecordStore


@pytest.fixture
def transfer(stock_engine, org_admin_ctx):
    def _transfer(quantity, to_pharmacy_id=BRANCH_PHARMACY_ID, batch_number="B1", ctx=None, **kwargs):
        return stock_engine.transfer(
            ctx or org_admin_ctx, MAIN_PHARMACY_ID, to_pharmacy_id,
            PARACETAMOL, batch_number, quantity, **kwargs,
        )

    return _transfer


@pytest.fixture
def stocked(receive):
    return receive(
        "B1", "100", date(2026, 1, 1),
        selling_price="8.00", supplier_name="Acme Pharma", supplier_invoice_number="INV-1",
    ).batch


class TestTransfer:

    def test_first_transfer_creates_destination_batch(self, stocked, transfer):
        result = transfer("40", notes="weekly restock")

        assert result.destination_created is True
        assert result.source_batch.quantity == Decimal("60")
        dest = result.destination_batch
        assert dest.pharmacy_id == BRANCH_PHARMACY_ID
        assert dest.batch_number == "B1"
        assert dest.quantity == Decimal("40")
        assert dest.expiry_date == date(2026, 1, 1)
        assert dest.cost_price == Decimal("5.00")
        assert dest.selling_price == Decimal("8.00")
        assert dest.supplier_name == "Acme Pharma"
        assert dest.minimum_stock_level == Decimal("0")
        assert dest.notes == f"Transferred from pharmacy {MAIN_PHARMACY_ID}"

    def test_legs_reference_each_other(self, stocked, transfer):
        result = transfer("40")
        out, inbound = result.outbound, result.inbound

        assert out.movement_type is MovementType.TRANSFER_OUT
        assert inbound.movement_type is MovementType.TRANSFER_IN
        assert out.quantity == Decimal("-40")
        assert inbound.quantity == Decimal("40")
        assert out.related_movement_id == inbound.id
        assert inbound.related_movement_id == out.id
        assert out.related_pharmacy_id == BRANCH_PHARMACY_ID
        assert inbound.related_pharmacy_id == MAIN_PHARMACY_ID
        assert out.reference_type == ReferenceType.INTER_PHARMACY_TRANSFER
        assert out.reference_number == f"TO-{BRANCH_PHARMACY_ID}"
        assert inbound.reference_number == f"FROM-{MAIN_PHARMACY_ID}"
        assert out.metadata == {"to_pharmacy_id": str(BRANCH_PHARMACY_ID)}

    def test_both_legs_valued_at_source_cost_on_own_chains(self, stocked, transfer):
        result = transfer("40")

        assert result.outbound.stock_value == Decimal("300")
        assert result.inbound.sequence == 1
        assert result.inbound.stock_value == Decimal("200")
        assert result.inbound.valuation_rate == Decimal("5.00")

    def test_second_transfer_adds_to_destination(self, stocked, transfer):
        transfer("40")
        result = transfer("10")

        assert result.destination_created is False
        assert result.destination_batch.quantity == Decimal("50")
        assert result.inbound.sequence == 2
        assert result.source_batch.quantity == Decimal("50")

    def test_ledgers_match_state_at_both_ends(self, stocked, transfer, session):
        transfer("40")
        transfer("15")

        store, ledger = StockRecordStore(session), MovementLedger(session)
        for pharmacy_id in (MAIN_PHARMACY_ID, BRANCH_PHARMACY_ID):
            key = BatchKey(pharmacy_id, PARACETAMOL, "B1")
            assert sum(m.quantity for m in ledger.history_for(key)) == store.find(key).quantity

    def test_only_unreserved_units_move(self, stocked, transfer, stock_engine, org_admin_ctx):
        stock_engine.allocate(org_admin_ctx, MAIN_PHARMACY_ID, PARACETAMOL, "70", "order", "O-1")
        with pytest.raises(InsufficientStockError) as exc_info:
            transfer("31")
        assert exc_info.value.available == Decimal("30")


class TestTransferRejections:

    def test_same_pharmacy(self, stocked, transfer):
        with pytest.raises(StockValidationError):
            transfer("1", to_pharmacy_id=MAIN_PHARMACY_ID)

    def test_insufficient_stock_writes_nothing(self, stocked, transfer, session):
        with pytest.raises(InsufficientStockError):
            transfer("101")

        store = StockRecordStore(session)
        assert store.find(BatchKey(MAIN_PHARMACY_ID, PARACETAMOL, "B1")).quantity == Decimal("100")
        assert store.find_optional(BatchKey(BRANCH_PHARMACY_ID, PARACETAMOL, "B1")) is None

    def test_missing_source_batch(self, stocked, transfer):
        with pytest.raises(StockBatchNotFoundError):
            transfer("1", batch_number="B404")

    def test_destination_in_other_organization(self, stocked, transfer):
        with pytest.raises(AccessDeniedError):
            transfer("1", to_pharmacy_id=FOREIGN_PHARMACY_ID)

    def test_inactive_destination(self, stocked, transfer):
        with pytest.raises(PharmacyInactiveError):
            transfer("1", to_pharmacy_id=CLOSED_PHARMACY_ID)

    def test_user_needs_access_to_both_ends(self, stocked, transfer, pharmacist_ctx):
        with pytest.raises(AccessDeniedError) as exc_info:
            transfer("1", ctx=pharmacist_ctx)
        assert exc_info.value.pharmacy_id == str(BRANCH_PHARMACY_ID)
