"""Ledger-versus-state reconciliation."""

from datetime import date
from decimal import Decimal
from uuid import uuid4

import pytest

from tests.conftest import MAIN_PHARMACY_ID, PARACETAMOL
from stock_kernel.domain.batch import BatchKey
from stock_kernel.domain.movement import MovementType, ReferenceType
from stock_kernel.models.stock_batch import StockBatchModel
from stock_kernel.models.stock_movement import StockMovementModel
from stock_kernel.services.movement_ledger import MovementLedger
from stock_kernel.services.stock_record_store import StockRecordStore

KEY = BatchKey(MAIN_PHARMACY_ID, PARACETAMOL, "B1")


@pytest.fixture
def reconcile(stock_engine, org_admin_ctx):
    def _reconcile():
        return stock_engine.reconcile(org_admin_ctx, MAIN_PHARMACY_ID)

    return _reconcile


@pytest.fixture
def stocked(receive, stock_engine, org_admin_ctx):
    """B1 received 100, dispensed 30; B2 received 10."""
    batch = receive("B1", "100", date(2026, 1, 1)).batch
    receive("B2", "10", date(2026, 6, 1))
    stock_engine.dispense(org_admin_ctx, MAIN_PHARMACY_ID, PARACETAMOL, "30")
    return batch


def _corrupt_batch(session, batch_id, **values):
    model = session.get(StockBatchModel, batch_id)
    for name, value in values.items():
        setattr(model, name, value)
    session.flush()


def _append_rogue_movement(session, quantity: Decimal):
    """Insert a movement behind the engine's back (e.g. a bad migration)."""
    ledger = MovementLedger(session)
    head = ledger.latest_for(KEY)
    now = head.created_at
    session.add(StockMovementModel(
        id=uuid4(),
        movement_type=MovementType.ADJUSTMENT.value,
        pharmacy_id=KEY.pharmacy_id,
        drug_id=KEY.drug_id,
        batch_number=KEY.batch_number,
        sequence=head.sequence + 1,
        quantity=quantity,
        allocated_delta=Decimal("0"),
        balance_after=Decimal("0"),
        valuation_rate=Decimal("0"),
        stock_value=head.stock_value,
        stock_value_difference=Decimal("0"),
        posting_datetime=now,
        fiscal_year="2024-25",
        fiscal_period="Q4",
        created_at=now,
    ))
    session.flush()


class TestCleanLedger:

    def test_no_discrepancies_after_normal_operations(self, stocked, reconcile):
        report = reconcile()

        assert report.is_clean
        assert report.batches_checked == 2
        assert report.movements == ()

    def test_empty_pharmacy(self, reconcile):
        report = reconcile()
        assert report.is_clean
        assert report.batches_checked == 0


class TestDriftRepair:

    def test_quantity_drift_rewritten_from_ledger(self, stocked, reconcile, session, captured_logs):
        _corrupt_batch(session, stocked.id, quantity=Decimal("95"))

        report = reconcile()

        assert len(report.discrepancies) == 1
        d = report.discrepancies[0]
        assert (d.batch_number, d.ledger_quantity, d.state_quantity) == ("B1", Decimal("70"), Decimal("95"))
        assert d.repaired_quantity == Decimal("70")
        assert d.difference == Decimal("-25")
        assert StockRecordStore(session).find(KEY).quantity == Decimal("70")

        m = report.movements[0]
        assert m.movement_type is MovementType.ADJUSTMENT
        assert m.reference_type == ReferenceType.RECONCILIATION
        assert m.quantity == Decimal("0")
        assert m.balance_after == Decimal("70")
        assert Decimal(m.metadata["old_quantity"]) == Decimal("95")
        assert Decimal(m.metadata["new_quantity"]) == Decimal("70")
        assert m.metadata["reconciliation_type"] == "automatic"

        assert any(
            r["message"] == "reconciliation_discrepancy_repaired" for r in captured_logs()
        )

    def test_allocation_drift_repaired(self, stocked, reconcile, session):
        _corrupt_batch(session, stocked.id, allocated_quantity=Decimal("3"))

        report = reconcile()

        d = report.discrepancies[0]
        assert (d.ledger_allocated, d.state_allocated, d.repaired_allocated) == (
            Decimal("0"), Decimal("3"), Decimal("0"),
        )
        assert StockRecordStore(session).find(KEY).allocated_quantity == Decimal("0")

    def test_repair_is_idempotent(self, stocked, reconcile, session):
        _corrupt_batch(session, stocked.id, quantity=Decimal("95"))
        reconcile()

        assert reconcile().is_clean

    def test_negative_ledger_clamped_and_documented(self, stocked, reconcile, session):
        _append_rogue_movement(session, Decimal("-120"))

        report = reconcile()

        d = report.discrepancies[0]
        assert d.ledger_quantity == Decimal("-50")
        assert d.repaired_quantity == Decimal("0")
        # the corrective movement brings the ledger sum back to the row
        assert report.movements[0].quantity == Decimal("50")
        history = MovementLedger(session).history_for(KEY)
        assert sum(m.quantity for m in history) == Decimal("0")
        assert StockRecordStore(session).find(KEY).quantity == Decimal("0")
        assert reconcile().is_clean

    def test_untouched_batches_not_rewritten(self, stocked, reconcile, session):
        _corrupt_batch(session, stocked.id, quantity=Decimal("95"))

        report = reconcile()

        assert [d.batch_number for d in report.discrepancies] == ["B1"]
        b2 = MovementLedger(session).history_for(BatchKey(MAIN_PHARMACY_ID, PARACETAMOL, "B2"))
        assert len(b2) == 1
