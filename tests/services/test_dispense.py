"""FEFO dispensing through the operations engine."""

from datetime import date
from decimal import Decimal

import pytest

from tests.conftest import AMOXICILLIN, MAIN_PHARMACY_ID, PARACETAMOL
from stock_kernel.domain.batch import BatchKey
from stock_kernel.domain.movement import MovementType, ReferenceType
from stock_kernel.exceptions import InsufficientStockError, NoAvailableStockError
from stock_kernel.models.stock_batch import StockBatchModel
from stock_kernel.services.movement_ledger import MovementLedger
from stock_kernel.services.stock_record_store import StockRecordStore


def _key(batch_number: str, drug_id: int = PARACETAMOL) -> BatchKey:
    return BatchKey(MAIN_PHARMACY_ID, drug_id, batch_number)


@pytest.fixture
def dispense(stock_engine, org_admin_ctx):
    def _dispense(quantity, drug_id=PARACETAMOL, **kwargs):
        return stock_engine.dispense(org_admin_ctx, MAIN_PHARMACY_ID, drug_id, quantity, **kwargs)

    return _dispense


class TestSimpleDispense:

    def test_single_batch(self, receive, dispense):
        receive("B1", "100", date(2026, 1, 1))

        result = dispense("30")

        assert result.remaining_stock == Decimal("70")
        assert len(result.movements) == 1
        sale = result.movements[0]
        assert sale.movement_type is MovementType.SALE
        assert sale.quantity == Decimal("-30")
        assert sale.balance_after == Decimal("70")
        assert sale.stock_value_difference == Decimal("-150")
        assert sale.stock_value == Decimal("350")
        assert sale.sequence == 2
        assert sale.reference_type == ReferenceType.MANUAL_DISPENSE
        assert result.batches[0].quantity == Decimal("70")

    def test_reference_fields_recorded(self, receive, dispense):
        receive("B1", "10", date(2026, 1, 1))
        sale = dispense("1", reference_type="sale", reference_number="S-1001",
                        reference_id="42").movements[0]
        assert (sale.reference_type, sale.reference_number, sale.reference_id) == (
            "sale", "S-1001", "42",
        )

    def test_dispensing_everything_leaves_zero_row(self, receive, dispense, session):
        receive("B1", "10", date(2026, 1, 1))
        dispense("10")

        batch = StockRecordStore(session).find(_key("B1"))
        assert batch.quantity == Decimal("0")


class TestFefoAcrossBatches:

    def test_earliest_expiry_first(self, receive, dispense, session):
        receive("B2", "20", date(2025, 12, 1))
        receive("B1", "5", date(2025, 6, 1))

        result = dispense("8")

        assert [(m.batch_number, m.quantity) for m in result.movements] == [
            ("B1", Decimal("-5")),
            ("B2", Decimal("-3")),
        ]
        store = StockRecordStore(session)
        assert store.find(_key("B1")).quantity == Decimal("0")
        assert store.find(_key("B2")).quantity == Decimal("17")
        assert result.remaining_stock == Decimal("17")

    def test_each_batch_chains_its_own_valuation(self, receive, dispense):
        receive("B1", "5", date(2025, 6, 1), cost_price="2.00")
        receive("B2", "20", date(2025, 12, 1), cost_price="3.00")

        first, second = dispense("8").movements

        assert first.stock_value == Decimal("0")
        assert second.valuation_rate == Decimal("3.00")
        assert second.stock_value == Decimal("51")

    def test_expired_batch_is_skipped(self, receive, dispense, deterministic_clock):
        receive("OLD", "50", date(2025, 2, 1))
        receive("NEW", "10", date(2025, 9, 1))
        deterministic_clock.set_date(date(2025, 3, 1))

        result = dispense("4")

        assert [m.batch_number for m in result.movements] == ["NEW"]

    def test_batch_expiring_today_is_used(self, receive, dispense, deterministic_clock):
        receive("EDGE", "5", date(2025, 3, 1))
        receive("LATER", "5", date(2025, 9, 1))
        deterministic_clock.set_date(date(2025, 3, 1))

        assert dispense("2").movements[0].batch_number == "EDGE"

    def test_quarantined_batch_is_skipped(self, receive, dispense, session):
        held = receive("HELD", "50", date(2025, 4, 1)).batch
        receive("OK", "10", date(2025, 9, 1))
        session.get(StockBatchModel, held.id).is_quarantined = True
        session.flush()

        assert [m.batch_number for m in dispense("3").movements] == ["OK"]

    def test_other_drugs_untouched(self, receive, dispense, session):
        receive("B1", "10", date(2026, 1, 1))
        receive("A1", "10", date(2025, 2, 1), drug_id=AMOXICILLIN)

        dispense("4")

        assert StockRecordStore(session).find(_key("A1", AMOXICILLIN)).quantity == Decimal("10")


class TestDispenseFailures:

    def test_over_dispense_writes_nothing(self, receive, dispense, session):
        receive("B1", "5", date(2025, 6, 1))
        receive("B2", "2", date(2025, 7, 1))

        with pytest.raises(InsufficientStockError) as exc_info:
            dispense("8")

        err = exc_info.value
        assert (err.requested, err.available) == (Decimal("8"), Decimal("7"))
        assert err.operation == "dispense"
        assert err.http_status == 400

        store = StockRecordStore(session)
        assert store.find(_key("B1")).quantity == Decimal("5")
        assert store.find(_key("B2")).quantity == Decimal("2")
        ledger = MovementLedger(session)
        assert [m.movement_type for m in ledger.history_for(_key("B1"))] == [MovementType.PURCHASE]

    def test_no_stock_at_all(self, dispense):
        with pytest.raises(NoAvailableStockError):
            dispense("1")

    def test_only_expired_stock(self, receive, dispense, deterministic_clock):
        receive("OLD", "50", date(2025, 2, 1))
        deterministic_clock.set_date(date(2025, 2, 2))

        with pytest.raises(NoAvailableStockError):
            dispense("1")

    def test_failure_is_logged(self, dispense, captured_logs):
        with pytest.raises(NoAvailableStockError):
            dispense("1")

        failed = [r for r in captured_logs() if r["message"] == "stock_operation_failed"]
        assert failed[0]["error_code"] == "NO_AVAILABLE_STOCK"
        assert failed[0]["operation"] == "dispense"


class TestLedgerMatchesState:

    def test_sum_of_movements_equals_quantity(self, receive, dispense, session):
        receive("B1", "40", date(2025, 6, 1))
        receive("B2", "40", date(2025, 8, 1))
        for quantity in ("15", "30", "20"):
            dispense(quantity)

        store, ledger = StockRecordStore(session), MovementLedger(session)
        for number in ("B1", "B2"):
            history = ledger.history_for(_key(number))
            assert sum(m.quantity for m in history) == store.find(_key(number)).quantity
            assert history[-1].balance_after == store.find(_key(number)).quantity
            assert [m.sequence for m in history] == list(range(1, len(history) + 1))
