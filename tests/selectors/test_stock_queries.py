"""Read-side queries: levels, history, low stock, expiring stock, valuation."""

from datetime import date
from decimal import Decimal

import pytest

from tests.conftest import (
    AMOXICILLIN,
    CLOSED_PHARMACY_ID,
    FOREIGN_PHARMACY_ID,
    MAIN_PHARMACY_ID,
    PARACETAMOL,
)
from stock_kernel.domain.movement import MovementType
from stock_kernel.exceptions import AccessDeniedError, StockValidationError
from stock_kernel.models.stock_batch import StockBatchModel


class TestStockLevels:

    def test_derived_fields(self, receive, stock_queries, org_admin_ctx, stock_engine):
        receive("SOON", "10", date(2025, 3, 1))
        receive("LATER", "10", date(2026, 1, 1))
        stock_engine.allocate(org_admin_ctx, MAIN_PHARMACY_ID, PARACETAMOL, "4", "order", "O-1")

        levels = {l.batch.batch_number: l for l in stock_queries.stock_levels(org_admin_ctx, MAIN_PHARMACY_ID)}

        assert levels["SOON"].available_quantity == Decimal("6")
        assert levels["SOON"].is_expiring_soon
        assert levels["SOON"].days_until_expiry == 45
        assert not levels["LATER"].is_expiring_soon
        assert not levels["LATER"].is_expired

    def test_includes_zero_rows_and_filters_by_drug(self, receive, stock_queries, org_admin_ctx, stock_engine):
        receive("B1", "10", date(2026, 1, 1))
        receive("A1", "10", date(2026, 1, 1), drug_id=AMOXICILLIN)
        stock_engine.dispense(org_admin_ctx, MAIN_PHARMACY_ID, PARACETAMOL, "10")

        levels = stock_queries.stock_levels(org_admin_ctx, MAIN_PHARMACY_ID, drug_id=PARACETAMOL)

        assert [(l.batch.batch_number, l.batch.quantity) for l in levels] == [("B1", Decimal("0"))]

    def test_expired_flag(self, receive, stock_queries, org_admin_ctx, deterministic_clock):
        receive("B1", "10", date(2025, 2, 1))
        deterministic_clock.set_date(date(2025, 2, 2))

        (level,) = stock_queries.stock_levels(org_admin_ctx, MAIN_PHARMACY_ID)
        assert level.is_expired
        assert level.days_until_expiry == -1

    def test_reads_allowed_on_inactive_pharmacy(self, stock_queries, org_admin_ctx):
        assert stock_queries.stock_levels(org_admin_ctx, CLOSED_PHARMACY_ID) == []

    def test_reads_are_scoped(self, stock_queries, org_admin_ctx):
        with pytest.raises(AccessDeniedError):
            stock_queries.stock_levels(org_admin_ctx, FOREIGN_PHARMACY_ID)


class TestMovementHistory:

    def test_most_recent_first(self, receive, stock_queries, stock_engine, org_admin_ctx, deterministic_clock):
        receive("B1", "10", date(2026, 1, 1))
        deterministic_clock.tick()
        stock_engine.dispense(org_admin_ctx, MAIN_PHARMACY_ID, PARACETAMOL, "3")
        deterministic_clock.tick()
        receive("B2", "5", date(2026, 2, 1))

        history = stock_queries.movement_history(org_admin_ctx, MAIN_PHARMACY_ID)

        assert [(m.batch_number, m.movement_type) for m in history] == [
            ("B2", MovementType.PURCHASE),
            ("B1", MovementType.SALE),
            ("B1", MovementType.PURCHASE),
        ]

    def test_same_instant_orders_by_sequence(self, receive, stock_queries, stock_engine, org_admin_ctx):
        receive("B1", "10", date(2026, 1, 1))
        stock_engine.dispense(org_admin_ctx, MAIN_PHARMACY_ID, PARACETAMOL, "3")

        history = stock_queries.movement_history(org_admin_ctx, MAIN_PHARMACY_ID)
        assert [m.sequence for m in history] == [2, 1]

    def test_limit(self, receive, stock_queries, org_admin_ctx):
        for i in range(5):
            receive(f"B{i}", "1", date(2026, 1, 1))

        assert len(stock_queries.movement_history(org_admin_ctx, MAIN_PHARMACY_ID, limit=2)) == 2

    def test_invalid_limit(self, stock_queries, org_admin_ctx):
        with pytest.raises(StockValidationError):
            stock_queries.movement_history(org_admin_ctx, MAIN_PHARMACY_ID, limit=0)


class TestLowStock:

    def test_at_or_below_minimum_most_depleted_first(self, receive, stock_queries, org_admin_ctx):
        receive("HALF", "10", date(2026, 1, 1), minimum_stock_level="20")
        receive("EDGE", "20", date(2026, 1, 1), minimum_stock_level="20")
        receive("FINE", "50", date(2026, 1, 1), minimum_stock_level="20")

        low = stock_queries.low_stock(org_admin_ctx, MAIN_PHARMACY_ID)

        assert [l.batch.batch_number for l in low] == ["HALF", "EDGE"]

    def test_reservations_count_against_threshold(self, receive, stock_queries, stock_engine, org_admin_ctx):
        receive("B1", "30", date(2026, 1, 1), minimum_stock_level="20")
        stock_engine.allocate(org_admin_ctx, MAIN_PHARMACY_ID, PARACETAMOL, "15", "order", "O-1")

        assert [l.available_quantity for l in stock_queries.low_stock(org_admin_ctx, MAIN_PHARMACY_ID)] == [
            Decimal("15")
        ]

    def test_zero_threshold_sorts_last(self, receive, stock_queries, stock_engine, org_admin_ctx):
        receive("EMPTY", "5", date(2025, 6, 1))
        receive("LOW", "5", date(2026, 1, 1), minimum_stock_level="10")
        stock_engine.dispense(org_admin_ctx, MAIN_PHARMACY_ID, PARACETAMOL, "5")

        low = stock_queries.low_stock(org_admin_ctx, MAIN_PHARMACY_ID)

        assert [l.batch.batch_number for l in low] == ["LOW", "EMPTY"]

    def test_quarantined_excluded(self, receive, stock_queries, org_admin_ctx, session):
        batch = receive("B1", "1", date(2026, 1, 1), minimum_stock_level="10").batch
        session.get(StockBatchModel, batch.id).is_quarantined = True
        session.flush()

        assert stock_queries.low_stock(org_admin_ctx, MAIN_PHARMACY_ID) == []


class TestExpiringStock:

    def test_window_and_filters(self, receive, stock_queries, org_admin_ctx, stock_engine, deterministic_clock):
        receive("GONE", "5", date(2025, 1, 20))
        receive("SOON", "5", date(2025, 3, 1))
        receive("EDGE", "5", date(2025, 4, 15))
        receive("FAR", "5", date(2025, 4, 16))
        receive("EMPTY", "5", date(2025, 2, 1), drug_id=AMOXICILLIN)
        stock_engine.dispense(org_admin_ctx, MAIN_PHARMACY_ID, AMOXICILLIN, "5")
        deterministic_clock.set_date(date(2025, 1, 21))

        expiring = stock_queries.expiring_stock(org_admin_ctx, MAIN_PHARMACY_ID, days=84)

        assert [l.batch.batch_number for l in expiring] == ["SOON", "EDGE"]
        assert all(l.is_expiring_soon for l in expiring)

    def test_default_horizon_from_config(self, receive, stock_queries, org_admin_ctx):
        receive("EDGE", "5", date(2025, 4, 15))
        receive("FAR", "5", date(2025, 4, 16))

        assert [l.batch.batch_number for l in stock_queries.expiring_stock(org_admin_ctx, MAIN_PHARMACY_ID)] == [
            "EDGE"
        ]

    def test_negative_days_rejected(self, stock_queries, org_admin_ctx):
        with pytest.raises(StockValidationError):
            stock_queries.expiring_stock(org_admin_ctx, MAIN_PHARMACY_ID, days=-1)


class TestValuationReport:

    def test_values_at_cost_and_selling_price(self, receive, stock_queries, org_admin_ctx):
        receive("B1", "100", date(2026, 1, 1))
        receive("A1", "10", date(2026, 1, 1), cost_price="2.00", selling_price="3.00", drug_id=AMOXICILLIN)

        report = stock_queries.valuation_report(org_admin_ctx, MAIN_PHARMACY_ID)

        by_batch = {l.batch_number: l for l in report.lines}
        b1 = by_batch["B1"]
        assert b1.stock_value == Decimal("500")
        assert b1.potential_revenue == Decimal("750")
        assert b1.potential_profit == Decimal("250")
        assert b1.margin_percent == Decimal("50.00")
        assert b1.ledger_stock_value == Decimal("500")
        assert report.total_stock_value == Decimal("520")
        assert report.total_potential_revenue == Decimal("780")
        assert report.total_ledger_stock_value == Decimal("520")

    def test_ledger_value_tracks_movements(self, receive, stock_queries, stock_engine, org_admin_ctx):
        receive("B1", "100", date(2026, 1, 1))
        stock_engine.dispense(org_admin_ctx, MAIN_PHARMACY_ID, PARACETAMOL, "30")

        (line,) = stock_queries.valuation_report(org_admin_ctx, MAIN_PHARMACY_ID).lines
        assert line.stock_value == Decimal("350")
        assert line.ledger_stock_value == Decimal("350")

    def test_zero_cost_margin(self, receive, stock_queries, org_admin_ctx):
        receive("FREE", "10", date(2026, 1, 1), cost_price="0", selling_price="1.00")

        (line,) = stock_queries.valuation_report(org_admin_ctx, MAIN_PHARMACY_ID).lines
        assert line.margin_percent == Decimal("0")

    def test_exhausted_batches_omitted(self, receive, stock_queries, stock_engine, org_admin_ctx):
        receive("B1", "10", date(2026, 1, 1))
        stock_engine.dispense(org_admin_ctx, MAIN_PHARMACY_ID, PARACETAMOL, "10")

        report = stock_queries.valuation_report(org_admin_ctx, MAIN_PHARMACY_ID)
        assert report.lines == ()
        assert report.total_stock_value == Decimal("0")
