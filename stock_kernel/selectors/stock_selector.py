"""
Module: stock_kernel.selectors.stock_selector
Responsibility: Read-only stock queries (levels, low stock, expiring stock,
    valuation lines).  No locks; results are frozen DTOs with the derived
    fields computed on read.
Architecture position: Kernel > Selectors.  ``today`` and the expiry
    horizon are passed in by the caller; selectors never read the clock or
    configuration.
"""

from datetime import date, timedelta
from decimal import ROUND_HALF_UP, Decimal
from uuid import UUID

from sqlalchemy import select

from stock_kernel.domain.batch import (
    DEFAULT_EXPIRING_SOON_DAYS,
    StockBatch,
    derive_batch_state,
)
from stock_kernel.domain.dtos import StockLevel, ValuationLine, ValuationReport
from stock_kernel.models.stock_batch import StockBatchModel
from stock_kernel.selectors.base import BaseSelector

ZERO = Decimal("0")
_PERCENT = Decimal("0.01")


def to_stock_level(
    batch: StockBatch,
    today: date,
    horizon_days: int = DEFAULT_EXPIRING_SOON_DAYS,
) -> StockLevel:
    state = derive_batch_state(batch, today, horizon_days)
    return StockLevel(
        batch=batch,
        available_quantity=state.available_quantity,
        is_expired=state.is_expired,
        is_expiring_soon=state.is_expiring_soon,
        days_until_expiry=state.days_until_expiry,
    )


class StockSelector(BaseSelector[StockBatchModel]):
    """Stock level and valuation queries for one pharmacy."""

    def _batches(self, stmt) -> list[StockBatch]:
        return [StockBatch.from_model(m) for m in self.session.execute(stmt).scalars().all()]

    def stock_levels(
        self,
        pharmacy_id: UUID,
        today: date,
        horizon_days: int = DEFAULT_EXPIRING_SOON_DAYS,
        drug_id: int | None = None,
    ) -> list[StockLevel]:
        """Every batch of the pharmacy (optionally one drug), zero rows included."""
        stmt = select(StockBatchModel).where(StockBatchModel.pharmacy_id == pharmacy_id)
        if drug_id is not None:
            stmt = stmt.where(StockBatchModel.drug_id == drug_id)
        stmt = stmt.order_by(
            StockBatchModel.drug_id.asc(),
            StockBatchModel.expiry_date.asc(),
            StockBatchModel.batch_number.asc(),
        )
        return [to_stock_level(b, today, horizon_days) for b in self._batches(stmt)]

    def low_stock(
        self,
        pharmacy_id: UUID,
        today: date,
        horizon_days: int = DEFAULT_EXPIRING_SOON_DAYS,
    ) -> list[StockLevel]:
        """
        Non-quarantined batches whose available quantity is at or below the
        reorder threshold, most depleted (lowest available/minimum) first.
        Batches with a zero threshold sort last.
        """
        stmt = select(StockBatchModel).where(
            StockBatchModel.pharmacy_id == pharmacy_id,
            StockBatchModel.is_quarantined.is_(False),
            (StockBatchModel.quantity - StockBatchModel.allocated_quantity)
            <= StockBatchModel.minimum_stock_level,
        )
        batches = self._batches(stmt)

        def ratio(batch: StockBatch) -> tuple[int, Decimal, int, str]:
            if batch.minimum_stock_level == ZERO:
                return (1, ZERO, batch.drug_id, batch.batch_number)
            return (
                0,
                batch.available_quantity / batch.minimum_stock_level,
                batch.drug_id,
                batch.batch_number,
            )

        return [to_stock_level(b, today, horizon_days) for b in sorted(batches, key=ratio)]

    def expiring_stock(
        self,
        pharmacy_id: UUID,
        today: date,
        days: int = DEFAULT_EXPIRING_SOON_DAYS,
    ) -> list[StockLevel]:
        """Unexpired batches holding units that expire within ``days`` (inclusive)."""
        stmt = (
            select(StockBatchModel)
            .where(
                StockBatchModel.pharmacy_id == pharmacy_id,
                StockBatchModel.expiry_date >= today,
                StockBatchModel.expiry_date <= today + timedelta(days=days),
                StockBatchModel.quantity > 0,
            )
            .order_by(StockBatchModel.expiry_date.asc(), StockBatchModel.batch_number.asc())
        )
        return [to_stock_level(b, today, days) for b in self._batches(stmt)]

    def valuation_report(
        self,
        pharmacy_id: UUID,
        ledger_values: dict[tuple[int, str], Decimal],
    ) -> ValuationReport:
        """
        Value every batch holding units at cost and at selling price.

        ``ledger_values`` maps (drug_id, batch_number) to the running
        ``stock_value`` at the head of that batch's ledger chain, shown
        beside the state-derived value for comparison.  Margin is profit
        over cost value, in percent, 0 when the cost value is 0.
        """
        stmt = (
            select(StockBatchModel)
            .where(
                StockBatchModel.pharmacy_id == pharmacy_id,
                StockBatchModel.quantity > 0,
            )
            .order_by(StockBatchModel.drug_id.asc(), StockBatchModel.batch_number.asc())
        )
        lines: list[ValuationLine] = []
        for batch in self._batches(stmt):
            stock_value = batch.quantity * batch.cost_price
            revenue = batch.quantity * batch.selling_price
            profit = revenue - stock_value
            margin = (
                (profit / stock_value * 100).quantize(_PERCENT, rounding=ROUND_HALF_UP)
                if stock_value > ZERO
                else ZERO
            )
            lines.append(
                ValuationLine(
                    drug_id=batch.drug_id,
                    batch_number=batch.batch_number,
                    quantity=batch.quantity,
                    cost_price=batch.cost_price,
                    selling_price=batch.selling_price,
                    stock_value=stock_value,
                    potential_revenue=revenue,
                    potential_profit=profit,
                    margin_percent=margin,
                    ledger_stock_value=ledger_values.get(
                        (batch.drug_id, batch.batch_number), ZERO
                    ),
                )
            )

        return ValuationReport(
            pharmacy_id=pharmacy_id,
            lines=tuple(lines),
            total_stock_value=sum((l.stock_value for l in lines), ZERO),
            total_potential_revenue=sum((l.potential_revenue for l in lines), ZERO),
            total_potential_profit=sum((l.potential_profit for l in lines), ZERO),
            total_ledger_stock_value=sum((l.ledger_stock_value for l in lines), ZERO),
        )
