"""
StockQueries -- authorized read-only stock queries.

Responsibility:
    Stock levels, movement history, low stock, expiring stock and the
    valuation report for one pharmacy.  Each query authorizes the caller
    (reads are allowed on inactive pharmacies) and takes no locks.

Architecture position:
    Services.  Thin composition of AccessScope, StockSelector and
    MovementLedger with the configured expiry horizon, history limit and
    business timezone.
"""

from __future__ import annotations

from uuid import UUID

from sqlalchemy.orm import Session

from stock_config import StockConfig
from stock_kernel.domain.clock import Clock, SystemClock
from stock_kernel.domain.context import RequestContext
from stock_kernel.domain.dtos import StockLevel, ValuationReport
from stock_kernel.domain.movement import StockMovement
from stock_kernel.exceptions import StockValidationError
from stock_kernel.selectors.stock_selector import StockSelector
from stock_kernel.services.access_scope import AccessScope
from stock_kernel.services.movement_ledger import MovementLedger
from stock_services.stock_operations import business_timezone


class StockQueries:
    """Read side of the stock API."""

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        config: StockConfig | None = None,
    ):
        self._clock = clock or SystemClock()
        self._config = config or StockConfig()
        self._tz = business_timezone(self._config.expiry.business_timezone)
        self._access = AccessScope(session)
        self._selector = StockSelector(session)
        self._ledger = MovementLedger(session)

    def _today(self):
        return self._clock.today(self._tz)

    def stock_levels(
        self,
        ctx: RequestContext,
        pharmacy_id: UUID,
        drug_id: int | None = None,
    ) -> list[StockLevel]:
        self._access.authorize(ctx, pharmacy_id, for_write=False)
        return self._selector.stock_levels(
            pharmacy_id,
            self._today(),
            self._config.expiry.expiring_soon_days,
            drug_id=drug_id,
        )

    def movement_history(
        self,
        ctx: RequestContext,
        pharmacy_id: UUID,
        limit: int | None = None,
    ) -> list[StockMovement]:
        """Most recent movements first, at most ``limit`` (default from config)."""
        self._access.authorize(ctx, pharmacy_id, for_write=False)
        if limit is None:
            limit = self._config.ledger.movement_history_limit
        if limit < 1:
            raise StockValidationError("limit", "must be at least 1", limit)
        return list(self._ledger.list_for(pharmacy_id, limit))

    def low_stock(self, ctx: RequestContext, pharmacy_id: UUID) -> list[StockLevel]:
        self._access.authorize(ctx, pharmacy_id, for_write=False)
        return self._selector.low_stock(
            pharmacy_id, self._today(), self._config.expiry.expiring_soon_days
        )

    def expiring_stock(
        self,
        ctx: RequestContext,
        pharmacy_id: UUID,
        days: int | None = None,
    ) -> list[StockLevel]:
        self._access.authorize(ctx, pharmacy_id, for_write=False)
        if days is None:
            days = self._config.expiry.expiring_soon_days
        if days < 0:
            raise StockValidationError("days", "must not be negative", days)
        return self._selector.expiring_stock(pharmacy_id, self._today(), days)

    def valuation_report(self, ctx: RequestContext, pharmacy_id: UUID) -> ValuationReport:
        self._access.authorize(ctx, pharmacy_id, for_write=False)
        return self._selector.valuation_report(
            pharmacy_id, self._ledger.latest_values_for_pharmacy(pharmacy_id)
        )
