"""
Module: stock_engines.fefo
Responsibility:
    First-Expired-First-Out batch selection.  Given candidate batches of one
    drug at one pharmacy and a requested quantity, decide which batches to
    draw from and how much from each, earliest expiry first.  The same plan
    drives dispense (reduces quantity) and allocate (raises the
    reservation); ``plan_release`` walks reserved batches in the same order.

Architecture position:
    Engines -- pure calculation layer, zero I/O.  Receives ``today`` from
    the caller; never reads the clock.

Invariants enforced:
    - Quarantined and expired (``expiry_date < today``) batches are never
      drawn from, even if they expire earliest and even if the caller passed
      them in.
    - Draw order is ascending (expiry_date, batch_number).
    - Sum of draws == requested, and no draw exceeds its batch's
      available (or, for release, allocated) quantity.
    - All-or-nothing: an unsatisfiable request raises before any plan exists.

Failure modes:
    - NoAvailableStockError when no eligible batch exists.
    - InsufficientStockError(requested, available) when the eligible total
      is short.
    - NoAllocatedStockError / InsufficientAllocationError for release.
    - StockValidationError for a non-positive request.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from uuid import UUID

from stock_engines.tracer import traced_engine
from stock_kernel.domain.batch import StockBatch, is_expired
from stock_kernel.exceptions import (
    InsufficientAllocationError,
    InsufficientStockError,
    NoAllocatedStockError,
    NoAvailableStockError,
    StockValidationError,
)
from stock_kernel.logging_config import get_logger

logger = get_logger("engines.fefo")

ZERO = Decimal("0")


@dataclass(frozen=True)
class FefoDraw:
    """Units to take from one batch."""

    batch: StockBatch
    quantity: Decimal


@dataclass(frozen=True)
class FefoPlan:
    """
    Ordered draws satisfying a request.

    Guarantees:
        - ``draws`` are in FEFO order and sum to ``requested``.
        - ``total_available`` is what the eligible batches offered in total.
    """

    pharmacy_id: UUID
    drug_id: int
    requested: Decimal
    total_available: Decimal
    draws: tuple[FefoDraw, ...]

    @property
    def drawn(self) -> Decimal:
        return sum((d.quantity for d in self.draws), ZERO)

    @property
    def remaining_after(self) -> Decimal:
        return self.total_available - self.drawn


def _fefo_order(batches: Iterable[StockBatch]) -> list[StockBatch]:
    return sorted(batches, key=lambda b: (b.expiry_date, b.batch_number))


def eligible_batches(batches: Iterable[StockBatch], today: date) -> list[StockBatch]:
    """Sellable batches in FEFO order: not quarantined, not expired, units free."""
    return _fefo_order(
        b for b in batches
        if not b.is_quarantined
        and not is_expired(b.expiry_date, today)
        and b.available_quantity > ZERO
    )


def _walk(
    requested: Decimal,
    candidates: list[StockBatch],
    capacity,
) -> tuple[FefoDraw, ...]:
    remaining = requested
    draws: list[FefoDraw] = []
    for batch in candidates:
        if remaining <= ZERO:
            break
        take = min(remaining, capacity(batch))
        draws.append(FefoDraw(batch=batch, quantity=take))
        remaining -= take
    return tuple(draws)


@traced_engine("fefo", "1.0", fingerprint_fields=("pharmacy_id", "drug_id", "requested", "today"))
def plan_fefo(
    *,
    pharmacy_id: UUID,
    drug_id: int,
    requested: Decimal,
    batches: Iterable[StockBatch],
    today: date,
) -> FefoPlan:
    """
    Plan an outgoing draw of ``requested`` units.

    Args:
        pharmacy_id: Pharmacy the batches belong to (for error reporting).
        drug_id: Drug the batches belong to.
        requested: Units wanted, > 0.
        batches: Candidate batches; ineligible ones are filtered out here.
        today: Business date used for the expiry cut-off.

    Returns:
        FefoPlan whose draws sum to ``requested``.

    Raises:
        StockValidationError: ``requested`` <= 0.
        NoAvailableStockError: No eligible batch.
        InsufficientStockError: Eligible total < ``requested``.
    """
    if requested <= ZERO:
        raise StockValidationError("quantity", "must be greater than zero", requested)

    candidates = eligible_batches(batches, today)
    if not candidates:
        raise NoAvailableStockError(pharmacy_id, drug_id)

    total_available = sum((b.available_quantity for b in candidates), ZERO)
    if total_available < requested:
        logger.info(
            "fefo_insufficient_stock",
            extra={
                "drug_id": drug_id,
                "requested": str(requested),
                "available": str(total_available),
            },
        )
        raise InsufficientStockError(pharmacy_id, drug_id, requested, total_available)

    draws = _walk(requested, candidates, lambda b: b.available_quantity)
    logger.debug(
        "fefo_plan_computed",
        extra={
            "drug_id": drug_id,
            "requested": str(requested),
            "total_available": str(total_available),
            "draws": [(d.batch.batch_number, str(d.quantity)) for d in draws],
        },
    )
    return FefoPlan(
        pharmacy_id=pharmacy_id,
        drug_id=drug_id,
        requested=requested,
        total_available=total_available,
        draws=draws,
    )


@traced_engine("fefo_release", "1.0", fingerprint_fields=("pharmacy_id", "drug_id", "requested"))
def plan_release(
    *,
    pharmacy_id: UUID,
    drug_id: int,
    requested: Decimal,
    batches: Iterable[StockBatch],
) -> FefoPlan:
    """
    Plan releasing ``requested`` reserved units, earliest expiry first.

    Expired and quarantined batches are included: a reservation on them is
    still a reservation until released.

    Raises:
        StockValidationError: ``requested`` <= 0.
        NoAllocatedStockError: No batch carries a reservation.
        InsufficientAllocationError: Total reserved < ``requested``.
    """
    if requested <= ZERO:
        raise StockValidationError("quantity", "must be greater than zero", requested)

    candidates = _fefo_order(b for b in batches if b.allocated_quantity > ZERO)
    if not candidates:
        raise NoAllocatedStockError(pharmacy_id, drug_id)

    total_allocated = sum((b.allocated_quantity for b in candidates), ZERO)
    if total_allocated < requested:
        raise InsufficientAllocationError(pharmacy_id, drug_id, requested, total_allocated)

    draws = _walk(requested, candidates, lambda b: b.allocated_quantity)
    return FefoPlan(
        pharmacy_id=pharmacy_id,
        drug_id=drug_id,
        requested=requested,
        total_available=total_allocated,
        draws=draws,
    )
