"""
Module: stock_engines.valuation
Responsibility:
    Per-movement inventory valuation.  Each movement of a batch is priced
    at a valuation rate and carries the batch's running stock value forward
    from the previous movement of the same batch:

        stock_value_difference = round(quantity_delta * rate, 9)
        stock_value            = previous_stock_value + stock_value_difference

Architecture position:
    Engines -- pure calculation layer, zero I/O.  The caller (the stock
    operations engine) reads the previous movement inside the same locked
    transaction and passes its stock value in.

Invariants enforced:
    - Decimal arithmetic, no floats.  Each difference is rounded half-up
      to the ledger scale (9 places) before it is added, so the stored
      difference and the stored running value agree, and over a batch's
      chain the final stock_value equals the sum of all differences.
    - A zero delta (allocation, release) carries the value forward
      unchanged.

Failure modes:
    - StockValidationError on a negative rate.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal

from stock_engines.tracer import traced_engine
from stock_kernel.domain.movement import LEDGER_QUANTUM, StockMovement
from stock_kernel.exceptions import StockValidationError

ZERO = Decimal("0")


@dataclass(frozen=True)
class Valuation:
    valuation_rate: Decimal
    stock_value_difference: Decimal
    stock_value: Decimal


def previous_stock_value(previous: StockMovement | None) -> Decimal:
    """Running value at the head of a chain; 0 for a batch with no movements."""
    return previous.stock_value if previous is not None else ZERO


@traced_engine(
    "valuation", "1.0",
    fingerprint_fields=("previous_stock_value", "quantity_delta", "rate"),
)
def compute_valuation(
    *,
    previous_stock_value: Decimal,
    quantity_delta: Decimal,
    rate: Decimal,
) -> Valuation:
    """
    Value one movement against its batch's chain.

    Args:
        previous_stock_value: Stock value after the batch's last movement.
        quantity_delta: Signed quantity of this movement.
        rate: Unit valuation rate (usually the batch cost price).

    Returns:
        Valuation with the difference and new running value.
    """
    if rate < ZERO:
        raise StockValidationError("valuation_rate", "must not be negative", rate)

    difference = (quantity_delta * rate).quantize(LEDGER_QUANTUM, rounding=ROUND_HALF_UP)
    return Valuation(
        valuation_rate=rate,
        stock_value_difference=difference,
        stock_value=previous_stock_value + difference,
    )
