"""
Module: stock_kernel.db.types
Responsibility: Decimal-domain input coercion used by every service. Quantity and money
    columns are Numeric(38, 9) throughout (see db/base.py).
Architecture position: Kernel > DB.  May be imported by services/ and
    selectors/.  Imports only the ledger scale from domain/movement.py.

Invariants enforced:
    CRITICAL: No floats anywhere in the stock kernel.  Quantities and money
    are Decimal end to end; ``to_decimal`` rejects float input outright so
    a binary-fraction artifact can never enter the ledger.

Failure modes:
    - StockValidationError on float, bool, NaN/Infinity, non-numeric input,
      or values finer than the ledger scale (9 decimal places).
"""

from decimal import Decimal, InvalidOperation
from typing import Any

from stock_kernel.domain.movement import LEDGER_QUANTUM, LEDGER_SCALE
from stock_kernel.exceptions import StockValidationError

ZERO = Decimal("0")


def to_decimal(value: Any, field: str) -> Decimal:
    """
    Coerce a caller-supplied quantity or price into the decimal domain.

    Preconditions: value is a Decimal, int, or numeric string.
    Postconditions: Returns a finite Decimal storable without rounding in
        a Numeric(38, 9) column.

    Raises:
        StockValidationError: on float/bool input, non-numeric strings,
            NaN, Infinity, or more than 9 decimal places.
    """
    if isinstance(value, bool) or isinstance(value, float):
        raise StockValidationError(
            field, "floating point values are not accepted; use Decimal or str",
            value,
        )
    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, (int, str)):
        try:
            result = Decimal(value)
        except InvalidOperation:
            raise StockValidationError(field, "not a number", value) from None
    else:
        raise StockValidationError(
            field, f"unsupported type {type(value).__name__}", value
        )
    if not result.is_finite():
        raise StockValidationError(field, "must be finite", value)
    try:
        exact = result.quantize(LEDGER_QUANTUM) == result
    except InvalidOperation:
        raise StockValidationError(field, "out of range", value) from None
    if not exact:
        raise StockValidationError(
            field, f"more than {LEDGER_SCALE} decimal places", value
        )
    return result


def positive_decimal(value: Any, field: str) -> Decimal:
    """Coerce and require ``value > 0``."""
    result = to_decimal(value, field)
    if result <= ZERO:
        raise StockValidationError(field, "must be greater than zero", value)
    return result


def non_negative_decimal(value: Any, field: str) -> Decimal:
    """Coerce and require ``value >= 0``."""
    result = to_decimal(value, field)
    if result < ZERO:
        raise StockValidationError(field, "must not be negative", value)
    return result
