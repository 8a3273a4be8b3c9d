"""
Pure domain layer.

Immutable value objects and pure functions with NO dependencies on the
ORM, the database, the clock or any I/O.
"""

from stock_kernel.domain.batch import (
    BatchKey,
    BatchState,
    StockBatch,
    derive_batch_state,
)
from stock_kernel.domain.clock import Clock, DeterministicClock, SystemClock
from stock_kernel.domain.context import RequestContext
from stock_kernel.domain.movement import MovementType, ReferenceType, StockMovement

__all__ = [
    "BatchKey",
    "BatchState",
    "Clock",
    "DeterministicClock",
    "MovementType",
    "ReferenceType",
    "RequestContext",
    "StockBatch",
    "StockMovement",
    "SystemClock",
    "derive_batch_state",
]
