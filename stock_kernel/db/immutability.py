"""
ORM-Level Immutability Enforcement (Layer 1 of 2).

===============================================================================
WHY THIS EXISTS
===============================================================================

The movement ledger is the audit trail of every unit that entered or left a
pharmacy, and the source of truth that ``reconcile`` repairs stock rows
from.  A ledger that can be edited cannot be reconciled against.

  Layer 1: THIS FILE (ORM event listeners)
    - Catches modifications through Python/SQLAlchemy code
    - Fires BEFORE the SQL is sent to the database

  Layer 2: db/sql/*.sql (PostgreSQL triggers)
    - Catches raw SQL, bulk UPDATE statements, direct psql access

Both layers enforce the SAME rules.

===============================================================================
PROTECTED ENTITIES
===============================================================================

Entity          | Rule                          | Why
----------------|-------------------------------|--------------------------------
StockMovement   | No UPDATE, no DELETE, ever    | Ledger is append-only
StockBatch      | No DELETE                     | Zero-quantity rows anchor history

===============================================================================
USAGE
===============================================================================

Called once at startup, after models are imported:

    from stock_kernel.db.immutability import register_immutability_listeners
    register_immutability_listeners()

To temporarily disable (TESTS ONLY - never in production):

    unregister_immutability_listeners()
"""

from sqlalchemy import event

from stock_kernel.exceptions import ImmutabilityViolationError
from stock_kernel.logging_config import get_logger

logger = get_logger("db.immutability")


def _check_stock_movement_update(mapper, connection, target):
    """Reject any UPDATE of a ledger row."""
    logger.error(
        "immutability_violation_blocked",
        extra={
            "entity_type": "StockMovement",
            "entity_id": str(target.id),
            "operation": "UPDATE",
        },
    )
    raise ImmutabilityViolationError(
        entity_type="StockMovement",
        entity_id=str(target.id),
        reason="Stock movements are append-only and cannot be modified",
    )


def _check_stock_movement_delete(mapper, connection, target):
    """Reject any DELETE of a ledger row."""
    logger.error(
        "immutability_violation_blocked",
        extra={
            "entity_type": "StockMovement",
            "entity_id": str(target.id),
            "operation": "DELETE",
        },
    )
    raise ImmutabilityViolationError(
        entity_type="StockMovement",
        entity_id=str(target.id),
        reason="Stock movements are append-only and cannot be deleted",
    )


def _check_stock_batch_delete(mapper, connection, target):
    """Reject DELETE of a stock row; exhausted batches stay at zero."""
    logger.error(
        "immutability_violation_blocked",
        extra={
            "entity_type": "StockBatch",
            "entity_id": str(target.id),
            "operation": "DELETE",
        },
    )
    raise ImmutabilityViolationError(
        entity_type="StockBatch",
        entity_id=str(target.id),
        reason="Stock batches are never deleted; zero the quantity instead",
    )


def _listeners():
    from stock_kernel.models.stock_batch import StockBatchModel
    from stock_kernel.models.stock_movement import StockMovementModel

    return [
        (StockMovementModel, "before_update", _check_stock_movement_update),
        (StockMovementModel, "before_delete", _check_stock_movement_delete),
        (StockBatchModel, "before_delete", _check_stock_batch_delete),
    ]


def register_immutability_listeners():
    """
    Register all immutability enforcement event listeners (idempotent).

    Call after all models are imported but before any database operations.
    """
    for target, event_name, listener_fn in _listeners():
        if not event.contains(target, event_name, listener_fn):
            event.listen(target, event_name, listener_fn)


def unregister_immutability_listeners():
    """
    Remove immutability enforcement event listeners.

    WARNING: Only use this in tests that intentionally violate immutability
    (e.g. corrupting a ledger to exercise reconciliation).
    """
    for target, event_name, listener_fn in _listeners():
        if event.contains(target, event_name, listener_fn):
            event.remove(target, event_name, listener_fn)
