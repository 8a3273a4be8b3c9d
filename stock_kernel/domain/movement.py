"""
StockMovement -- immutable ledger entry and its vocabulary.

Responsibility:
    Movement types, reference types, and the frozen ``StockMovement`` value
    that the Movement Ledger Store appends and returns.

Architecture position:
    Kernel > Domain -- pure, no ORM.

Invariants enforced:
    - ``quantity`` is a signed delta of physical units (negative for
      outflows, zero for reservation-only events).
    - ``allocated_delta`` is the signed change to the batch reservation;
      per batch, the sum of ``allocated_delta`` equals allocated_quantity.
    - ``sequence`` increases by exactly one per batch; the latest movement
      of a batch is the one with the highest sequence.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import TYPE_CHECKING, Any
from uuid import UUID

if TYPE_CHECKING:
    from stock_kernel.models.stock_movement import StockMovementModel


# Quantity and money columns are Numeric(38, 9).
LEDGER_SCALE = 9
LEDGER_QUANTUM = Decimal(1).scaleb(-LEDGER_SCALE)


class MovementType(str, Enum):
    """Kinds of quantity- or reservation-affecting events."""

    PURCHASE = "purchase"
    SALE = "sale"
    ADJUSTMENT = "adjustment"
    RETURN_FROM_CUSTOMER = "return_from_customer"
    RETURN_TO_SUPPLIER = "return_to_supplier"
    EXPIRY = "expiry"
    DAMAGE = "damage"
    RECALL = "recall"
    TRANSFER_OUT = "transfer_out"
    TRANSFER_IN = "transfer_in"
    ALLOCATION = "allocation"
    RELEASE = "release"
    STOCK_TAKE = "stock_take"


# Movement types a write-off may record.
WRITE_OFF_TYPES = frozenset({
    MovementType.DAMAGE,
    MovementType.RECALL,
    MovementType.RETURN_TO_SUPPLIER,
})


class ReferenceType:
    """Business-document kinds a movement can point at."""

    MANUAL_RECEIVE = "manual_receive"
    MANUAL_DISPENSE = "manual_dispense"
    MANUAL_ADJUSTMENT = "manual_adjustment"
    AUTO_EXPIRY_REMOVAL = "auto_expiry_removal"
    INTER_PHARMACY_TRANSFER = "inter_pharmacy_transfer"
    RECONCILIATION = "reconciliation"
    WRITE_OFF = "write_off"
    CUSTOMER_RETURN = "customer_return"


@dataclass(frozen=True)
class StockMovement:
    """One immutable fact in a batch's ledger."""

    id: UUID
    sequence: int
    movement_type: MovementType
    pharmacy_id: UUID
    drug_id: int
    batch_number: str
    quantity: Decimal
    allocated_delta: Decimal
    balance_after: Decimal
    valuation_rate: Decimal
    stock_value: Decimal
    stock_value_difference: Decimal
    posting_datetime: datetime
    fiscal_year: str
    fiscal_period: str
    created_at: datetime
    reference_type: str | None = None
    reference_id: str | None = None
    reference_number: str | None = None
    notes: str | None = None
    user_id: UUID | None = None
    related_pharmacy_id: UUID | None = None
    related_movement_id: UUID | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_model(cls, model: StockMovementModel) -> StockMovement:
        """Snapshot a StockMovementModel row."""
        return cls(
            id=model.id,
            sequence=model.sequence,
            movement_type=MovementType(model.movement_type),
            pharmacy_id=model.pharmacy_id,
            drug_id=model.drug_id,
            batch_number=model.batch_number,
            quantity=model.quantity,
            allocated_delta=model.allocated_delta,
            balance_after=model.balance_after,
            valuation_rate=model.valuation_rate,
            stock_value=model.stock_value,
            stock_value_difference=model.stock_value_difference,
            posting_datetime=model.posting_datetime,
            fiscal_year=model.fiscal_year,
            fiscal_period=model.fiscal_period,
            created_at=model.created_at,
            reference_type=model.reference_type,
            reference_id=model.reference_id,
            reference_number=model.reference_number,
            notes=model.notes,
            user_id=model.user_id,
            related_pharmacy_id=model.related_pharmacy_id,
            related_movement_id=model.related_movement_id,
            metadata=dict(model.movement_metadata or {}),
        )
