"""
StockBatch -- immutable snapshot of one (pharmacy, drug, batch) stock row.

Responsibility:
    Plain value object returned by the Stock Record Store, plus the pure
    ``derive_batch_state`` function that computes the read-time fields
    (available quantity, expiry flags).  Derived fields are never stored.

Architecture position:
    Kernel > Domain -- pure, no ORM, no clock access.  ``today`` is always
    passed in by the caller.

Invariants enforced:
    - 0 <= allocated_quantity <= quantity (``check_quantities``).
    - Expired means ``expiry_date < today``; the expiry day itself is still
      usable.  Expiring soon means ``today <= expiry_date <= today + horizon``.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import TYPE_CHECKING
from uuid import UUID

if TYPE_CHECKING:
    from stock_kernel.models.stock_batch import StockBatchModel

DEFAULT_EXPIRING_SOON_DAYS = 90


@dataclass(frozen=True)
class BatchKey:
    """Natural key of a stock row."""

    pharmacy_id: UUID
    drug_id: int
    batch_number: str

    def __str__(self) -> str:
        return f"{self.pharmacy_id}/{self.drug_id}/{self.batch_number}"


@dataclass(frozen=True)
class StockBatch:
    """Current state of a physical lot of a drug at a pharmacy."""

    id: UUID
    pharmacy_id: UUID
    drug_id: int
    batch_number: str
    quantity: Decimal
    allocated_quantity: Decimal
    minimum_stock_level: Decimal
    expiry_date: date
    cost_price: Decimal
    selling_price: Decimal
    is_quarantined: bool = False
    supplier_name: str | None = None
    supplier_invoice_number: str | None = None
    received_date: date | None = None
    notes: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @classmethod
    def from_model(cls, model: StockBatchModel) -> StockBatch:
        """Snapshot a StockBatchModel row."""
        return cls(
            id=model.id,
            pharmacy_id=model.pharmacy_id,
            drug_id=model.drug_id,
            batch_number=model.batch_number,
            quantity=model.quantity,
            allocated_quantity=model.allocated_quantity,
            minimum_stock_level=model.minimum_stock_level,
            expiry_date=model.expiry_date,
            cost_price=model.cost_price,
            selling_price=model.selling_price,
            is_quarantined=model.is_quarantined,
            supplier_name=model.supplier_name,
            supplier_invoice_number=model.supplier_invoice_number,
            received_date=model.received_date,
            notes=model.notes,
            created_at=model.created_at,
            updated_at=model.updated_at,
        )

    @property
    def key(self) -> BatchKey:
        return BatchKey(self.pharmacy_id, self.drug_id, self.batch_number)

    @property
    def available_quantity(self) -> Decimal:
        return self.quantity - self.allocated_quantity


@dataclass(frozen=True)
class BatchState:
    """Read-time derived fields for a StockBatch."""

    available_quantity: Decimal
    is_expired: bool
    is_expiring_soon: bool
    days_until_expiry: int


def is_expired(expiry_date: date, today: date) -> bool:
    return expiry_date < today


def is_expiring_soon(
    expiry_date: date,
    today: date,
    horizon_days: int = DEFAULT_EXPIRING_SOON_DAYS,
) -> bool:
    days = (expiry_date - today).days
    return 0 <= days <= horizon_days


def derive_batch_state(
    batch: StockBatch,
    today: date,
    horizon_days: int = DEFAULT_EXPIRING_SOON_DAYS,
) -> BatchState:
    """Compute the derived fields of ``batch`` as of ``today``."""
    return BatchState(
        available_quantity=batch.available_quantity,
        is_expired=is_expired(batch.expiry_date, today),
        is_expiring_soon=is_expiring_soon(batch.expiry_date, today, horizon_days),
        days_until_expiry=(batch.expiry_date - today).days,
    )


def check_quantities(quantity: Decimal, allocated_quantity: Decimal) -> bool:
    """True iff ``0 <= allocated_quantity <= quantity``."""
    return Decimal("0") <= allocated_quantity <= quantity
