"""
Module: stock_kernel.models.stock_movement
Responsibility: ORM persistence for the append-only stock movement ledger.
Architecture position: Kernel > Models.  May import from db/base.py only.
    MUST NOT import from services/, selectors/, or outer layers.

Invariants enforced:
    - Append-only: rows are never updated or deleted (ORM listeners in
      db/immutability.py plus PostgreSQL triggers in db/sql/).
    - Per-batch chain: (pharmacy_id, drug_id, batch_number, sequence) is
      unique, so two writers can never both append "the next" movement of
      the same batch.
    - Movements reference their batch by natural key, not a foreign key:
      the batch row is mutable state, movements are immutable facts.

Failure modes:
    - IntegrityError on a duplicate chain sequence (surfaced to callers as
      ConcurrencyConflictError by the operations engine).
    - ImmutabilityViolationError on any UPDATE/DELETE through the ORM.

Audit relevance:
    This table is the audit trail and the source of truth for
    reconciliation: the per-batch sum of ``quantity`` equals the batch's
    stored quantity, and the per-batch sum of ``allocated_delta`` equals its
    allocated quantity.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy import (
    JSON,
    BigInteger,
    DateTime,
    Index,
    Numeric,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from stock_kernel.db.base import Base, UUIDString


class StockMovementModel(Base):
    """
    One immutable ledger row.

    Contract:
        Inserted exactly once by the Movement Ledger Store; never changed.

    Guarantees:
        - ``balance_after`` is the batch quantity right after this movement.
        - ``stock_value`` is the running value of the batch after this
          movement; ``stock_value_difference`` is this movement's delta.
    """

    __tablename__ = "stock_movements"

    __table_args__ = (
        UniqueConstraint(
            "pharmacy_id", "drug_id", "batch_number", "sequence",
            name="uq_stock_movement_chain",
        ),
        # Query: history for a pharmacy, newest first
        Index("idx_stock_movement_pharmacy_created", "pharmacy_id", "created_at"),
        # Query: movements by business document
        Index("idx_stock_movement_reference", "reference_type", "reference_number"),
        # Query: fiscal reporting
        Index("idx_stock_movement_fiscal", "fiscal_year", "fiscal_period"),
    )

    movement_type: Mapped[str] = mapped_column(String(30), nullable=False)

    pharmacy_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)

    drug_id: Mapped[int] = mapped_column(BigInteger, nullable=False)

    batch_number: Mapped[str] = mapped_column(String(100), nullable=False)

    # 1-based position in the batch's ledger chain
    sequence: Mapped[int] = mapped_column(BigInteger, nullable=False)

    # Signed physical delta; zero for allocation/release
    quantity: Mapped[Decimal] = mapped_column(Numeric(38, 9), nullable=False)

    # Signed reservation delta
    allocated_delta: Mapped[Decimal] = mapped_column(
        Numeric(38, 9), nullable=False, default=Decimal("0")
    )

    balance_after: Mapped[Decimal] = mapped_column(Numeric(38, 9), nullable=False)

    valuation_rate: Mapped[Decimal] = mapped_column(Numeric(38, 9), nullable=False)

    stock_value: Mapped[Decimal] = mapped_column(Numeric(38, 9), nullable=False)

    stock_value_difference: Mapped[Decimal] = mapped_column(
        Numeric(38, 9), nullable=False
    )

    reference_type: Mapped[str | None] = mapped_column(String(50), nullable=True)

    reference_id: Mapped[str | None] = mapped_column(String(100), nullable=True)

    reference_number: Mapped[str | None] = mapped_column(String(100), nullable=True)

    notes: Mapped[str | None] = mapped_column(String(4000), nullable=True)

    user_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    related_pharmacy_id: Mapped[UUID | None] = mapped_column(
        UUIDString(), nullable=True
    )

    related_movement_id: Mapped[UUID | None] = mapped_column(
        UUIDString(), nullable=True
    )

    posting_datetime: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )

    fiscal_year: Mapped[str] = mapped_column(String(10), nullable=False)

    fiscal_period: Mapped[str] = mapped_column(String(10), nullable=False)

    # Decimal values are stored as strings
    movement_metadata: Mapped[dict[str, Any] | None] = mapped_column(
        JSON, nullable=True
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )

    def __repr__(self) -> str:
        return (
            f"<StockMovement {self.movement_type} "
            f"{self.pharmacy_id}/{self.drug_id}/{self.batch_number}#{self.sequence}: "
            f"{self.quantity} -> {self.balance_after}>"
        )
