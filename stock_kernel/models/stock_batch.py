"""
Module: stock_kernel.models.stock_batch
Responsibility: ORM persistence for current-state stock rows, one per
    (pharmacy, drug, batch number).
Architecture position: Kernel > Models.  May import from db/base.py only.
    MUST NOT import from services/, selectors/, or outer layers.

Invariants enforced (database check constraints, backing the engine's own
checks):
    - quantity >= 0
    - 0 <= allocated_quantity <= quantity
    - cost_price >= 0, selling_price >= 0, minimum_stock_level >= 0
    - (pharmacy_id, drug_id, batch_number) is unique

Failure modes:
    - IntegrityError on a duplicate natural key (two concurrent first
      receipts of the same batch; the record store retries as an update).
    - IntegrityError on a check-constraint violation.

Audit relevance:
    Rows are never deleted.  A fully dispensed or expired batch stays as a
    zero-quantity row so every ledger chain keeps its current-state anchor.
"""

from __future__ import annotations

from datetime import date
from decimal import Decimal
from uuid import UUID

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    Date,
    Index,
    Numeric,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from stock_kernel.db.base import TimestampedBase, UUIDString


class StockBatchModel(TimestampedBase):
    """
    Persistent current state of one physical lot at one pharmacy.

    Contract:
        Mutated only by the Stock Record Store inside an operation's
        transaction, after the row has been locked with SELECT ... FOR UPDATE.

    Guarantees:
        - Check constraints reject negative stock and over-reservation even
          if application code is bypassed.
        - (pharmacy_id, drug_id, expiry_date) index serves FEFO selection.

    Non-goals:
        - Derived fields (available quantity, expiry flags) are NOT stored.
    """

    __tablename__ = "stock_batches"

    __table_args__ = (
        UniqueConstraint(
            "pharmacy_id", "drug_id", "batch_number",
            name="uq_stock_batch_key",
        ),
        CheckConstraint("quantity >= 0", name="ck_stock_batch_quantity_non_negative"),
        CheckConstraint(
            "allocated_quantity >= 0",
            name="ck_stock_batch_allocated_non_negative",
        ),
        CheckConstraint(
            "allocated_quantity <= quantity",
            name="ck_stock_batch_allocated_within_quantity",
        ),
        CheckConstraint("cost_price >= 0", name="ck_stock_batch_cost_non_negative"),
        CheckConstraint(
            "selling_price >= 0", name="ck_stock_batch_selling_non_negative"
        ),
        CheckConstraint(
            "minimum_stock_level >= 0",
            name="ck_stock_batch_minimum_non_negative",
        ),
        # Query: FEFO candidates for a drug at a pharmacy
        Index("idx_stock_batch_fefo", "pharmacy_id", "drug_id", "expiry_date"),
        # Query: expiry sweep / expiring report per pharmacy
        Index("idx_stock_batch_pharmacy_expiry", "pharmacy_id", "expiry_date"),
    )

    pharmacy_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)

    drug_id: Mapped[int] = mapped_column(BigInteger, nullable=False)

    batch_number: Mapped[str] = mapped_column(String(100), nullable=False)

    quantity: Mapped[Decimal] = mapped_column(
        Numeric(38, 9), nullable=False, default=Decimal("0")
    )

    allocated_quantity: Mapped[Decimal] = mapped_column(
        Numeric(38, 9), nullable=False, default=Decimal("0")
    )

    minimum_stock_level: Mapped[Decimal] = mapped_column(
        Numeric(38, 9), nullable=False, default=Decimal("0")
    )

    expiry_date: Mapped[date] = mapped_column(Date, nullable=False)

    cost_price: Mapped[Decimal] = mapped_column(Numeric(38, 9), nullable=False)

    selling_price: Mapped[Decimal] = mapped_column(Numeric(38, 9), nullable=False)

    is_quarantined: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False
    )

    # Supplier metadata
    supplier_name: Mapped[str | None] = mapped_column(String(255), nullable=True)

    supplier_invoice_number: Mapped[str | None] = mapped_column(
        String(100), nullable=True
    )

    received_date: Mapped[date | None] = mapped_column(Date, nullable=True)

    notes: Mapped[str | None] = mapped_column(String(4000), nullable=True)

    def __repr__(self) -> str:
        return (
            f"<StockBatch {self.pharmacy_id}/{self.drug_id}/{self.batch_number}: "
            f"qty={self.quantity} allocated={self.allocated_quantity} "
            f"expiry={self.expiry_date}>"
        )
