"""
Module: stock_kernel.models.drug
Responsibility: ORM mapping of the drug reference catalog.
Architecture position: Kernel > Models.  May import from db/base.py only.

The catalog is static master data maintained elsewhere.  The stock kernel
reads it (existence check and reference price for ``receive``) and never
writes it.
"""

from __future__ import annotations

from decimal import Decimal

from sqlalchemy import BigInteger, Boolean, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column

from stock_kernel.db.base import Base


class DrugModel(Base):
    """One catalog drug, addressed by its integer catalog id."""

    __tablename__ = "drugs"

    drug_id: Mapped[int] = mapped_column(BigInteger, nullable=False, unique=True)

    name: Mapped[str] = mapped_column(String(255), nullable=False)

    generic_name: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Default selling price for new receipts when the caller omits one
    reference_price: Mapped[Decimal | None] = mapped_column(
        Numeric(38, 9), nullable=True
    )

    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    def __repr__(self) -> str:
        return f"<Drug {self.drug_id}: {self.name}>"
