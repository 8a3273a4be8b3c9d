"""
Module: stock_kernel.models.pharmacy
Responsibility: ORM persistence for pharmacies (tenant-owned stock locations).
Architecture position: Kernel > Models.  May import from db/base.py only.

Pharmacy administration (creation, renaming, licensing) is owned by an
external service; the stock kernel only reads these rows to scope access
and to reject writes against deactivated pharmacies.
"""

from __future__ import annotations

from uuid import UUID

from sqlalchemy import Boolean, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from stock_kernel.db.base import TimestampedBase, UUIDString


class PharmacyModel(TimestampedBase):
    """A pharmacy or warehouse belonging to exactly one organization."""

    __tablename__ = "pharmacies"

    __table_args__ = (
        Index("idx_pharmacy_organization", "organization_id"),
    )

    organization_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)

    code: Mapped[str] = mapped_column(String(50), nullable=False, unique=True)

    name: Mapped[str] = mapped_column(String(255), nullable=False)

    address: Mapped[str | None] = mapped_column(String(1000), nullable=True)

    license_number: Mapped[str | None] = mapped_column(String(100), nullable=True)

    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    is_main_warehouse: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False
    )

    def __repr__(self) -> str:
        return f"<Pharmacy {self.code}: org={self.organization_id} active={self.is_active}>"
