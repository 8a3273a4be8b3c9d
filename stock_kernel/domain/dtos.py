"""
DTOs -- Pure domain data transfer objects.

Responsibility:
    Immutable structures that cross the kernel boundary: reference data read
    from collaborators (pharmacies, drugs) and the results returned by every
    stock operation.

Architecture position:
    Kernel > Domain -- pure functional core, zero I/O.  Services build these
    from ORM rows; callers never see ORM entities.

Data flow:
    request args -> StockOperationsEngine -> *Result (StockBatch + StockMovement)
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import TYPE_CHECKING
from uuid import UUID

from stock_kernel.domain.batch import StockBatch
from stock_kernel.domain.movement import StockMovement

if TYPE_CHECKING:
    from stock_kernel.models.drug import DrugModel
    from stock_kernel.models.pharmacy import PharmacyModel

# =============================================================================
# Reference data (owned by external collaborators, read-only here)
# =============================================================================


@dataclass(frozen=True)
class PharmacyInfo:
    id: UUID
    organization_id: UUID
    code: str
    name: str
    is_active: bool = True
    is_main_warehouse: bool = False

    @classmethod
    def from_model(cls, model: PharmacyModel) -> PharmacyInfo:
        return cls(
            id=model.id,
            organization_id=model.organization_id,
            code=model.code,
            name=model.name,
            is_active=model.is_active,
            is_main_warehouse=model.is_main_warehouse,
        )


@dataclass(frozen=True)
class DrugReference:
    drug_id: int
    name: str
    reference_price: Decimal | None = None
    is_active: bool = True

    @classmethod
    def from_model(cls, model: DrugModel) -> DrugReference:
        return cls(
            drug_id=model.drug_id,
            name=model.name,
            reference_price=model.reference_price,
            is_active=model.is_active,
        )


# =============================================================================
# Operation results
# =============================================================================


@dataclass(frozen=True)
class BatchMovementResult:
    """A single-batch operation: the batch after the change and its movement."""

    batch: StockBatch
    movement: StockMovement


@dataclass(frozen=True)
class ReceiveResult(BatchMovementResult):
    created: bool = False


@dataclass(frozen=True)
class DispenseResult:
    """FEFO dispense outcome.

    ``remaining_stock`` is the drug's available quantity across all sellable
    batches after the dispense.
    """

    pharmacy_id: UUID
    drug_id: int
    requested: Decimal
    movements: tuple[StockMovement, ...]
    batches: tuple[StockBatch, ...]
    remaining_stock: Decimal


@dataclass(frozen=True)
class TransferResult:
    source_batch: StockBatch
    destination_batch: StockBatch
    outbound: StockMovement
    inbound: StockMovement
    destination_created: bool = False


@dataclass(frozen=True)
class AllocationResult:
    """Outcome of allocate or release."""

    pharmacy_id: UUID
    drug_id: int
    requested: Decimal
    movements: tuple[StockMovement, ...]
    batches: tuple[StockBatch, ...]


@dataclass(frozen=True)
class ExpiryRemovalResult:
    pharmacy_id: UUID
    movements: tuple[StockMovement, ...] = ()
    batches: tuple[StockBatch, ...] = ()
    total_quantity: Decimal = Decimal("0")
    total_cost_value: Decimal = Decimal("0")


@dataclass(frozen=True)
class ReconciliationDiscrepancy:
    """One batch whose stored state disagreed with its ledger."""

    drug_id: int
    batch_number: str
    ledger_quantity: Decimal
    state_quantity: Decimal
    repaired_quantity: Decimal
    ledger_allocated: Decimal
    state_allocated: Decimal
    repaired_allocated: Decimal

    @property
    def difference(self) -> Decimal:
        return self.ledger_quantity - self.state_quantity


@dataclass(frozen=True)
class ReconciliationReport:
    pharmacy_id: UUID
    batches_checked: int
    discrepancies: tuple[ReconciliationDiscrepancy, ...] = ()
    movements: tuple[StockMovement, ...] = ()

    @property
    def is_clean(self) -> bool:
        return not self.discrepancies


# =============================================================================
# Query results
# =============================================================================


@dataclass(frozen=True)
class StockLevel:
    """A batch with its read-time derived state."""

    batch: StockBatch
    available_quantity: Decimal
    is_expired: bool
    is_expiring_soon: bool
    days_until_expiry: int


@dataclass(frozen=True)
class ValuationLine:
    drug_id: int
    batch_number: str
    quantity: Decimal
    cost_price: Decimal
    selling_price: Decimal
    stock_value: Decimal
    potential_revenue: Decimal
    potential_profit: Decimal
    margin_percent: Decimal
    ledger_stock_value: Decimal


@dataclass(frozen=True)
class ValuationReport:
    pharmacy_id: UUID
    lines: tuple[ValuationLine, ...] = ()
    total_stock_value: Decimal = Decimal("0")
    total_potential_revenue: Decimal = Decimal("0")
    total_potential_profit: Decimal = Decimal("0")
    total_ledger_stock_value: Decimal = Decimal("0")
