"""
MovementLedger -- append-only store of stock movements.

Responsibility:
    Appends immutable ``StockMovement`` rows, answers "what was the last
    movement of this batch" (the head that valuation and sequencing chain
    from), streams a pharmacy's history newest first, and aggregates the
    per-batch ledger sums that reconciliation compares against state.

Architecture position:
    Kernel > Services -- imperative shell.  Called by the stock operations
    engine inside its savepoint.

Invariants enforced:
    - Append-only: no update or delete method exists; the ORM listeners and
      PostgreSQL triggers reject any attempt from elsewhere.
    - Chain continuity: ``append`` requires ``sequence`` to be exactly one
      past the current head of the batch.  The head is read while the batch
      row is locked, and (pharmacy, drug, batch, sequence) is unique.

Failure modes:
    - ValueError on a broken chain (programming error in the caller).
    - IntegrityError on a duplicate sequence (concurrent writer slipped past
      the row lock; surfaced as ConcurrencyConflictError by the engine).

Audit relevance:
    Every quantity or reservation change in the system is one row here.
"""

from collections.abc import Iterator
from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy import func, select

from stock_kernel.domain.batch import BatchKey
from stock_kernel.domain.movement import StockMovement
from stock_kernel.exceptions import LedgerChainError
from stock_kernel.logging_config import get_logger
from stock_kernel.models.stock_movement import StockMovementModel
from stock_kernel.services.base import BaseService

logger = get_logger("services.movement_ledger")

ZERO = Decimal("0")

# Scale of the Numeric(38, 9) quantity and money columns
_SCALE = Decimal("1e-9")


def _as_decimal(value: Any) -> Decimal:
    """Aggregate result as a Decimal at column scale (SQLite sums are REAL)."""
    if value is None:
        return ZERO
    result = value if isinstance(value, Decimal) else Decimal(str(value))
    return result.quantize(_SCALE)


class MovementLedger(BaseService[StockMovementModel]):
    """
    Repository for the movement ledger.

    Guarantees:
        - ``latest_for`` is the highest-sequence movement of the batch.
        - ``list_for`` is a generator: finite, lazy, single pass.

    Non-goals:
        - No update or delete in normal operation.
    """

    def _key_filter(self, key: BatchKey):
        return (
            StockMovementModel.pharmacy_id == key.pharmacy_id,
            StockMovementModel.drug_id == key.drug_id,
            StockMovementModel.batch_number == key.batch_number,
        )

    def append(self, movement: StockMovement) -> StockMovement:
        """
        Persist one movement.

        Preconditions:
            - The batch row for ``movement`` is locked by the caller.
            - ``movement.sequence`` == head sequence + 1 (1 for a new batch).

        Postconditions:
            - Row flushed (not committed); returns the persisted snapshot.

        Raises:
            LedgerChainError: If the sequence does not extend the batch's chain.
        """
        key = BatchKey(movement.pharmacy_id, movement.drug_id, movement.batch_number)
        head = self.head_sequence(key)
        if movement.sequence != head + 1:
            raise LedgerChainError(str(key), head + 1, movement.sequence)

        model = StockMovementModel(
            id=movement.id,
            movement_type=movement.movement_type.value,
            pharmacy_id=movement.pharmacy_id,
            drug_id=movement.drug_id,
            batch_number=movement.batch_number,
            sequence=movement.sequence,
            quantity=movement.quantity,
            allocated_delta=movement.allocated_delta,
            balance_after=movement.balance_after,
            valuation_rate=movement.valuation_rate,
            stock_value=movement.stock_value,
            stock_value_difference=movement.stock_value_difference,
            reference_type=movement.reference_type,
            reference_id=movement.reference_id,
            reference_number=movement.reference_number,
            notes=movement.notes,
            user_id=movement.user_id,
            related_pharmacy_id=movement.related_pharmacy_id,
            related_movement_id=movement.related_movement_id,
            posting_datetime=movement.posting_datetime,
            fiscal_year=movement.fiscal_year,
            fiscal_period=movement.fiscal_period,
            movement_metadata=dict(movement.metadata) or None,
            created_at=movement.created_at,
        )
        self.session.add(model)
        self.session.flush()

        logger.debug(
            "movement_appended",
            extra={
                "movement_id": str(movement.id),
                "movement_type": movement.movement_type.value,
                "batch_key": str(key),
                "sequence": movement.sequence,
                "quantity": str(movement.quantity),
                "balance_after": str(movement.balance_after),
            },
        )
        return StockMovement.from_model(model)

    def head_sequence(self, key: BatchKey) -> int:
        """Highest sequence recorded for the batch, 0 when it has no movements."""
        value = self.session.execute(
            select(func.coalesce(func.max(StockMovementModel.sequence), 0)).where(
                *self._key_filter(key)
            )
        ).scalar_one()
        return int(value)

    def latest_for(self, key: BatchKey) -> StockMovement | None:
        """The most recent movement of the batch, or None if it has none."""
        model = self.session.execute(
            select(StockMovementModel)
            .where(*self._key_filter(key))
            .order_by(StockMovementModel.sequence.desc())
            .limit(1)
        ).scalar_one_or_none()
        return StockMovement.from_model(model) if model is not None else None

    def list_for(self, pharmacy_id: UUID, limit: int) -> Iterator[StockMovement]:
        """
        Movements of a pharmacy, most recent first, at most ``limit`` rows.

        Ties on ``created_at`` break on the per-batch sequence, so two
        movements of the same batch never swap order.
        """
        stmt = (
            select(StockMovementModel)
            .where(StockMovementModel.pharmacy_id == pharmacy_id)
            .order_by(
                StockMovementModel.created_at.desc(),
                StockMovementModel.sequence.desc(),
            )
            .limit(limit)
        )
        for model in self.session.execute(stmt).scalars():
            yield StockMovement.from_model(model)

    def history_for(self, key: BatchKey) -> list[StockMovement]:
        """The full chain of one batch, oldest first."""
        rows = self.session.execute(
            select(StockMovementModel)
            .where(*self._key_filter(key))
            .order_by(StockMovementModel.sequence.asc())
        ).scalars().all()
        return [StockMovement.from_model(row) for row in rows]

    def sums_for_pharmacy(self, pharmacy_id: UUID) -> dict[tuple[int, str], tuple[Decimal, Decimal]]:
        """
        Per-batch ledger sums for one pharmacy.

        Returns:
            ``{(drug_id, batch_number): (sum(quantity), sum(allocated_delta))}``
        """
        rows = self.session.execute(
            select(
                StockMovementModel.drug_id,
                StockMovementModel.batch_number,
                func.sum(StockMovementModel.quantity),
                func.sum(StockMovementModel.allocated_delta),
            )
            .where(StockMovementModel.pharmacy_id == pharmacy_id)
            .group_by(StockMovementModel.drug_id, StockMovementModel.batch_number)
        ).all()
        return {
            (drug_id, batch_number): (_as_decimal(qty), _as_decimal(allocated))
            for drug_id, batch_number, qty, allocated in rows
        }

    def latest_values_for_pharmacy(self, pharmacy_id: UUID) -> dict[tuple[int, str], Decimal]:
        """Running ``stock_value`` at the head of every batch chain."""
        head = (
            select(
                StockMovementModel.drug_id,
                StockMovementModel.batch_number,
                func.max(StockMovementModel.sequence).label("head"),
            )
            .where(StockMovementModel.pharmacy_id == pharmacy_id)
            .group_by(StockMovementModel.drug_id, StockMovementModel.batch_number)
            .subquery()
        )
        rows = self.session.execute(
            select(
                StockMovementModel.drug_id,
                StockMovementModel.batch_number,
                StockMovementModel.stock_value,
            ).join(
                head,
                (StockMovementModel.drug_id == head.c.drug_id)
                & (StockMovementModel.batch_number == head.c.batch_number)
                & (StockMovementModel.sequence == head.c.head),
            ).where(StockMovementModel.pharmacy_id == pharmacy_id)
        ).all()
        return {
            (drug_id, batch_number): _as_decimal(value)
            for drug_id, batch_number, value in rows
        }
