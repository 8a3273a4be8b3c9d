"""
StockRecordStore -- repository over the current-state stock rows.

Responsibility:
    Finds, locks, creates and rewrites ``stock_batches`` rows, returning
    immutable ``StockBatch`` snapshots.  Every read that feeds a
    select-then-mutate decision takes ``SELECT ... FOR UPDATE`` so the lock
    is held until the caller's transaction ends.

Architecture position:
    Kernel > Services -- imperative shell.  Called only by the stock
    operations engine, inside the engine's savepoint.

Invariants enforced:
    - Lost-update prevention: candidate rows for dispense / allocate /
      release / transfer / adjust / expiry / reconcile are row-locked at
      selection time.
    - Deterministic lock order: locked selections are ordered by
      (expiry_date, batch_number) so two transactions touching the same
      rows acquire them in the same order.
    - Flush only, never commit.

Failure modes:
    - StockBatchNotFoundError from ``find`` when the row is absent.
    - ``create`` returns None when a concurrent transaction inserted the
      same natural key first (the caller re-reads and adds to it).
    - OperationalError / DBAPIError on lock-wait timeout (translated to
      ConcurrencyConflictError by the engine).
"""

from datetime import date
from decimal import Decimal
from uuid import UUID

from sqlalchemy import Select, func, select
from sqlalchemy.exc import IntegrityError

from stock_kernel.domain.batch import BatchKey, StockBatch
from stock_kernel.exceptions import StockBatchNotFoundError
from stock_kernel.logging_config import get_logger
from stock_kernel.models.stock_batch import StockBatchModel
from stock_kernel.services.base import BaseService

logger = get_logger("services.stock_record_store")

# Columns an upsert may rewrite; identity columns never change.
_MUTABLE_FIELDS = (
    "quantity",
    "allocated_quantity",
    "minimum_stock_level",
    "expiry_date",
    "cost_price",
    "selling_price",
    "is_quarantined",
    "supplier_name",
    "supplier_invoice_number",
    "received_date",
    "notes",
    "updated_at",
)


class StockRecordStore(BaseService[StockBatchModel]):
    """
    Repository for ``StockBatch`` rows.

    Contract:
        Returns ``StockBatch`` snapshots.  Writes go through ``create`` and
        ``upsert`` only; rows are never deleted.

    Guarantees:
        - ``lock=True`` reads issue ``FOR UPDATE`` and refresh the identity
          map (``populate_existing``) so the snapshot reflects the latest
          committed state once the lock is granted.

    Non-goals:
        - Does NOT enforce stock rules; the engine validates before writing
          and the table's check constraints back it up.
    """

    def _locked(self, stmt: Select, lock: bool) -> Select:
        if lock:
            return stmt.with_for_update().execution_options(populate_existing=True)
        return stmt

    def _scalars(self, stmt: Select, lock: bool) -> list[StockBatch]:
        rows = self.session.execute(self._locked(stmt, lock)).scalars().all()
        return [StockBatch.from_model(row) for row in rows]

    # -------------------------------------------------------------------------
    # Point lookups
    # -------------------------------------------------------------------------

    def find_optional(self, key: BatchKey, *, lock: bool = False) -> StockBatch | None:
        stmt = select(StockBatchModel).where(
            StockBatchModel.pharmacy_id == key.pharmacy_id,
            StockBatchModel.drug_id == key.drug_id,
            StockBatchModel.batch_number == key.batch_number,
        )
        model = self.session.execute(self._locked(stmt, lock)).scalar_one_or_none()
        return StockBatch.from_model(model) if model is not None else None

    def find(self, key: BatchKey, *, lock: bool = False) -> StockBatch:
        """
        Load one batch by natural key.

        Raises:
            StockBatchNotFoundError: If no row exists for ``key``.
        """
        batch = self.find_optional(key, lock=lock)
        if batch is None:
            raise StockBatchNotFoundError(key.pharmacy_id, key.drug_id, key.batch_number)
        return batch

    def lock_pair(self, first: BatchKey, second: BatchKey) -> tuple[StockBatch | None, StockBatch | None]:
        """Lock two batches (either may be absent) in a deterministic order."""
        ordered = sorted((first, second), key=lambda k: (str(k.pharmacy_id), k.drug_id, k.batch_number))
        found = {key: self.find_optional(key, lock=True) for key in ordered}
        return found[first], found[second]

    # -------------------------------------------------------------------------
    # Candidate selections
    # -------------------------------------------------------------------------

    def find_available(
        self,
        pharmacy_id: UUID,
        drug_id: int,
        today: date,
        *,
        lock: bool = True,
    ) -> list[StockBatch]:
        """
        Sellable batches of a drug, earliest expiry first.

        Filters: not quarantined, ``expiry_date >= today``,
        ``quantity > allocated_quantity``.
        """
        stmt = (
            select(StockBatchModel)
            .where(
                StockBatchModel.pharmacy_id == pharmacy_id,
                StockBatchModel.drug_id == drug_id,
                StockBatchModel.is_quarantined.is_(False),
                StockBatchModel.expiry_date >= today,
                StockBatchModel.quantity > StockBatchModel.allocated_quantity,
            )
            .order_by(StockBatchModel.expiry_date.asc(), StockBatchModel.batch_number.asc())
        )
        return self._scalars(stmt, lock)

    def find_allocated(
        self,
        pharmacy_id: UUID,
        drug_id: int,
        *,
        lock: bool = True,
    ) -> list[StockBatch]:
        """Batches of a drug carrying a reservation, earliest expiry first."""
        stmt = (
            select(StockBatchModel)
            .where(
                StockBatchModel.pharmacy_id == pharmacy_id,
                StockBatchModel.drug_id == drug_id,
                StockBatchModel.allocated_quantity > 0,
            )
            .order_by(StockBatchModel.expiry_date.asc(), StockBatchModel.batch_number.asc())
        )
        return self._scalars(stmt, lock)

    def find_expired(
        self,
        pharmacy_id: UUID,
        today: date,
        *,
        lock: bool = True,
    ) -> list[StockBatch]:
        """Batches past expiry (``expiry_date < today``) still holding units."""
        stmt = (
            select(StockBatchModel)
            .where(
                StockBatchModel.pharmacy_id == pharmacy_id,
                StockBatchModel.expiry_date < today,
                StockBatchModel.quantity > 0,
            )
            .order_by(StockBatchModel.expiry_date.asc(), StockBatchModel.batch_number.asc())
        )
        return self._scalars(stmt, lock)

    def find_for_pharmacy(
        self,
        pharmacy_id: UUID,
        drug_id: int | None = None,
        *,
        lock: bool = False,
    ) -> list[StockBatch]:
        """Every batch at a pharmacy (optionally one drug), zero rows included."""
        stmt = select(StockBatchModel).where(StockBatchModel.pharmacy_id == pharmacy_id)
        if drug_id is not None:
            stmt = stmt.where(StockBatchModel.drug_id == drug_id)
        stmt = stmt.order_by(
            StockBatchModel.drug_id.asc(),
            StockBatchModel.expiry_date.asc(),
            StockBatchModel.batch_number.asc(),
        )
        return self._scalars(stmt, lock)

    def total_available(self, pharmacy_id: UUID, drug_id: int, today: date) -> Decimal:
        """Sum of available units across sellable batches (no lock)."""
        total = self.session.execute(
            select(
                func.coalesce(
                    func.sum(StockBatchModel.quantity - StockBatchModel.allocated_quantity),
                    0,
                )
            ).where(
                StockBatchModel.pharmacy_id == pharmacy_id,
                StockBatchModel.drug_id == drug_id,
                StockBatchModel.is_quarantined.is_(False),
                StockBatchModel.expiry_date >= today,
            )
        ).scalar_one()
        result = total if isinstance(total, Decimal) else Decimal(str(total))
        return result.quantize(Decimal("1e-9"))

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    def create(self, batch: StockBatch) -> StockBatch | None:
        """
        Insert a new batch row.

        The insert runs in a savepoint; if another transaction committed the
        same (pharmacy, drug, batch) first, the savepoint is rolled back and
        None is returned so the caller can lock the winner's row instead.

        Postconditions: Row flushed (not committed) on success.
        """
        savepoint = self.session.begin_nested()
        try:
            model = StockBatchModel(
                id=batch.id,
                pharmacy_id=batch.pharmacy_id,
                drug_id=batch.drug_id,
                batch_number=batch.batch_number,
                created_at=batch.created_at,
                **{name: getattr(batch, name) for name in _MUTABLE_FIELDS},
            )
            self.session.add(model)
            self.session.flush()
            savepoint.commit()
        except IntegrityError:
            savepoint.rollback()
            logger.info(
                "stock_batch_create_race",
                extra={
                    "pharmacy_id": str(batch.pharmacy_id),
                    "drug_id": batch.drug_id,
                    "batch_number": batch.batch_number,
                },
            )
            return None

        logger.debug(
            "stock_batch_created",
            extra={"batch_id": str(batch.id), "batch_key": str(batch.key)},
        )
        return StockBatch.from_model(model)

    def upsert(self, batch: StockBatch) -> StockBatch:
        """
        Persist ``batch`` as the current state of its row.

        Updates the row with ``batch.id`` when it exists (it is normally
        already locked and in the identity map), otherwise inserts it.

        Postconditions: Changes flushed (not committed).
        """
        model = self.session.get(StockBatchModel, batch.id)
        if model is None:
            model = StockBatchModel(
                id=batch.id,
                pharmacy_id=batch.pharmacy_id,
                drug_id=batch.drug_id,
                batch_number=batch.batch_number,
                created_at=batch.created_at,
            )
            self.session.add(model)
        for name in _MUTABLE_FIELDS:
            setattr(model, name, getattr(batch, name))
        self.session.flush()
        return StockBatch.from_model(model)

