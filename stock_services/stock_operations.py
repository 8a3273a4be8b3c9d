"""
StockOperationsEngine -- every quantity-changing stock operation.

Responsibility:
    Orchestrates receive, dispense, adjust, transfer, allocate, release,
    remove-expired, reconcile, write-off and customer-return.  Each
    operation authorizes the caller, locks the rows it will decide on,
    runs the pure FEFO planner / valuation calculator, rewrites the stock
    rows and appends one ledger movement per touched batch.

Architecture position:
    Services -- imperative shell.  Composes the kernel stores
    (StockRecordStore, MovementLedger, AccessScope) with the pure engines
    (plan_fefo, plan_release, compute_valuation).

Invariants enforced:
    - Atomicity: each operation body runs inside ``session.begin_nested()``;
      any exception rolls back every row the operation wrote.  The engine
      flushes but never commits; the caller owns the outer transaction.
    - Authorization precedes any read of stock rows.
    - ``0 <= allocated_quantity <= quantity`` is checked on every batch
      before it is written (the table check constraints back this up).
    - Ledger-state: every change to ``quantity`` is mirrored by a movement
      ``quantity``; every change to ``allocated_quantity`` by a movement
      ``allocated_delta``.
    - Valuation chain: each movement's ``stock_value`` extends the head of
      its own batch's chain, read inside the same locked transaction.

Failure modes:
    - Typed ``StockKernelError`` subclasses (see stock_kernel.exceptions),
      tagged with the operation name.
    - ConcurrencyConflictError for lock-wait timeouts, deadlocks,
      serialization failures and ledger sequence collisions.

Audit relevance:
    Every operation logs stock_operation_started/completed/failed under a
    LogContext carrying correlation id, actor, organization, pharmacy and
    operation name.
"""

from __future__ import annotations

import time
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from dataclasses import replace
from datetime import date, datetime, timezone, tzinfo
from decimal import Decimal
from typing import Any
from uuid import UUID, uuid4
from zoneinfo import ZoneInfo

from sqlalchemy import text
from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError
from sqlalchemy.orm import Session

from stock_config import StockConfig
from stock_engines.fefo import FefoPlan, plan_fefo, plan_release
from stock_engines.valuation import compute_valuation, previous_stock_value
from stock_kernel.db.types import (
    ZERO,
    non_negative_decimal,
    positive_decimal,
    to_decimal,
)
from stock_kernel.domain.batch import BatchKey, StockBatch, check_quantities
from stock_kernel.domain.clock import Clock, SystemClock
from stock_kernel.domain.context import RequestContext
from stock_kernel.domain.dtos import (
    AllocationResult,
    BatchMovementResult,
    DispenseResult,
    ExpiryRemovalResult,
    ReceiveResult,
    ReconciliationDiscrepancy,
    ReconciliationReport,
    TransferResult,
)
from stock_kernel.domain.fiscal import fiscal_tag_for
from stock_kernel.domain.movement import (
    WRITE_OFF_TYPES,
    MovementType,
    ReferenceType,
    StockMovement,
)
from stock_kernel.exceptions import (
    ConcurrencyConflictError,
    DrugNotFoundError,
    InsufficientStockError,
    InvalidAdjustmentError,
    StockBatchNotFoundError,
    StockKernelError,
    StockValidationError,
)
from stock_kernel.logging_config import LogContext, get_logger
from stock_kernel.selectors.reference_selector import ReferenceDataSelector
from stock_kernel.services.access_scope import AccessScope
from stock_kernel.services.movement_ledger import MovementLedger
from stock_kernel.services.stock_record_store import StockRecordStore

logger = get_logger("services.stock_operations")

# PostgreSQL SQLSTATEs that mean "retry the whole operation".
_CONFLICT_SQLSTATES = {
    "55P03": "lock_not_available",
    "40001": "serialization_failure",
    "40P01": "deadlock_detected",
}


def _conflict_reason(exc: DBAPIError) -> str | None:
    """Classify a driver error as a concurrency conflict, or None."""
    sqlstate = getattr(exc.orig, "pgcode", None)
    if sqlstate in _CONFLICT_SQLSTATES:
        return _CONFLICT_SQLSTATES[sqlstate]
    message = str(exc.orig)
    if isinstance(exc, IntegrityError) and (
        "uq_stock_movement_chain" in message or "stock_movements.sequence" in message
    ):
        return "ledger_sequence_conflict"
    if isinstance(exc, OperationalError) and "database is locked" in message:
        return "database_locked"
    return None


def _json_safe(value: Any) -> Any:
    """Metadata values as JSON: Decimals and UUIDs as strings, dates ISO."""
    if isinstance(value, Mapping):
        return {str(k): _json_safe(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_json_safe(v) for v in value]
    if isinstance(value, (Decimal, UUID)):
        return str(value)
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    return value


def business_timezone(name: str) -> tzinfo:
    """Resolve the configured business timezone; UTC needs no tz database."""
    return timezone.utc if name == "UTC" else ZoneInfo(name)


def _batch_number(value: Any) -> str:
    if not isinstance(value, str) or not value.strip():
        raise StockValidationError("batch_number", "must be a non-empty string", value)
    return value.strip()


class StockOperationsEngine:
    """
    The stock operations API.

    Contract:
        One instance per session.  Every public operation takes the
        caller's ``RequestContext`` first and returns a frozen result DTO.

    Guarantees:
        - All-or-nothing per operation (savepoint).
        - Candidate rows are locked with ``SELECT ... FOR UPDATE`` at
          selection time and held until the caller's transaction ends.
        - ``today`` comes from the injected clock in the configured
          business timezone; expired means ``expiry_date < today``.

    Non-goals:
        - Does NOT commit.  Use ``session_scope()`` or ``run_with_retry``.
        - Does NOT guard against a caller applying the same business
          document twice (e.g. posting one purchase receipt twice).
    """

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        config: StockConfig | None = None,
    ):
        self._session = session
        self._clock = clock or SystemClock()
        self._config = config or StockConfig()
        self._tz = business_timezone(self._config.expiry.business_timezone)
        self._store = StockRecordStore(session)
        self._ledger = MovementLedger(session)
        self._access = AccessScope(session)
        self._reference = ReferenceDataSelector(session)

    # =========================================================================
    # Infrastructure
    # =========================================================================

    def today(self) -> date:
        """Current business date."""
        return self._clock.today(self._tz)

    def _set_lock_timeout(self) -> None:
        if self._session.get_bind().dialect.name != "postgresql":
            return
        timeout_ms = int(self._config.locking.lock_timeout_ms)
        self._session.execute(text(f"SET LOCAL lock_timeout = {timeout_ms}"))

    @contextmanager
    def _operation(
        self,
        name: str,
        ctx: RequestContext,
        pharmacy_id: UUID,
        **fields: Any,
    ) -> Iterator[None]:
        """Savepoint, LogContext and error translation around one operation."""
        with LogContext.bind(
            correlation_id=ctx.correlation_id,
            actor_id=ctx.user_id,
            organization_id=ctx.organization_id,
            pharmacy_id=pharmacy_id,
            operation=name,
        ):
            logger.info("stock_operation_started", extra=_json_safe(fields))
            t0 = time.monotonic()
            savepoint = self._session.begin_nested()
            try:
                self._set_lock_timeout()
                yield
                savepoint.commit()
            except StockKernelError as exc:
                savepoint.rollback()
                exc.with_operation(name)
                logger.warning(
                    "stock_operation_failed",
                    extra={"error_code": exc.code, "error": str(exc)},
                )
                raise
            except DBAPIError as exc:
                savepoint.rollback()
                reason = _conflict_reason(exc)
                if reason is None:
                    logger.exception("stock_operation_failed")
                    raise
                logger.warning(
                    "stock_operation_failed",
                    extra={"error_code": ConcurrencyConflictError.code, "reason": reason},
                )
                raise ConcurrencyConflictError(name, reason) from exc
            except Exception:
                savepoint.rollback()
                logger.exception("stock_operation_failed")
                raise

            logger.info(
                "stock_operation_completed",
                extra={"duration_ms": round((time.monotonic() - t0) * 1000, 2)},
            )

    def _write(self, batch: StockBatch) -> StockBatch:
        if not check_quantities(batch.quantity, batch.allocated_quantity):
            raise StockValidationError(
                "allocated_quantity",
                f"must stay between 0 and quantity {batch.quantity}",
                batch.allocated_quantity,
            )
        return self._store.upsert(batch)

    def _record(
        self,
        ctx: RequestContext,
        batch: StockBatch,
        movement_type: MovementType,
        quantity: Decimal,
        *,
        reference_type: str | None,
        allocated_delta: Decimal = ZERO,
        rate: Decimal | None = None,
        reference_number: str | None = None,
        reference_id: str | None = None,
        notes: str | None = None,
        related_pharmacy_id: UUID | None = None,
        related_movement_id: UUID | None = None,
        movement_id: UUID | None = None,
        metadata: Mapping[str, Any] | None = None,
    ) -> StockMovement:
        """
        Append the movement describing a change already applied to ``batch``.

        ``batch`` is the post-change state: its quantity becomes
        ``balance_after``.  The valuation rate defaults to the batch cost
        price.
        """
        previous = self._ledger.latest_for(batch.key)
        valuation = compute_valuation(
            previous_stock_value=previous_stock_value(previous),
            quantity_delta=quantity,
            rate=batch.cost_price if rate is None else rate,
        )
        now = self._clock.now_utc()
        tag = fiscal_tag_for(
            now.astimezone(self._tz).date(),
            self._config.fiscal.year_start_month,
        )
        movement = StockMovement(
            id=movement_id or uuid4(),
            sequence=(previous.sequence + 1) if previous is not None else 1,
            movement_type=movement_type,
            pharmacy_id=batch.pharmacy_id,
            drug_id=batch.drug_id,
            batch_number=batch.batch_number,
            quantity=quantity,
            allocated_delta=allocated_delta,
            balance_after=batch.quantity,
            valuation_rate=valuation.valuation_rate,
            stock_value=valuation.stock_value,
            stock_value_difference=valuation.stock_value_difference,
            posting_datetime=now,
            fiscal_year=tag.fiscal_year,
            fiscal_period=tag.fiscal_period,
            created_at=now,
            reference_type=reference_type,
            reference_id=reference_id,
            reference_number=reference_number,
            notes=notes,
            user_id=ctx.user_id,
            related_pharmacy_id=related_pharmacy_id,
            related_movement_id=related_movement_id,
            metadata=_json_safe(metadata or {}),
        )
        return self._ledger.append(movement)

    # =========================================================================
    # Receive
    # =========================================================================

    def receive(
        self,
        ctx: RequestContext,
        pharmacy_id: UUID,
        drug_id: int,
        batch_number: str,
        quantity: Any,
        expiry_date: date,
        cost_price: Any,
        *,
        selling_price: Any = None,
        minimum_stock_level: Any = None,
        supplier_name: str | None = None,
        supplier_invoice_number: str | None = None,
        reference_type: str = ReferenceType.MANUAL_RECEIVE,
        reference_number: str | None = None,
        reference_id: str | None = None,
        notes: str | None = None,
    ) -> ReceiveResult:
        """
        Receive units into a batch, creating the batch on first receipt.

        New batch: ``expiry_date`` must not be in the past; selling price
        defaults to the drug's reference price, else the cost price.
        Existing batch: quantity is added, the supplied prices overwrite the
        stored ones (last price wins) and notes are appended with a
        timestamp.  The PURCHASE movement is valued at the received cost.

        Raises:
            DrugNotFoundError: Drug unknown to the reference catalog.
            StockValidationError: Bad quantity/price, or past expiry on a
                new batch.
        """
        with self._operation(
            "receive", ctx, pharmacy_id,
            drug_id=drug_id, batch_number=batch_number, quantity=quantity,
        ):
            self._access.authorize(ctx, pharmacy_id)
            qty = positive_decimal(quantity, "quantity")
            cost = non_negative_decimal(cost_price, "cost_price")
            price = (
                None if selling_price is None
                else non_negative_decimal(selling_price, "selling_price")
            )
            minimum = (
                None if minimum_stock_level is None
                else non_negative_decimal(minimum_stock_level, "minimum_stock_level")
            )
            number = _batch_number(batch_number)

            drug = self._reference.get_drug(drug_id)
            if drug is None:
                raise DrugNotFoundError(drug_id)

            today = self.today()
            now = self._clock.now_utc()
            key = BatchKey(pharmacy_id, drug_id, number)

            batch: StockBatch | None = None
            existing = self._store.find_optional(key, lock=True)
            if existing is None:
                if expiry_date < today:
                    raise StockValidationError(
                        "expiry_date", "must not be in the past for a new batch", expiry_date
                    )
                if price is None:
                    price = drug.reference_price if drug.reference_price is not None else cost
                batch = self._store.create(
                    StockBatch(
                        id=uuid4(),
                        pharmacy_id=pharmacy_id,
                        drug_id=drug_id,
                        batch_number=number,
                        quantity=qty,
                        allocated_quantity=ZERO,
                        minimum_stock_level=minimum if minimum is not None else ZERO,
                        expiry_date=expiry_date,
                        cost_price=cost,
                        selling_price=price,
                        supplier_name=supplier_name,
                        supplier_invoice_number=supplier_invoice_number,
                        received_date=today,
                        notes=notes,
                        created_at=now,
                        updated_at=now,
                    )
                )
                if batch is None:
                    # Lost the insert race; add to the winner's row.
                    existing = self._store.find(key, lock=True)

            created = batch is not None
            if batch is None:
                if existing.expiry_date != expiry_date:
                    logger.warning(
                        "receive_expiry_mismatch",
                        extra={
                            "batch_key": str(key),
                            "stored_expiry": existing.expiry_date.isoformat(),
                            "received_expiry": expiry_date.isoformat(),
                        },
                    )
                batch = self._write(
                    replace(
                        existing,
                        quantity=existing.quantity + qty,
                        cost_price=cost,
                        selling_price=price if price is not None else existing.selling_price,
                        minimum_stock_level=(
                            minimum if minimum is not None else existing.minimum_stock_level
                        ),
                        supplier_name=supplier_name or existing.supplier_name,
                        supplier_invoice_number=(
                            supplier_invoice_number or existing.supplier_invoice_number
                        ),
                        received_date=today,
                        notes=self._append_notes(existing.notes, notes, now),
                        updated_at=now,
                    )
                )

            movement = self._record(
                ctx, batch, MovementType.PURCHASE, qty,
                rate=cost,
                reference_type=reference_type,
                reference_number=reference_number or supplier_invoice_number,
                reference_id=reference_id,
                notes=notes,
            )
            logger.info(
                "stock_received",
                extra={
                    "batch_key": str(key),
                    "quantity": str(qty),
                    "balance_after": str(batch.quantity),
                    "new_batch": created,
                },
            )
            return ReceiveResult(batch=batch, movement=movement, created=created)

    @staticmethod
    def _append_notes(existing: str | None, notes: str | None, now: datetime) -> str | None:
        if not notes:
            return existing
        if not existing:
            return notes
        return f"{existing}\n{now.isoformat()}: {notes}"

    # =========================================================================
    # Dispense
    # =========================================================================

    def dispense(
        self,
        ctx: RequestContext,
        pharmacy_id: UUID,
        drug_id: int,
        quantity: Any,
        *,
        reference_type: str = ReferenceType.MANUAL_DISPENSE,
        reference_number: str | None = None,
        reference_id: str | None = None,
        notes: str | None = None,
    ) -> DispenseResult:
        """
        Remove units FEFO: earliest-expiring sellable batch first.

        All-or-nothing.  One SALE movement per batch drawn, in draw order.

        Raises:
            NoAvailableStockError: No sellable batch.
            InsufficientStockError: Sellable total < quantity (nothing written).
        """
        with self._operation(
            "dispense", ctx, pharmacy_id, drug_id=drug_id, quantity=quantity,
        ):
            self._access.authorize(ctx, pharmacy_id)
            qty = positive_decimal(quantity, "quantity")
            today = self.today()
            now = self._clock.now_utc()

            plan = plan_fefo(
                pharmacy_id=pharmacy_id,
                drug_id=drug_id,
                requested=qty,
                batches=self._store.find_available(pharmacy_id, drug_id, today, lock=True),
                today=today,
            )

            movements: list[StockMovement] = []
            batches: list[StockBatch] = []
            for draw in plan.draws:
                batch = self._write(
                    replace(
                        draw.batch,
                        quantity=draw.batch.quantity - draw.quantity,
                        updated_at=now,
                    )
                )
                movements.append(
                    self._record(
                        ctx, batch, MovementType.SALE, -draw.quantity,
                        reference_type=reference_type,
                        reference_number=reference_number,
                        reference_id=reference_id,
                        notes=notes,
                    )
                )
                batches.append(batch)

            remaining = self._store.total_available(pharmacy_id, drug_id, today)
            logger.info(
                "stock_dispensed",
                extra={
                    "drug_id": drug_id,
                    "quantity": str(qty),
                    "batches_drawn": len(batches),
                    "remaining_stock": str(remaining),
                },
            )
            return DispenseResult(
                pharmacy_id=pharmacy_id,
                drug_id=drug_id,
                requested=qty,
                movements=tuple(movements),
                batches=tuple(batches),
                remaining_stock=remaining,
            )

    # =========================================================================
    # Adjust / write-off / customer return
    # =========================================================================

    def adjust(
        self,
        ctx: RequestContext,
        pharmacy_id: UUID,
        drug_id: int,
        batch_number: str,
        adjustment_quantity: Any,
        reason: str,
        *,
        valuation_rate: Any = None,
        reference_number: str | None = None,
    ) -> BatchMovementResult:
        """
        Apply a signed correction to one batch.

        Raises:
            StockBatchNotFoundError: No such batch.
            InvalidAdjustmentError: Result < 0 or < allocated quantity.
            StockValidationError: Zero adjustment or empty reason.
        """
        with self._operation(
            "adjust", ctx, pharmacy_id,
            drug_id=drug_id, batch_number=batch_number,
            adjustment_quantity=adjustment_quantity,
        ):
            self._access.authorize(ctx, pharmacy_id)
            delta = to_decimal(adjustment_quantity, "adjustment_quantity")
            if delta == ZERO:
                raise StockValidationError("adjustment_quantity", "must not be zero", delta)
            if not reason or not reason.strip():
                raise StockValidationError("reason", "is required", reason)
            rate = (
                None if valuation_rate is None
                else non_negative_decimal(valuation_rate, "valuation_rate")
            )

            batch = self._store.find(
                BatchKey(pharmacy_id, drug_id, _batch_number(batch_number)), lock=True
            )
            new_quantity = batch.quantity + delta
            if new_quantity < ZERO or new_quantity < batch.allocated_quantity:
                raise InvalidAdjustmentError(
                    batch.batch_number, batch.quantity, delta, batch.allocated_quantity
                )

            updated = self._write(
                replace(batch, quantity=new_quantity, updated_at=self._clock.now_utc())
            )
            movement = self._record(
                ctx, updated, MovementType.ADJUSTMENT, delta,
                rate=rate,
                reference_type=ReferenceType.MANUAL_ADJUSTMENT,
                reference_number=reference_number,
                notes=reason,
                metadata={
                    "old_quantity": batch.quantity,
                    "new_quantity": new_quantity,
                    "reason": reason,
                },
            )
            return BatchMovementResult(batch=updated, movement=movement)

    def write_off(
        self,
        ctx: RequestContext,
        pharmacy_id: UUID,
        drug_id: int,
        batch_number: str,
        quantity: Any,
        movement_type: MovementType | str,
        reason: str,
        *,
        reference_number: str | None = None,
    ) -> BatchMovementResult:
        """
        Remove damaged, recalled or supplier-returned units from one batch.

        Only unreserved units can be written off.

        Raises:
            StockValidationError: ``movement_type`` is not a write-off type.
            InvalidAdjustmentError: Available quantity < ``quantity``.
        """
        with self._operation(
            "write_off", ctx, pharmacy_id,
            drug_id=drug_id, batch_number=batch_number, quantity=quantity,
            movement_type=str(getattr(movement_type, "value", movement_type)),
        ):
            self._access.authorize(ctx, pharmacy_id)
            qty = positive_decimal(quantity, "quantity")
            try:
                kind = MovementType(movement_type)
            except ValueError:
                kind = None
            if kind not in WRITE_OFF_TYPES:
                raise StockValidationError(
                    "movement_type",
                    f"must be one of {sorted(t.value for t in WRITE_OFF_TYPES)}",
                    movement_type,
                )
            if not reason or not reason.strip():
                raise StockValidationError("reason", "is required", reason)

            batch = self._store.find(
                BatchKey(pharmacy_id, drug_id, _batch_number(batch_number)), lock=True
            )
            if batch.available_quantity < qty:
                raise InvalidAdjustmentError(
                    batch.batch_number, batch.quantity, -qty, batch.allocated_quantity
                )

            updated = self._write(
                replace(batch, quantity=batch.quantity - qty, updated_at=self._clock.now_utc())
            )
            movement = self._record(
                ctx, updated, kind, -qty,
                reference_type=ReferenceType.WRITE_OFF,
                reference_number=reference_number,
                notes=reason,
                metadata={"reason": reason, "cost_value": qty * batch.cost_price},
            )
            return BatchMovementResult(batch=updated, movement=movement)

    def return_from_customer(
        self,
        ctx: RequestContext,
        pharmacy_id: UUID,
        drug_id: int,
        batch_number: str,
        quantity: Any,
        *,
        reference_number: str | None = None,
        notes: str | None = None,
    ) -> BatchMovementResult:
        """Put units a customer brought back into their original batch."""
        with self._operation(
            "return_from_customer", ctx, pharmacy_id,
            drug_id=drug_id, batch_number=batch_number, quantity=quantity,
        ):
            self._access.authorize(ctx, pharmacy_id)
            qty = positive_decimal(quantity, "quantity")
            batch = self._store.find(
                BatchKey(pharmacy_id, drug_id, _batch_number(batch_number)), lock=True
            )
            updated = self._write(
                replace(batch, quantity=batch.quantity + qty, updated_at=self._clock.now_utc())
            )
            movement = self._record(
                ctx, updated, MovementType.RETURN_FROM_CUSTOMER, qty,
                reference_type=ReferenceType.CUSTOMER_RETURN,
                reference_number=reference_number,
                notes=notes,
            )
            return BatchMovementResult(batch=updated, movement=movement)

    # =========================================================================
    # Transfer
    # =========================================================================

    def transfer(
        self,
        ctx: RequestContext,
        from_pharmacy_id: UUID,
        to_pharmacy_id: UUID,
        drug_id: int,
        batch_number: str,
        quantity: Any,
        *,
        notes: str | None = None,
    ) -> TransferResult:
        """
        Move units of one batch to the same batch number at another pharmacy.

        The destination batch is created on first transfer with the
        source's expiry, prices and supplier.  TRANSFER_OUT and TRANSFER_IN
        reference each other through ``related_movement_id``; both are
        valued at the source cost price against their own batch chains.

        Raises:
            StockValidationError: Source and destination are the same.
            StockBatchNotFoundError: No source batch.
            InsufficientStockError: Source available < ``quantity``.
        """
        with self._operation(
            "transfer", ctx, from_pharmacy_id,
            to_pharmacy_id=to_pharmacy_id, drug_id=drug_id,
            batch_number=batch_number, quantity=quantity,
        ):
            if from_pharmacy_id == to_pharmacy_id:
                raise StockValidationError(
                    "to_pharmacy_id", "must differ from the source pharmacy", to_pharmacy_id
                )
            self._access.authorize(ctx, from_pharmacy_id)
            self._access.authorize(ctx, to_pharmacy_id)
            qty = positive_decimal(quantity, "quantity")
            number = _batch_number(batch_number)
            now = self._clock.now_utc()

            source_key = BatchKey(from_pharmacy_id, drug_id, number)
            dest_key = BatchKey(to_pharmacy_id, drug_id, number)
            source, dest = self._store.lock_pair(source_key, dest_key)
            if source is None:
                raise StockBatchNotFoundError(from_pharmacy_id, drug_id, number)
            if source.available_quantity < qty:
                raise InsufficientStockError(
                    from_pharmacy_id, drug_id, qty, source.available_quantity
                )

            outbound_id, inbound_id = uuid4(), uuid4()
            source_after = self._write(
                replace(source, quantity=source.quantity - qty, updated_at=now)
            )

            dest_after: StockBatch | None = None
            if dest is None:
                dest_after = self._store.create(
                    StockBatch(
                        id=uuid4(),
                        pharmacy_id=to_pharmacy_id,
                        drug_id=drug_id,
                        batch_number=number,
                        quantity=qty,
                        allocated_quantity=ZERO,
                        minimum_stock_level=ZERO,
                        expiry_date=source.expiry_date,
                        cost_price=source.cost_price,
                        selling_price=source.selling_price,
                        supplier_name=source.supplier_name,
                        supplier_invoice_number=source.supplier_invoice_number,
                        received_date=self.today(),
                        notes=f"Transferred from pharmacy {from_pharmacy_id}",
                        created_at=now,
                        updated_at=now,
                    )
                )
                if dest_after is None:
                    dest = self._store.find(dest_key, lock=True)
            created = dest_after is not None
            if dest_after is None:
                dest_after = self._write(
                    replace(dest, quantity=dest.quantity + qty, updated_at=now)
                )

            outbound = self._record(
                ctx, source_after, MovementType.TRANSFER_OUT, -qty,
                rate=source.cost_price,
                movement_id=outbound_id,
                related_movement_id=inbound_id,
                related_pharmacy_id=to_pharmacy_id,
                reference_type=ReferenceType.INTER_PHARMACY_TRANSFER,
                reference_number=f"TO-{to_pharmacy_id}",
                notes=notes,
                metadata={"to_pharmacy_id": to_pharmacy_id},
            )
            inbound = self._record(
                ctx, dest_after, MovementType.TRANSFER_IN, qty,
                rate=source.cost_price,
                movement_id=inbound_id,
                related_movement_id=outbound_id,
                related_pharmacy_id=from_pharmacy_id,
                reference_type=ReferenceType.INTER_PHARMACY_TRANSFER,
                reference_number=f"FROM-{from_pharmacy_id}",
                notes=notes,
                metadata={"from_pharmacy_id": from_pharmacy_id},
            )
            logger.info(
                "stock_transferred",
                extra={
                    "to_pharmacy_id": str(to_pharmacy_id),
                    "batch_number": number,
                    "quantity": str(qty),
                    "destination_created": created,
                },
            )
            return TransferResult(
                source_batch=source_after,
                destination_batch=dest_after,
                outbound=outbound,
                inbound=inbound,
                destination_created=created,
            )

    # =========================================================================
    # Allocate / release
    # =========================================================================

    def allocate(
        self,
        ctx: RequestContext,
        pharmacy_id: UUID,
        drug_id: int,
        quantity: Any,
        reference_type: str,
        reference_number: str | None,
        *,
        notes: str | None = None,
    ) -> AllocationResult:
        """
        Reserve units FEFO without removing them.

        ALLOCATION movements have ``quantity = 0`` and carry the reservation
        in ``allocated_delta``; stock value is carried forward unchanged.

        Raises:
            NoAvailableStockError / InsufficientStockError: as for dispense.
        """
        with self._operation(
            "allocate", ctx, pharmacy_id, drug_id=drug_id, quantity=quantity,
        ):
            self._access.authorize(ctx, pharmacy_id)
            qty = positive_decimal(quantity, "quantity")
            today = self.today()
            plan = plan_fefo(
                pharmacy_id=pharmacy_id,
                drug_id=drug_id,
                requested=qty,
                batches=self._store.find_available(pharmacy_id, drug_id, today, lock=True),
                today=today,
            )
            return self._apply_reservation(
                ctx, plan, MovementType.ALLOCATION,
                reference_type=reference_type,
                reference_number=reference_number,
                notes=notes,
            )

    def release(
        self,
        ctx: RequestContext,
        pharmacy_id: UUID,
        drug_id: int,
        quantity: Any,
        reference_type: str,
        reference_number: str | None,
        *,
        reason: str | None = None,
    ) -> AllocationResult:
        """
        Release reserved units, earliest-expiring reservation first.

        Raises:
            NoAllocatedStockError: Nothing of this drug is reserved.
            InsufficientAllocationError: Total reserved < ``quantity``.
        """
        with self._operation(
            "release", ctx, pharmacy_id, drug_id=drug_id, quantity=quantity,
        ):
            self._access.authorize(ctx, pharmacy_id)
            qty = positive_decimal(quantity, "quantity")
            plan = plan_release(
                pharmacy_id=pharmacy_id,
                drug_id=drug_id,
                requested=qty,
                batches=self._store.find_allocated(pharmacy_id, drug_id, lock=True),
            )
            return self._apply_reservation(
                ctx, plan, MovementType.RELEASE,
                reference_type=reference_type,
                reference_number=reference_number,
                notes=reason,
            )

    def _apply_reservation(
        self,
        ctx: RequestContext,
        plan: FefoPlan,
        movement_type: MovementType,
        *,
        reference_type: str,
        reference_number: str | None,
        notes: str | None,
    ) -> AllocationResult:
        sign = Decimal(1) if movement_type is MovementType.ALLOCATION else Decimal(-1)
        detail = (
            "allocated_quantity" if movement_type is MovementType.ALLOCATION
            else "released_quantity"
        )
        now = self._clock.now_utc()
        movements: list[StockMovement] = []
        batches: list[StockBatch] = []
        for draw in plan.draws:
            delta = sign * draw.quantity
            batch = self._write(
                replace(
                    draw.batch,
                    allocated_quantity=draw.batch.allocated_quantity + delta,
                    updated_at=now,
                )
            )
            movements.append(
                self._record(
                    ctx, batch, movement_type, ZERO,
                    allocated_delta=delta,
                    reference_type=reference_type,
                    reference_number=reference_number,
                    notes=notes,
                    metadata={detail: draw.quantity, "expiry_date": batch.expiry_date},
                )
            )
            batches.append(batch)
        return AllocationResult(
            pharmacy_id=plan.pharmacy_id,
            drug_id=plan.drug_id,
            requested=plan.requested,
            movements=tuple(movements),
            batches=tuple(batches),
        )

    # =========================================================================
    # Expiry removal
    # =========================================================================

    def remove_expired_stock(
        self,
        ctx: RequestContext,
        pharmacy_id: UUID,
    ) -> ExpiryRemovalResult:
        """
        Zero every batch with ``expiry_date < today`` that still holds units.

        Any reservation on such a batch is cleared with it (the EXPIRY
        movement's ``allocated_delta``).  Idempotent: a second call finds
        nothing to remove.
        """
        with self._operation("remove_expired_stock", ctx, pharmacy_id):
            self._access.authorize(ctx, pharmacy_id)
            today = self.today()
            now = self._clock.now_utc()

            movements: list[StockMovement] = []
            batches: list[StockBatch] = []
            total_quantity = ZERO
            total_cost = ZERO
            for batch in self._store.find_expired(pharmacy_id, today, lock=True):
                removed = batch.quantity
                released = batch.allocated_quantity
                cost_value = removed * batch.cost_price
                updated = self._write(
                    replace(batch, quantity=ZERO, allocated_quantity=ZERO, updated_at=now)
                )
                movements.append(
                    self._record(
                        ctx, updated, MovementType.EXPIRY, -removed,
                        allocated_delta=-released,
                        reference_type=ReferenceType.AUTO_EXPIRY_REMOVAL,
                        notes=f"Expired on {batch.expiry_date.isoformat()}",
                        metadata={
                            "expiry_date": batch.expiry_date,
                            "cost_value": cost_value,
                            "released_allocation": released,
                        },
                    )
                )
                batches.append(updated)
                total_quantity += removed
                total_cost += cost_value

            logger.info(
                "expired_stock_removed",
                extra={
                    "batches_removed": len(batches),
                    "total_quantity": str(total_quantity),
                    "total_cost_value": str(total_cost),
                },
            )
            return ExpiryRemovalResult(
                pharmacy_id=pharmacy_id,
                movements=tuple(movements),
                batches=tuple(batches),
                total_quantity=total_quantity,
                total_cost_value=total_cost,
            )

    # =========================================================================
    # Reconcile
    # =========================================================================

    def reconcile(
        self,
        ctx: RequestContext,
        pharmacy_id: UUID,
    ) -> ReconciliationReport:
        """
        Repair stock rows that disagree with their ledger.

        For every batch, the ledger sums of ``quantity`` and
        ``allocated_delta`` are compared (exactly) with the stored quantity
        and allocated quantity.  On mismatch the row is rewritten from the
        ledger and a corrective ADJUSTMENT (reference type
        ``reconciliation``) documents old and new values.  The corrective
        movement's deltas are zero unless the ledger itself is out of range
        (negative quantity, reservation above quantity), in which case they
        bring the ledger sums to the clamped values written to the row.
        Discrepancies are reported, never raised.
        """
        with self._operation("reconcile", ctx, pharmacy_id):
            self._access.authorize(ctx, pharmacy_id)
            now = self._clock.now_utc()
            batches = self._store.find_for_pharmacy(pharmacy_id, lock=True)
            sums = self._ledger.sums_for_pharmacy(pharmacy_id)

            discrepancies: list[ReconciliationDiscrepancy] = []
            movements: list[StockMovement] = []
            for batch in batches:
                ledger_qty, ledger_alloc = sums.get(
                    (batch.drug_id, batch.batch_number), (ZERO, ZERO)
                )
                if ledger_qty == batch.quantity and ledger_alloc == batch.allocated_quantity:
                    continue

                target_qty = max(ledger_qty, ZERO)
                target_alloc = min(max(ledger_alloc, ZERO), target_qty)
                repaired = self._write(
                    replace(
                        batch,
                        quantity=target_qty,
                        allocated_quantity=target_alloc,
                        updated_at=now,
                    )
                )
                movements.append(
                    self._record(
                        ctx, repaired, MovementType.ADJUSTMENT, target_qty - ledger_qty,
                        allocated_delta=target_alloc - ledger_alloc,
                        reference_type=ReferenceType.RECONCILIATION,
                        notes=(
                            f"Reconciliation: ledger={ledger_qty}, state={batch.quantity}"
                        ),
                        metadata={
                            "old_quantity": batch.quantity,
                            "new_quantity": target_qty,
                            "ledger_quantity": ledger_qty,
                            "old_allocated_quantity": batch.allocated_quantity,
                            "new_allocated_quantity": target_alloc,
                            "ledger_allocated_quantity": ledger_alloc,
                            "reconciliation_type": "automatic",
                        },
                    )
                )
                discrepancies.append(
                    ReconciliationDiscrepancy(
                        drug_id=batch.drug_id,
                        batch_number=batch.batch_number,
                        ledger_quantity=ledger_qty,
                        state_quantity=batch.quantity,
                        repaired_quantity=target_qty,
                        ledger_allocated=ledger_alloc,
                        state_allocated=batch.allocated_quantity,
                        repaired_allocated=target_alloc,
                    )
                )
                logger.warning(
                    "reconciliation_discrepancy_repaired",
                    extra={
                        "batch_key": str(batch.key),
                        "ledger_quantity": str(ledger_qty),
                        "state_quantity": str(batch.quantity),
                        "ledger_allocated": str(ledger_alloc),
                        "state_allocated": str(batch.allocated_quantity),
                    },
                )

            return ReconciliationReport(
                pharmacy_id=pharmacy_id,
                batches_checked=len(batches),
                discrepancies=tuple(discrepancies),
                movements=tuple(movements),
            )
