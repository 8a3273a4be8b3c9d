"""
Typed Exception Hierarchy for the Stock Kernel.

===============================================================================
WHY TYPED EXCEPTIONS
===============================================================================

Callers of the stock engine (dispensing UI, purchase-receipt workflow,
administrative tooling) must decide between retrying, splitting a request,
or surfacing a message to an end user. That decision must never depend on
parsing message text:

Example - WRONG way to handle errors:
    try:
        engine.dispense(ctx, pharmacy_id, drug_id, Decimal("8"))
    except Exception as e:
        if "insufficient" in str(e):  # FRAGILE - message might change
            ...

Example - RIGHT way (what this module enables):
    try:
        engine.dispense(ctx, pharmacy_id, drug_id, Decimal("8"))
    except InsufficientStockError as e:
        offer_partial(e.available)        # Structured data
        api_response(status=e.http_status, code=e.code)

Every exception:
  1. Is a TYPED class (catch by type, not message)
  2. Has a CODE attribute (machine-readable, API-safe)
  3. Carries structured DATA (identifiers, requested/available quantities)
  4. Has an HTTP_STATUS hint for the external controller layer
  5. Carries the OPERATION name once it leaves the engine

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

    StockKernelError (base)
    |
    +-- NotFoundError                       404
    |   +-- PharmacyNotFoundError
    |   +-- DrugNotFoundError
    |   +-- StockBatchNotFoundError
    |   +-- NoAvailableStockError
    |   +-- NoAllocatedStockError
    |
    +-- BadRequestError                     400
    |   +-- InsufficientStockError
    |   |   +-- InsufficientAllocationError
    |   +-- InvalidAdjustmentError
    |   +-- StockValidationError
    |   +-- PharmacyInactiveError
    |
    +-- AccessDeniedError                   403
    |
    +-- ConcurrencyConflictError            409 (retryable)
    |
    +-- ImmutabilityViolationError          409
    |
    +-- LedgerChainError                    500

===============================================================================
"""

from decimal import Decimal
from typing import Any


class StockKernelError(Exception):
    """Base exception for all stock kernel errors."""

    code: str = "STOCK_KERNEL_ERROR"
    http_status: int = 500
    retryable: bool = False

    # Filled in by the operations engine when the error crosses its boundary.
    operation: str | None = None

    def with_operation(self, operation: str) -> "StockKernelError":
        """Attach the operation name unless one is already recorded.

        The name is also prefixed to the message, so ``str(exc)`` reads
        ``"dispense: Insufficient stock ..."``.
        """
        if self.operation is None:
            self.operation = operation
            if self.args and isinstance(self.args[0], str):
                self.args = (f"{operation}: {self.args[0]}", *self.args[1:])
        return self


# =============================================================================
# Not found
# =============================================================================


class NotFoundError(StockKernelError):
    """A referenced pharmacy, drug, batch or stock row does not exist."""

    code: str = "NOT_FOUND"
    http_status: int = 404


class PharmacyNotFoundError(NotFoundError):
    """Pharmacy id does not exist."""

    code: str = "PHARMACY_NOT_FOUND"

    def __init__(self, pharmacy_id: Any):
        self.pharmacy_id = str(pharmacy_id)
        super().__init__(f"Pharmacy not found: {pharmacy_id}")


class DrugNotFoundError(NotFoundError):
    """Drug id is unknown to the drug reference catalog."""

    code: str = "DRUG_NOT_FOUND"

    def __init__(self, drug_id: int):
        self.drug_id = drug_id
        super().__init__(f"Drug not found: {drug_id}")


class StockBatchNotFoundError(NotFoundError):
    """No stock row for (pharmacy, drug, batch)."""

    code: str = "STOCK_BATCH_NOT_FOUND"

    def __init__(self, pharmacy_id: Any, drug_id: int, batch_number: str):
        self.pharmacy_id = str(pharmacy_id)
        self.drug_id = drug_id
        self.batch_number = batch_number
        super().__init__(
            f"Stock batch not found: pharmacy={pharmacy_id} drug={drug_id} "
            f"batch={batch_number}"
        )


class NoAvailableStockError(NotFoundError):
    """No sellable batch (non-quarantined, unexpired, unreserved units) exists."""

    code: str = "NO_AVAILABLE_STOCK"

    def __init__(self, pharmacy_id: Any, drug_id: int):
        self.pharmacy_id = str(pharmacy_id)
        self.drug_id = drug_id
        super().__init__(
            f"No available stock for drug {drug_id} in pharmacy {pharmacy_id}"
        )


class NoAllocatedStockError(NotFoundError):
    """Release requested but no batch of the drug carries a reservation."""

    code: str = "NO_ALLOCATED_STOCK"

    def __init__(self, pharmacy_id: Any, drug_id: int):
        self.pharmacy_id = str(pharmacy_id)
        self.drug_id = drug_id
        super().__init__(
            f"No allocated stock for drug {drug_id} in pharmacy {pharmacy_id}"
        )


# =============================================================================
# Bad request
# =============================================================================


class BadRequestError(StockKernelError):
    """Request is well-formed but violates a stock rule."""

    code: str = "BAD_REQUEST"
    http_status: int = 400


class InsufficientStockError(BadRequestError):
    """Requested quantity exceeds what is available."""

    code: str = "INSUFFICIENT_STOCK"

    def __init__(
        self,
        pharmacy_id: Any,
        drug_id: int,
        requested: Decimal,
        available: Decimal,
    ):
        self.pharmacy_id = str(pharmacy_id)
        self.drug_id = drug_id
        self.requested = requested
        self.available = available
        self.shortfall = requested - available
        super().__init__(
            f"Insufficient stock for drug {drug_id} in pharmacy {pharmacy_id}: "
            f"requested {requested}, available {available} "
            f"(short by {self.shortfall})"
        )


class InsufficientAllocationError(InsufficientStockError):
    """Release amount exceeds the total currently allocated."""

    code: str = "INSUFFICIENT_ALLOCATION"


class InvalidAdjustmentError(BadRequestError):
    """Adjustment would drive quantity negative or below the reservation."""

    code: str = "INVALID_ADJUSTMENT"

    def __init__(
        self,
        batch_number: str,
        old_quantity: Decimal,
        adjustment: Decimal,
        allocated_quantity: Decimal,
    ):
        self.batch_number = batch_number
        self.old_quantity = old_quantity
        self.adjustment = adjustment
        self.new_quantity = old_quantity + adjustment
        self.allocated_quantity = allocated_quantity
        if self.new_quantity < 0:
            reason = "quantity cannot be negative"
        else:
            reason = f"quantity cannot fall below allocated {allocated_quantity}"
        super().__init__(
            f"Invalid adjustment on batch {batch_number}: "
            f"{old_quantity} {adjustment:+} = {self.new_quantity}, {reason}"
        )


class StockValidationError(BadRequestError):
    """Input failed validation (non-positive quantity, float, past expiry...)."""

    code: str = "STOCK_VALIDATION_ERROR"

    def __init__(self, field: str, reason: str, value: Any = None):
        self.field = field
        self.reason = reason
        self.value = value
        super().__init__(f"Invalid {field}: {reason}")


class PharmacyInactiveError(BadRequestError):
    """Mutating operation against a deactivated pharmacy."""

    code: str = "PHARMACY_INACTIVE"

    def __init__(self, pharmacy_id: Any):
        self.pharmacy_id = str(pharmacy_id)
        super().__init__(f"Pharmacy {pharmacy_id} is inactive")


# =============================================================================
# Access
# =============================================================================


class AccessDeniedError(StockKernelError):
    """Caller's tenant/pharmacy context does not include the target pharmacy."""

    code: str = "ACCESS_DENIED"
    http_status: int = 403

    def __init__(self, pharmacy_id: Any, user_id: Any, reason: str):
        self.pharmacy_id = str(pharmacy_id)
        self.user_id = None if user_id is None else str(user_id)
        self.reason = reason
        super().__init__(
            f"Access denied to pharmacy {pharmacy_id} for user {user_id}: {reason}"
        )


# =============================================================================
# Concurrency
# =============================================================================


class ConcurrencyConflictError(StockKernelError):
    """Lock-wait timeout, deadlock or serialization failure.

    Always safe to retry the whole operation from scratch: the transaction
    that raised it has been rolled back.
    """

    code: str = "CONCURRENCY_CONFLICT"
    http_status: int = 409
    retryable: bool = True

    def __init__(self, operation: str | None, reason: str):
        self.operation = operation
        self.reason = reason
        super().__init__(f"Concurrency conflict in {operation}: {reason}")


# =============================================================================
# Immutability
# =============================================================================


class ImmutabilityViolationError(StockKernelError):
    """Attempted to modify or delete an immutable ledger record."""

    code: str = "IMMUTABILITY_VIOLATION"
    http_status: int = 409

    def __init__(self, entity_type: str, entity_id: str, reason: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.reason = reason
        super().__init__(
            f"Immutability violation on {entity_type} {entity_id}: {reason}"
        )


class LedgerChainError(StockKernelError):
    """A movement does not extend its batch's ledger chain by exactly one."""

    code: str = "LEDGER_CHAIN_BROKEN"

    def __init__(self, batch_key: str, expected_sequence: int, actual_sequence: int):
        self.batch_key = batch_key
        self.expected_sequence = expected_sequence
        self.actual_sequence = actual_sequence
        super().__init__(
            f"Ledger chain break for {batch_key}: expected sequence "
            f"{expected_sequence}, got {actual_sequence}"
        )
