"""
Unit of work with retry on concurrency conflicts.

``run_with_retry`` is the recommended way for a caller to run a stock
operation: fresh session, one transaction, commit on success, rollback on
failure, and a bounded retry when the database reports a lock timeout,
deadlock, serialization failure or ledger sequence collision.

    result = run_with_retry(
        get_session_factory(),
        lambda session: StockOperationsEngine(session, clock).dispense(
            ctx, pharmacy_id, drug_id, Decimal("2"),
        ),
    )

Every retry starts from scratch in a new session: a conflicting attempt has
been rolled back completely, so re-running it cannot double-apply.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from typing import TypeVar

from sqlalchemy.orm import Session, sessionmaker

from stock_kernel.exceptions import ConcurrencyConflictError
from stock_kernel.logging_config import get_logger

logger = get_logger("services.unit_of_work")

T = TypeVar("T")


def run_with_retry(
    session_factory: sessionmaker[Session] | Callable[[], Session],
    fn: Callable[[Session], T],
    max_attempts: int = 3,
    backoff_ms: int = 50,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """
    Run ``fn(session)`` in its own transaction, retrying on conflict.

    Args:
        session_factory: Produces a new Session per attempt.
        fn: The unit of work.  Must not commit.
        max_attempts: Total attempts, >= 1.
        backoff_ms: Linear backoff step between attempts.
        sleep: Injected for tests.

    Returns:
        Whatever ``fn`` returns from the committed attempt.

    Raises:
        ConcurrencyConflictError: Still conflicting after ``max_attempts``.
        Any other exception from ``fn`` on the first occurrence.
    """
    if max_attempts < 1:
        raise ValueError(f"max_attempts must be >= 1, got {max_attempts}")

    for attempt in range(1, max_attempts + 1):
        session = session_factory()
        try:
            result = fn(session)
            session.commit()
            return result
        except ConcurrencyConflictError as exc:
            session.rollback()
            if attempt == max_attempts:
                logger.error(
                    "concurrency_conflict_retries_exhausted",
                    extra={"attempts": attempt, "reason": exc.reason},
                )
                raise
            logger.warning(
                "concurrency_conflict_retry",
                extra={
                    "attempt": attempt,
                    "max_attempts": max_attempts,
                    "reason": exc.reason,
                    "conflict_operation": exc.operation,
                },
            )
            sleep(backoff_ms * attempt / 1000)
        except Exception:
            session.rollback()
            logger.warning("transaction_rolled_back", exc_info=True)
            raise
        finally:
            session.close()

    raise AssertionError("unreachable")
