"""
Structured JSON logging for the stock kernel.

Every record under the ``stock_kernel`` logger hierarchy is written as one
JSON object per line:

    {"ts": ..., "level": "INFO", "logger": "stock_kernel.services.stock_operations",
     "message": "stock_dispensed", "correlation_id": ..., "pharmacy_id": ...,
     "operation": "dispense", "drug_id": 1001, "requested": "15", ...}

The envelope (ts, level, logger, message) is always present.  Operation
scope fields come from ``LogContext``; everything passed through
``extra=`` is appended as-is.  Stock kernel errors logged with
``exc_info`` contribute their ``code`` and structured attributes as
``exc_*`` fields.
"""

__all__ = [
    "CONTEXT_FIELDS",
    "LogContext",
    "StructuredFormatter",
    "configure_logging",
    "get_logger",
]

import json
import logging
import sys
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import UTC, date, datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

LOGGER_ROOT = "stock_kernel"

# Fields the operations engine binds for the lifetime of one operation.
CONTEXT_FIELDS = (
    "correlation_id",
    "actor_id",
    "organization_id",
    "pharmacy_id",
    "operation",
)


class LogContext:
    """Operation-scoped log fields, one ContextVar per field.

    Safe across threads and asyncio tasks.  Values are stored as strings.
    """

    _vars: dict[str, ContextVar[str | None]] = {
        name: ContextVar(f"stock_log_{name}", default=None) for name in CONTEXT_FIELDS
    }

    @classmethod
    def _var(cls, name: str) -> ContextVar[str | None]:
        try:
            return cls._vars[name]
        except KeyError:
            raise TypeError(f"Unknown log context field: {name}") from None

    @classmethod
    def set(cls, **fields: Any) -> None:
        """Set the given fields; ``None`` values are ignored."""
        for name, value in fields.items():
            if value is not None:
                cls._var(name).set(str(value))

    @classmethod
    def get_all(cls) -> dict[str, str]:
        return {
            name: value
            for name, var in cls._vars.items()
            if (value := var.get()) is not None
        }

    @classmethod
    def clear(cls) -> None:
        for var in cls._vars.values():
            var.set(None)

    @classmethod
    @contextmanager
    def bind(cls, **fields: Any) -> Iterator[type["LogContext"]]:
        """Set fields for the duration of a ``with`` block, then restore them.

        ``None`` values and names outside CONTEXT_FIELDS are skipped; UUIDs
        and other values are stringified.
        """
        tokens = [
            (cls._vars[name], cls._vars[name].set(str(value)))
            for name, value in fields.items()
            if value is not None and name in cls._vars
        ]
        try:
            yield cls
        finally:
            for var, token in reversed(tokens):
                var.reset(token)


# Attributes every LogRecord carries; anything else came in through ``extra``.
_RECORD_ATTRS: frozenset[str] = frozenset(
    vars(logging.LogRecord("", 0, "", 0, "", (), None))
) | {"message", "taskName"}


def _json_default(value: Any) -> Any:
    if isinstance(value, (UUID, Decimal)):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return str(value)


def _exception_fields(exc: BaseException) -> dict[str, Any]:
    fields: dict[str, Any] = {
        "exc_type": type(exc).__name__,
        "exc_message": str(exc),
    }
    code = getattr(exc, "code", None)
    if code is not None:
        fields["exc_code"] = code
    for name, value in vars(exc).items():
        if not name.startswith("_") and name != "code":
            fields[f"exc_{name}"] = value
    return fields


class StructuredFormatter(logging.Formatter):
    """One JSON object per record."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            **LogContext.get_all(),
        }
        for name, value in vars(record).items():
            if name not in _RECORD_ATTRS:
                payload.setdefault(name, value)

        if record.exc_info and record.exc_info[1] is not None:
            payload.update(_exception_fields(record.exc_info[1]))
            payload["traceback"] = self.formatException(record.exc_info)

        return json.dumps(payload, default=_json_default)


def get_logger(name: str) -> logging.Logger:
    """Logger ``stock_kernel.<name>``."""
    return logging.getLogger(f"{LOGGER_ROOT}.{name}")


_configured = False
_lock = threading.Lock()


def configure_logging(
    *,
    level: int = logging.INFO,
    stream: Any = None,
    handler: logging.Handler | None = None,
    force: bool = False,
) -> None:
    """
    Attach a JSON handler to the ``stock_kernel`` logger.

    Only the first call has an effect, so library code (e.g. engine
    initialization) may call it freely.  ``force=True`` drops the existing
    handlers and configures again.
    """
    global _configured
    with _lock:
        if _configured and not force:
            return
        _configured = True

        root = logging.getLogger(LOGGER_ROOT)
        root.handlers.clear()
        root.setLevel(level)
        root.propagate = False

        h = handler if handler is not None else logging.StreamHandler(stream or sys.stderr)
        h.setFormatter(StructuredFormatter())
        root.addHandler(h)
