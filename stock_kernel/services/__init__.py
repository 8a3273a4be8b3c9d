"""Kernel services: stock record store, movement ledger, access scoping."""

from stock_kernel.services.access_scope import AccessScope, check_pharmacy_access
from stock_kernel.services.movement_ledger import MovementLedger
from stock_kernel.services.stock_record_store import StockRecordStore

__all__ = [
    "AccessScope",
    "MovementLedger",
    "StockRecordStore",
    "check_pharmacy_access",
]
