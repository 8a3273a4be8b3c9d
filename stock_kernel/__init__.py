"""
Stock Kernel - pharmacy stock ledger core.

Per-pharmacy, per-batch drug inventory with:
- Append-only movement ledger
- Row-locked, atomic stock operations
- Continuously chained inventory valuation
- Ledger-vs-state reconciliation
"""

__version__ = "0.1.0"
