"""Selectors for the stock kernel (read side)."""

from stock_kernel.selectors.reference_selector import ReferenceDataSelector
from stock_kernel.selectors.stock_selector import StockSelector, to_stock_level

__all__ = [
    "ReferenceDataSelector",
    "StockSelector",
    "to_stock_level",
]
