"""SQLAlchemy ORM models for the stock kernel."""

from stock_kernel.models.drug import DrugModel
from stock_kernel.models.pharmacy import PharmacyModel
from stock_kernel.models.stock_batch import StockBatchModel
from stock_kernel.models.stock_movement import StockMovementModel

__all__ = [
    "DrugModel",
    "PharmacyModel",
    "StockBatchModel",
    "StockMovementModel",
]
