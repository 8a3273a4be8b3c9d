"""
Stock services: the operations engine, the query API and the unit of work.

Sits above ``stock_kernel``, ``stock_engines`` and ``stock_config``.
"""

from stock_services.stock_operations import StockOperationsEngine
from stock_services.stock_queries import StockQueries
from stock_services.unit_of_work import run_with_retry

__all__ = [
    "StockOperationsEngine",
    "StockQueries",
    "run_with_retry",
]
