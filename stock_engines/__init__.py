"""
Pure calculation engines for stock operations.

Every function here is deterministic and side-effect free apart from the
``STOCK_ENGINE_TRACE`` log record: no session, no clock, no config.

    plan_fefo / plan_release   -- FEFO batch selection
    compute_valuation          -- per-movement running stock value
"""

from stock_engines.fefo import FefoDraw, FefoPlan, eligible_batches, plan_fefo, plan_release
from stock_engines.valuation import Valuation, compute_valuation, previous_stock_value

__all__ = [
    "FefoDraw",
    "FefoPlan",
    "Valuation",
    "compute_valuation",
    "eligible_batches",
    "plan_fefo",
    "plan_release",
    "previous_stock_value",
]
