"""
Fiscal tagging for movements.

Every movement is stamped with the fiscal year and quarter its posting date
falls in.  The fiscal year starts on the first day of ``start_month``
(April by default, the Indian financial year): with an April start,
2025-05-10 is fiscal year ``"2025-26"`` quarter ``"Q1"`` and 2026-02-01 is
``"2025-26"`` ``"Q4"``.  A January start yields plain calendar years.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date

DEFAULT_FISCAL_YEAR_START_MONTH = 4


@dataclass(frozen=True)
class FiscalTag:
    fiscal_year: str
    fiscal_period: str


def fiscal_tag_for(
    posting_date: date,
    start_month: int = DEFAULT_FISCAL_YEAR_START_MONTH,
) -> FiscalTag:
    """Return the fiscal year label and quarter for ``posting_date``."""
    if not 1 <= start_month <= 12:
        raise ValueError(f"start_month must be 1..12, got {start_month}")

    if start_month == 1:
        year_label = str(posting_date.year)
    else:
        start_year = posting_date.year if posting_date.month >= start_month else posting_date.year - 1
        year_label = f"{start_year}-{(start_year + 1) % 100:02d}"

    quarter = (posting_date.month - start_month) % 12 // 3 + 1
    return FiscalTag(fiscal_year=year_label, fiscal_period=f"Q{quarter}")
