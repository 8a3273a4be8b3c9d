"""
stock_config -- single public entrypoint for stock engine configuration.

Responsibility:
    Provides the ONLY way to obtain configuration at runtime through
    ``get_active_config()``.  No other component reads configuration files
    or ``STOCK_*`` environment variables directly.

Architecture position:
    Configuration.  Sits beside ``stock_kernel``; the kernel MUST NEVER
    import from ``stock_config``.  ``stock_services`` reads the values it
    needs (expiry horizon, lock timeout, fiscal start month) and passes
    them down as plain arguments.

Failure modes:
    - ``FileNotFoundError`` -- the requested YAML file does not exist.
    - ``ValueError`` -- unknown keys, bad environment values, or
      out-of-range settings.

Audit relevance:
    Every successful ``get_active_config()`` call emits a
    ``STOCK_CONFIG_TRACE`` log entry with the source file and checksum.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from pathlib import Path

from stock_config.loader import load_config
from stock_config.schema import (
    DatabaseConfig,
    ExpiryConfig,
    FiscalConfig,
    LedgerConfig,
    LockingConfig,
    StockConfig,
)

_logger = logging.getLogger("stock_kernel.config")

DEFAULT_CONFIG_PATH = Path(__file__).parent / "defaults.yaml"


def get_active_config(
    path: Path | None = None,
    environ: Mapping[str, str] | None = None,
) -> StockConfig:
    """The ONLY public configuration entrypoint.

    Args:
        path: YAML file to load.  Defaults to ``stock_config/defaults.yaml``.
        environ: Environment mapping for overrides.  Defaults to
            ``os.environ``.

    Returns:
        Frozen, validated ``StockConfig``.

    Raises:
        FileNotFoundError: If ``path`` does not exist.
        ValueError: If validation fails.
    """
    config = load_config(
        path or DEFAULT_CONFIG_PATH,
        os.environ if environ is None else environ,
    )

    _logger.info(
        "STOCK_CONFIG_TRACE",
        extra={
            "trace_type": "STOCK_CONFIG_TRACE",
            "config_source": config.source,
            "checksum": config.checksum,
            "expiring_soon_days": config.expiry.expiring_soon_days,
            "business_timezone": config.expiry.business_timezone,
            "lock_timeout_ms": config.locking.lock_timeout_ms,
            "fiscal_year_start_month": config.fiscal.year_start_month,
        },
    )
    return config


__all__ = [
    "DEFAULT_CONFIG_PATH",
    "DatabaseConfig",
    "ExpiryConfig",
    "FiscalConfig",
    "LedgerConfig",
    "LockingConfig",
    "StockConfig",
    "get_active_config",
]
