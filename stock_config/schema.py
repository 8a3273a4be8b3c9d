"""
StockConfig schema.

Frozen dataclasses parsed from YAML by ``stock_config.loader``.  Every
section has defaults so an empty file yields a working configuration.
"""

from __future__ import annotations

from dataclasses import dataclass, field

# ---------------------------------------------------------------------------
# Sections
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ExpiryConfig:
    """Expiry horizon and the timezone that defines "today"."""

    expiring_soon_days: int = 90
    business_timezone: str = "UTC"


@dataclass(frozen=True)
class LockingConfig:
    lock_timeout_ms: int = 5000
    max_retries: int = 3
    retry_backoff_ms: int = 50


@dataclass(frozen=True)
class FiscalConfig:
    year_start_month: int = 4  # April


@dataclass(frozen=True)
class LedgerConfig:
    movement_history_limit: int = 100


@dataclass(frozen=True)
class DatabaseConfig:
    url: str | None = None
    pool_size: int = 20
    max_overflow: int = 10
    echo: bool = False


# ---------------------------------------------------------------------------
# Root
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class StockConfig:
    """Runtime configuration for the stock engine.

    ``checksum`` is the SHA-256 of the effective values (after environment
    overrides) and identifies the configuration in STOCK_CONFIG_TRACE.
    """

    expiry: ExpiryConfig = field(default_factory=ExpiryConfig)
    locking: LockingConfig = field(default_factory=LockingConfig)
    fiscal: FiscalConfig = field(default_factory=FiscalConfig)
    ledger: LedgerConfig = field(default_factory=LedgerConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    source: str | None = None
    checksum: str = ""
