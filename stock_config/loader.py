"""
Configuration Loader (``stock_config.loader``).

Responsibility
--------------
Reads a YAML file, applies environment overrides, and parses the result
into the frozen ``stock_config.schema`` dataclasses.  Callers use
``stock_config.get_active_config()``; this module is its implementation.

Invariants enforced
-------------------
* Unknown sections or keys are rejected, never silently ignored.
* Every numeric range is validated; violations raise ``ValueError``.
* ``compute_checksum`` is deterministic for identical effective values.

Failure modes
-------------
* Missing YAML file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
* Bad value or unknown key  -> ``ValueError``.
"""

from __future__ import annotations

import hashlib
import json
from collections.abc import Mapping
from dataclasses import asdict, fields
from pathlib import Path
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import yaml

from stock_config.schema import (
    DatabaseConfig,
    ExpiryConfig,
    FiscalConfig,
    LedgerConfig,
    LockingConfig,
    StockConfig,
)

_SECTIONS: dict[str, type] = {
    "expiry": ExpiryConfig,
    "locking": LockingConfig,
    "fiscal": FiscalConfig,
    "ledger": LedgerConfig,
    "database": DatabaseConfig,
}

# env var -> (section, key, parser)
ENV_OVERRIDES: dict[str, tuple[str, str, type]] = {
    "STOCK_DATABASE_URL": ("database", "url", str),
    "STOCK_EXPIRING_SOON_DAYS": ("expiry", "expiring_soon_days", int),
    "STOCK_LOCK_TIMEOUT_MS": ("locking", "lock_timeout_ms", int),
}


def load_yaml_file(path: Path) -> dict[str, Any]:
    """
    Load a single YAML file and return its contents as a dict.

    Raises:
        FileNotFoundError: if the file does not exist.
        yaml.YAMLError: if the file contains invalid YAML.
        ValueError: if the top level is not a mapping.
    """
    with open(path) as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"{path}: top-level YAML value must be a mapping")
    return data


def apply_env_overrides(
    data: dict[str, Any],
    environ: Mapping[str, str],
) -> dict[str, Any]:
    """Return a copy of ``data`` with the ``STOCK_*`` overrides applied."""
    merged = {name: dict(section or {}) for name, section in data.items()}
    for var, (section, key, parser) in ENV_OVERRIDES.items():
        raw = environ.get(var)
        if raw is None or raw == "":
            continue
        try:
            value = parser(raw)
        except ValueError as exc:
            raise ValueError(f"{var}={raw!r} is not a valid {parser.__name__}") from exc
        merged.setdefault(section, {})[key] = value
    return merged


def _parse_section(name: str, data: Any) -> Any:
    cls = _SECTIONS[name]
    if data is None:
        return cls()
    if not isinstance(data, dict):
        raise ValueError(f"Config section '{name}' must be a mapping")
    allowed = {f.name for f in fields(cls)}
    unknown = set(data) - allowed
    if unknown:
        raise ValueError(f"Unknown keys in config section '{name}': {sorted(unknown)}")
    return cls(**data)


def parse_config(data: dict[str, Any], source: str | None = None) -> StockConfig:
    """
    Build a validated ``StockConfig`` from a plain dict.

    Raises:
        ValueError: unknown section/key or out-of-range value.
    """
    unknown = set(data) - set(_SECTIONS)
    if unknown:
        raise ValueError(f"Unknown config sections: {sorted(unknown)}")

    sections = {name: _parse_section(name, data.get(name)) for name in _SECTIONS}
    config = StockConfig(**sections, source=source)
    validate_config(config)
    return StockConfig(**sections, source=source, checksum=compute_checksum(config))


def validate_config(config: StockConfig) -> None:
    """Range checks.  Raises ValueError on the first violation."""
    if config.expiry.expiring_soon_days < 0:
        raise ValueError("expiry.expiring_soon_days must be >= 0")
    try:
        if config.expiry.business_timezone != "UTC":
            ZoneInfo(config.expiry.business_timezone)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ValueError(
            f"expiry.business_timezone {config.expiry.business_timezone!r} is not a known timezone"
        ) from exc
    if config.locking.lock_timeout_ms <= 0:
        raise ValueError("locking.lock_timeout_ms must be > 0")
    if config.locking.max_retries < 1:
        raise ValueError("locking.max_retries must be >= 1")
    if config.locking.retry_backoff_ms < 0:
        raise ValueError("locking.retry_backoff_ms must be >= 0")
    if not 1 <= config.fiscal.year_start_month <= 12:
        raise ValueError("fiscal.year_start_month must be between 1 and 12")
    if config.ledger.movement_history_limit < 1:
        raise ValueError("ledger.movement_history_limit must be >= 1")


def compute_checksum(config: StockConfig) -> str:
    """SHA-256 of the canonical JSON of the effective values."""
    data = asdict(config)
    data.pop("checksum", None)
    data.pop("source", None)
    canonical = json.dumps(data, sort_keys=True, default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()


def load_config(path: Path, environ: Mapping[str, str]) -> StockConfig:
    """Load ``path``, apply overrides from ``environ``, parse and validate."""
    data = apply_env_overrides(load_yaml_file(path), environ)
    return parse_config(data, source=str(path))
