"""
Module: stock_kernel.db.triggers
Responsibility: Loading, installing, and verifying PostgreSQL immutability
    triggers (Layer 2 of 2).  The database-level complement to the ORM
    listeners in db/immutability.py.
Architecture position: Kernel > DB.  May import from db/ only.  MUST NOT
    import from models/, services/, selectors/, domain/, or outer layers.

Invariants enforced (PostgreSQL only):
    - stock_movements rows: no UPDATE, no DELETE, ever.
    - stock_batches rows: no DELETE (exhausted batches stay as zero rows).

Failure modes:
    - PostgreSQL RAISE EXCEPTION on any violation (surfaced by SQLAlchemy as
      IntegrityError / DBAPIError).
    - FileNotFoundError if SQL files are missing from the sql/ directory.
    - OperationalError on deadlock during installation (caller retries).

Audit relevance:
    Catches raw SQL, bulk UPDATE statements and direct psql access that
    bypass the ORM listeners.
"""

from pathlib import Path

from sqlalchemy import text
from sqlalchemy.engine import Engine

SQL_DIR = Path(__file__).parent / "sql"

# Installed in this order
TRIGGER_FILES = [
    "01_stock_movement.sql",
    "02_stock_batch.sql",
]

DROP_FILE = "99_drop_all.sql"

ALL_TRIGGER_NAMES = [
    "trg_stock_movement_immutability_update",
    "trg_stock_movement_immutability_delete",
    "trg_stock_batch_delete_protection",
]


def _load_sql_file(filename: str) -> str:
    return (SQL_DIR / filename).read_text(encoding="utf-8")


def _load_all_trigger_sql() -> str:
    sql_parts = []
    for filename in TRIGGER_FILES:
        sql_parts.append(f"-- Loading: {filename}")
        sql_parts.append(_load_sql_file(filename))
        sql_parts.append("")
    return "\n".join(sql_parts)


def install_immutability_triggers(engine: Engine) -> None:
    """
    Install database-level immutability triggers.

    Preconditions: Tables exist (call after create_all).  Engine is
        connected to PostgreSQL.
    Postconditions: Every trigger in ALL_TRIGGER_NAMES is installed.
        Functions use CREATE OR REPLACE, so installation is idempotent.
    """
    with engine.connect() as conn:
        conn.execute(text(_load_all_trigger_sql()))
        conn.commit()


def uninstall_immutability_triggers(engine: Engine) -> None:
    """
    Remove database-level immutability triggers.

    WARNING: Only for test teardown and data migrations.  Re-install the
    triggers immediately afterwards.
    """
    with engine.connect() as conn:
        conn.execute(text(_load_sql_file(DROP_FILE)))
        conn.commit()


def get_installed_triggers(engine: Engine) -> list[str]:
    """List the immutability triggers currently installed."""
    trigger_list = ", ".join(f"'{name}'" for name in ALL_TRIGGER_NAMES)
    check_sql = f"""
    SELECT tgname FROM pg_trigger
    WHERE tgname IN ({trigger_list})
    ORDER BY tgname;
    """

    with engine.connect() as conn:
        result = conn.execute(text(check_sql))
        return [row[0] for row in result]


def triggers_installed(engine: Engine) -> bool:
    """True iff every trigger in ALL_TRIGGER_NAMES is installed."""
    return len(get_installed_triggers(engine)) == len(ALL_TRIGGER_NAMES)
