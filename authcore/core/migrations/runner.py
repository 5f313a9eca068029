"""Ordered SQL migrations for the runtime auth tables.

Each ``sql/NNNN_name.sql`` file runs once per database, in file-name order.
A file and its ``schema_migrations`` row commit in the same transaction, so a
failing file leaves nothing behind and is retried on the next start.
"""

from __future__ import annotations

import logging
import sqlite3
from pathlib import Path

LOGGER = logging.getLogger(__name__)

MIGRATIONS_DIR = Path(__file__).resolve().parent / "sql"

_SCHEMA_MIGRATIONS_DDL = """
CREATE TABLE IF NOT EXISTS schema_migrations (
  migration_id TEXT PRIMARY KEY,
  applied_at INTEGER NOT NULL
)
"""


def discover_migrations(directory: Path = MIGRATIONS_DIR) -> list[Path]:
    return sorted(directory.glob("*.sql"))


def _applied_ids(connection: sqlite3.Connection) -> set[str]:
    rows = connection.execute("SELECT migration_id FROM schema_migrations").fetchall()
    return {row[0] for row in rows}


def _apply_one(connection: sqlite3.Connection, migration_file: Path) -> None:
    # executescript cannot bind parameters; the id is a file name quoted as a literal.
    quoted_id = migration_file.name.replace("'", "''")
    script = (
        "BEGIN IMMEDIATE;\n"
        f"{migration_file.read_text(encoding='utf-8')}\n;\n"
        "INSERT OR IGNORE INTO schema_migrations(migration_id, applied_at) "
        f"VALUES ('{quoted_id}', strftime('%s','now'));\n"
        "COMMIT;\n"
    )
    try:
        connection.executescript(script)
    except sqlite3.Error:
        if connection.in_transaction:
            connection.execute("ROLLBACK")
        raise


def apply_migrations(database_path: Path, *, directory: Path = MIGRATIONS_DIR) -> list[str]:
    """Apply pending migrations and return the ids applied by this call."""
    database_path.parent.mkdir(parents=True, exist_ok=True)
    connection = sqlite3.connect(str(database_path), isolation_level=None)
    try:
        connection.execute("PRAGMA journal_mode=WAL")
        connection.execute(_SCHEMA_MIGRATIONS_DDL)
        already_applied = _applied_ids(connection)

        applied: list[str] = []
        for migration_file in discover_migrations(directory):
            if migration_file.name in already_applied:
                continue
            _apply_one(connection, migration_file)
            LOGGER.info("sqlite_migration_applied", extra={"migration_id": migration_file.name})
            applied.append(migration_file.name)
        return applied
    finally:
        connection.close()
