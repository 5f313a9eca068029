"""Versioned MongoDB schema migrations for credential collections."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Callable

from pymongo import ASCENDING

from authcore.core.logging import get_correlation_id

MigrationFn = Callable[[Any], None]


def _migration_20261001_01_user_indexes(db: Any) -> None:
    db["auth_users"].create_index("user_id", unique=True)
    db["auth_users"].create_index(
        "email",
        unique=True,
        partialFilterExpression={"deleted": False},
        name="idx_auth_users_email_live",
    )
    db["auth_users"].create_index(
        "phone",
        unique=True,
        partialFilterExpression={"deleted": False, "phone": {"$type": "string"}},
        name="idx_auth_users_phone_live",
    )
    db["auth_accounts"].create_index(
        [("provider", ASCENDING), ("external_id", ASCENDING)], unique=True
    )
    db["auth_accounts"].create_index("user_id")


def _migration_20261001_02_passkey_indexes(db: Any) -> None:
    db["auth_passkeys"].create_index("passkey_id", unique=True)
    db["auth_passkeys"].create_index("credential_id", unique=True)
    db["auth_passkeys"].create_index([("user_id", ASCENDING), ("status", ASCENDING)])


MIGRATIONS: list[tuple[str, MigrationFn]] = [
    ("20261001_01_user_indexes", _migration_20261001_01_user_indexes),
    ("20261001_02_passkey_indexes", _migration_20261001_02_passkey_indexes),
]


def apply_mongo_migrations(db: Any) -> list[str]:
    """Apply pending migrations to ``db`` and return the ids applied now."""
    migration_collection = db["schema_migrations"]
    migration_collection.create_index("migration_id", unique=True)

    applied: list[str] = []
    for migration_id, migration_fn in MIGRATIONS:
        if migration_collection.find_one({"migration_id": migration_id}):
            continue
        migration_fn(db)
        migration_collection.insert_one(
            {
                "migration_id": migration_id,
                "applied_at": datetime.now(timezone.utc),
                "correlation_id": get_correlation_id(),
            }
        )
        applied.append(migration_id)
    return applied
