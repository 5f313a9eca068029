from __future__ import annotations

from typing import Any

from authcore.core.mongo_migrations import MIGRATIONS, apply_mongo_migrations


class _FakeCollection:
    def __init__(self) -> None:
        self.indexes: list[tuple[Any, dict[str, Any]]] = []
        self.documents: list[dict[str, Any]] = []

    def create_index(self, keys: Any, **kwargs: Any) -> str:
        self.indexes.append((keys, kwargs))
        return str(keys)

    def find_one(self, query: dict[str, Any]) -> dict[str, Any] | None:
        for document in self.documents:
            if all(document.get(key) == value for key, value in query.items()):
                return document
        return None

    def insert_one(self, document: dict[str, Any]) -> None:
        self.documents.append(document)


class _FakeDatabase:
    def __init__(self) -> None:
        self.collections: dict[str, _FakeCollection] = {}

    def __getitem__(self, name: str) -> _FakeCollection:
        return self.collections.setdefault(name, _FakeCollection())


def test_apply_mongo_migrations_is_idempotent() -> None:
    db = _FakeDatabase()

    first = apply_mongo_migrations(db)
    second = apply_mongo_migrations(db)

    assert first == [migration_id for migration_id, _ in MIGRATIONS]
    assert second == []
    assert len(db["schema_migrations"].documents) == len(MIGRATIONS)


def test_user_email_index_only_covers_live_users() -> None:
    db = _FakeDatabase()

    apply_mongo_migrations(db)

    email_index = next(
        options for keys, options in db["auth_users"].indexes if keys == "email"
    )
    assert email_index["unique"] is True
    assert email_index["partialFilterExpression"] == {"deleted": False}
    passkey_keys = [keys for keys, _ in db["auth_passkeys"].indexes]
    assert "credential_id" in passkey_keys
