"""Credential store for users, linked accounts and passkey credentials."""

from __future__ import annotations

import json
import logging
import sqlite3
import uuid
from typing import Any

from pymongo import MongoClient
from pymongo.errors import DuplicateKeyError, PyMongoError

from authcore.auth.errors import (
    ConflictError,
    NotFoundError,
    ReplayDetectedError,
    UnavailableError,
)
from authcore.auth.models import PasskeyCredential, PasskeyStatus, User
from authcore.core.clock import Clock, system_clock
from authcore.core.mongo_migrations import apply_mongo_migrations
from authcore.core.security import verify_password
from authcore.core.state_db import StateDatabase

LOGGER = logging.getLogger(__name__)

USER_UPDATABLE_FIELDS = frozenset(
    {
        "name",
        "password_hash",
        "phone",
        "email_verified",
        "phone_verified",
        "two_factor_enabled",
        "last_login_method",
    }
)
_USER_BOOL_FIELDS = frozenset({"email_verified", "phone_verified", "two_factor_enabled"})


def _user_from_row(row: sqlite3.Row) -> User:
    data = dict(row)
    for key in _USER_BOOL_FIELDS:
        data[key] = bool(data[key])
    return User.model_validate(data)


def _passkey_from_row(row: sqlite3.Row) -> PasskeyCredential:
    data = dict(row)
    data["transports"] = json.loads(data.get("transports") or "[]")
    return PasskeyCredential.model_validate(data)


class CredentialStore:
    """Credential store with MongoDB primary and SQLite fallback.

    MongoDB is used when ``mongo_uri`` is given and reachable; otherwise all
    records live in the shared SQLite runtime database. Both backends rely on
    unique indexes for email/credential uniqueness and on conditional updates
    for sign-counter advancement, so concurrent writers never need app locks.
    """

    def __init__(
        self,
        state_db: StateDatabase,
        *,
        clock: Clock = system_clock,
        mongo_uri: str = "",
        mongo_db: str = "authcore",
    ) -> None:
        """Initialize repository storage backends."""
        self._db = state_db
        self._clock = clock
        self._mongo_users = None
        self._mongo_accounts = None
        self._mongo_passkeys = None

        if mongo_uri:
            try:
                client: MongoClient = MongoClient(mongo_uri, serverSelectionTimeoutMS=3000)
                client.admin.command("ping")
                db = client[mongo_db]
                apply_mongo_migrations(db)
                self._mongo_users = db["auth_users"]
                self._mongo_accounts = db["auth_accounts"]
                self._mongo_passkeys = db["auth_passkeys"]
            except PyMongoError:
                LOGGER.warning("mongo_unavailable_using_sqlite", exc_info=True)

    @property
    def backend(self) -> str:
        return "mongo" if self._mongo_users is not None else "sqlite"

    # Users

    def create_user(
        self,
        email: str,
        password_hash: str | None = None,
        *,
        name: str = "",
        phone: str | None = None,
        email_verified: bool = False,
        phone_verified: bool = False,
    ) -> User:
        """Create a user, failing with ``ConflictError`` when the email is taken."""
        now = self._clock()
        user = User(
            user_id=uuid.uuid4().hex,
            email=email.strip().lower(),
            name=name,
            password_hash=password_hash,
            phone=phone,
            email_verified=email_verified,
            phone_verified=phone_verified,
            created_at=now,
            updated_at=now,
        )
        if self._mongo_users is not None:
            try:
                self._mongo_users.insert_one({**user.model_dump(), "deleted": False})
            except DuplicateKeyError as exc:
                raise ConflictError("User already exists") from exc
            except PyMongoError as exc:
                raise UnavailableError() from exc
            return user

        with self._db.transaction() as conn:
            try:
                conn.execute(
                    """
                    INSERT INTO auth_users(
                      user_id, email, name, password_hash, phone, email_verified,
                      phone_verified, two_factor_enabled, last_login_method,
                      created_at, updated_at, deleted_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, 0, '', ?, ?, NULL)
                    """,
                    (
                        user.user_id,
                        user.email,
                        user.name,
                        user.password_hash,
                        user.phone,
                        int(user.email_verified),
                        int(user.phone_verified),
                        now,
                        now,
                    ),
                )
            except sqlite3.IntegrityError as exc:
                raise ConflictError("User already exists") from exc
        return user

    def get_user(self, user_id: str) -> User | None:
        """Get live user by id."""
        if self._mongo_users is not None:
            return self._find_mongo_user({"user_id": user_id})
        row = self._db.fetch_one(
            "SELECT * FROM auth_users WHERE user_id = ? AND deleted_at IS NULL",
            (user_id,),
        )
        return _user_from_row(row) if row else None

    def get_user_by_email(self, email: str) -> User | None:
        """Get live user by normalized email."""
        key = email.strip().lower()
        if self._mongo_users is not None:
            return self._find_mongo_user({"email": key})
        row = self._db.fetch_one(
            "SELECT * FROM auth_users WHERE email = ? AND deleted_at IS NULL",
            (key,),
        )
        return _user_from_row(row) if row else None

    def get_user_by_phone(self, phone: str) -> User | None:
        """Get live user by normalized phone number."""
        if self._mongo_users is not None:
            return self._find_mongo_user({"phone": phone})
        row = self._db.fetch_one(
            "SELECT * FROM auth_users WHERE phone = ? AND deleted_at IS NULL",
            (phone,),
        )
        return _user_from_row(row) if row else None

    def update_user(self, user_id: str, **changes: Any) -> User:
        """Apply field changes to a live user and return the updated record."""
        unknown = set(changes) - USER_UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Fields cannot be updated: {', '.join(sorted(unknown))}")
        now = self._clock()

        if self._mongo_users is not None:
            try:
                result = self._mongo_users.update_one(
                    {"user_id": user_id, "deleted": False},
                    {"$set": {**changes, "updated_at": now}},
                )
            except DuplicateKeyError as exc:
                raise ConflictError("Phone number already in use") from exc
            except PyMongoError as exc:
                raise UnavailableError() from exc
            if result.matched_count == 0:
                raise NotFoundError("User not found")
        else:
            assignments = ", ".join(f"{key} = ?" for key in changes)
            values = [
                int(value) if key in _USER_BOOL_FIELDS else value
                for key, value in changes.items()
            ]
            with self._db.transaction() as conn:
                try:
                    cursor = conn.execute(
                        f"UPDATE auth_users SET {assignments}{', ' if assignments else ''}"
                        "updated_at = ? WHERE user_id = ? AND deleted_at IS NULL",
                        (*values, now, user_id),
                    )
                except sqlite3.IntegrityError as exc:
                    raise ConflictError("Phone number already in use") from exc
                if cursor.rowcount == 0:
                    raise NotFoundError("User not found")

        user = self.get_user(user_id)
        if user is None:
            raise NotFoundError("User not found")
        return user

    def soft_delete_user(self, user_id: str) -> None:
        """Mark user deleted; the email becomes available for new sign-ups."""
        now = self._clock()
        if self._mongo_users is not None:
            try:
                self._mongo_users.update_one(
                    {"user_id": user_id, "deleted": False},
                    {"$set": {"deleted": True, "deleted_at": now, "updated_at": now}},
                )
            except PyMongoError as exc:
                raise UnavailableError() from exc
            return

        with self._db.transaction() as conn:
            conn.execute(
                "UPDATE auth_users SET deleted_at = ?, updated_at = ? "
                "WHERE user_id = ? AND deleted_at IS NULL",
                (now, now, user_id),
            )

    def verify_password(self, user: User | None, candidate: str) -> bool:
        """Check candidate password in constant time, also for missing users."""
        return verify_password(candidate, user.password_hash if user else None)

    def _find_mongo_user(self, query: dict[str, Any]) -> User | None:
        assert self._mongo_users is not None
        try:
            doc = self._mongo_users.find_one({**query, "deleted": False}, {"_id": 0})
        except PyMongoError as exc:
            raise UnavailableError() from exc
        return User.model_validate(doc) if doc else None

    # Linked provider accounts

    def link_account(self, user_id: str, provider: str, external_id: str) -> None:
        """Map an external provider identity to a user."""
        now = self._clock()
        if self._mongo_accounts is not None:
            try:
                self._mongo_accounts.insert_one(
                    {
                        "provider": provider,
                        "external_id": external_id,
                        "user_id": user_id,
                        "created_at": now,
                    }
                )
            except DuplicateKeyError as exc:
                raise ConflictError("Account already linked") from exc
            except PyMongoError as exc:
                raise UnavailableError() from exc
            return

        with self._db.transaction() as conn:
            try:
                conn.execute(
                    "INSERT INTO auth_accounts(provider, external_id, user_id, created_at) "
                    "VALUES (?, ?, ?, ?)",
                    (provider, external_id, user_id, now),
                )
            except sqlite3.IntegrityError as exc:
                raise ConflictError("Account already linked") from exc

    def find_account(self, provider: str, external_id: str) -> str | None:
        """Return user id linked to the provider identity."""
        if self._mongo_accounts is not None:
            try:
                doc = self._mongo_accounts.find_one(
                    {"provider": provider, "external_id": external_id}, {"_id": 0}
                )
            except PyMongoError as exc:
                raise UnavailableError() from exc
            return str(doc["user_id"]) if doc else None

        row = self._db.fetch_one(
            "SELECT user_id FROM auth_accounts WHERE provider = ? AND external_id = ?",
            (provider, external_id),
        )
        return str(row["user_id"]) if row else None

    # Passkeys

    def add_passkey_credential(
        self,
        *,
        user_id: str,
        credential_id: str,
        public_key: str,
        algorithm: int,
        sign_count: int,
        name: str = "",
        platform: str = "",
        transports: list[str] | None = None,
    ) -> PasskeyCredential:
        """Store a credential produced by a completed registration ceremony."""
        passkey = PasskeyCredential(
            passkey_id=uuid.uuid4().hex,
            user_id=user_id,
            credential_id=credential_id,
            public_key=public_key,
            algorithm=algorithm,
            sign_count=sign_count,
            name=name,
            platform=platform,
            transports=list(transports or []),
            created_at=self._clock(),
        )
        if self._mongo_passkeys is not None:
            try:
                self._mongo_passkeys.insert_one(passkey.model_dump(mode="json"))
            except DuplicateKeyError as exc:
                raise ConflictError("Credential already registered") from exc
            except PyMongoError as exc:
                raise UnavailableError() from exc
            return passkey

        with self._db.transaction() as conn:
            try:
                conn.execute(
                    """
                    INSERT INTO auth_passkeys(
                      passkey_id, user_id, credential_id, public_key, algorithm,
                      sign_count, name, platform, transports, status, created_at,
                      last_used_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, NULL)
                    """,
                    (
                        passkey.passkey_id,
                        passkey.user_id,
                        passkey.credential_id,
                        passkey.public_key,
                        passkey.algorithm,
                        passkey.sign_count,
                        passkey.name,
                        passkey.platform,
                        json.dumps(passkey.transports),
                        str(passkey.status),
                        passkey.created_at,
                    ),
                )
            except sqlite3.IntegrityError as exc:
                raise ConflictError("Credential already registered") from exc
        return passkey

    def find_passkey_by_credential_id(self, credential_id: str) -> PasskeyCredential | None:
        """Get passkey by authenticator credential id, any status."""
        if self._mongo_passkeys is not None:
            try:
                doc = self._mongo_passkeys.find_one({"credential_id": credential_id}, {"_id": 0})
            except PyMongoError as exc:
                raise UnavailableError() from exc
            return PasskeyCredential.model_validate(doc) if doc else None

        row = self._db.fetch_one(
            "SELECT * FROM auth_passkeys WHERE credential_id = ?", (credential_id,)
        )
        return _passkey_from_row(row) if row else None

    def list_passkeys(self, user_id: str, *, include_revoked: bool = False) -> list[PasskeyCredential]:
        """List user passkeys ordered by registration time."""
        if self._mongo_passkeys is not None:
            query: dict[str, Any] = {"user_id": user_id}
            if not include_revoked:
                query["status"] = str(PasskeyStatus.ACTIVE)
            try:
                docs = list(self._mongo_passkeys.find(query, {"_id": 0}).sort("created_at", 1))
            except PyMongoError as exc:
                raise UnavailableError() from exc
            return [PasskeyCredential.model_validate(doc) for doc in docs]

        sql = "SELECT * FROM auth_passkeys WHERE user_id = ?"
        params: tuple = (user_id,)
        if not include_revoked:
            sql += " AND status = ?"
            params = (user_id, str(PasskeyStatus.ACTIVE))
        rows = self._db.fetch_all(sql + " ORDER BY created_at, passkey_id", params)
        return [_passkey_from_row(row) for row in rows]

    def update_sign_counter(self, credential_id: str, new_counter: int) -> None:
        """Advance the stored sign counter, rejecting stale or replayed values."""
        now = self._clock()
        if self._mongo_passkeys is not None:
            try:
                result = self._mongo_passkeys.update_one(
                    {
                        "credential_id": credential_id,
                        "status": str(PasskeyStatus.ACTIVE),
                        "sign_count": {"$lt": new_counter},
                    },
                    {"$set": {"sign_count": new_counter, "last_used_at": now}},
                )
            except PyMongoError as exc:
                raise UnavailableError() from exc
            updated = result.modified_count == 1
        else:
            with self._db.transaction() as conn:
                cursor = conn.execute(
                    """
                    UPDATE auth_passkeys SET sign_count = ?, last_used_at = ?
                    WHERE credential_id = ? AND status = ? AND sign_count < ?
                    """,
                    (new_counter, now, credential_id, str(PasskeyStatus.ACTIVE), new_counter),
                )
                updated = cursor.rowcount == 1

        if updated:
            return
        current = self.find_passkey_by_credential_id(credential_id)
        if current is None or current.status != PasskeyStatus.ACTIVE:
            raise NotFoundError("Passkey not found")
        raise ReplayDetectedError()

    def touch_passkey(self, credential_id: str) -> None:
        """Record a use of a credential whose authenticator keeps no counter."""
        now = self._clock()
        if self._mongo_passkeys is not None:
            try:
                self._mongo_passkeys.update_one(
                    {"credential_id": credential_id}, {"$set": {"last_used_at": now}}
                )
            except PyMongoError as exc:
                raise UnavailableError() from exc
            return
        with self._db.transaction() as conn:
            conn.execute(
                "UPDATE auth_passkeys SET last_used_at = ? WHERE credential_id = ?",
                (now, credential_id),
            )

    def revoke_passkey(self, user_id: str, passkey_id: str) -> None:
        """Revoke one of the user's passkeys; repeated calls are no-ops."""
        if self._mongo_passkeys is not None:
            try:
                result = self._mongo_passkeys.update_one(
                    {"passkey_id": passkey_id, "user_id": user_id},
                    {"$set": {"status": str(PasskeyStatus.REVOKED)}},
                )
            except PyMongoError as exc:
                raise UnavailableError() from exc
            found = result.matched_count == 1
        else:
            with self._db.transaction() as conn:
                cursor = conn.execute(
                    "UPDATE auth_passkeys SET status = ? WHERE passkey_id = ? AND user_id = ?",
                    (str(PasskeyStatus.REVOKED), passkey_id, user_id),
                )
                found = cursor.rowcount == 1
        if not found:
            raise NotFoundError("Passkey not found")

    def revoke_all_passkeys(self, user_id: str) -> int:
        """Revoke every active passkey of the user."""
        return self._revoke_where_active({"user_id": user_id}, "user_id = ?", (user_id,))

    def revoke_inactive_passkeys(self, idle_before: int) -> int:
        """Revoke active passkeys unused since ``idle_before``."""
        if self._mongo_passkeys is not None:
            query = {
                "$or": [
                    {"last_used_at": {"$lt": idle_before}},
                    {"last_used_at": None, "created_at": {"$lt": idle_before}},
                ]
            }
            return self._revoke_where_active(query, "", ())
        return self._revoke_where_active(
            {}, "COALESCE(last_used_at, created_at) < ?", (idle_before,)
        )

    def _revoke_where_active(
        self, mongo_query: dict[str, Any], sql_where: str, params: tuple
    ) -> int:
        if self._mongo_passkeys is not None:
            try:
                result = self._mongo_passkeys.update_many(
                    {**mongo_query, "status": str(PasskeyStatus.ACTIVE)},
                    {"$set": {"status": str(PasskeyStatus.REVOKED)}},
                )
            except PyMongoError as exc:
                raise UnavailableError() from exc
            return int(result.modified_count)

        with self._db.transaction() as conn:
            cursor = conn.execute(
                f"UPDATE auth_passkeys SET status = ? WHERE status = ? AND {sql_where}",
                (str(PasskeyStatus.REVOKED), str(PasskeyStatus.ACTIVE), *params),
            )
            return int(cursor.rowcount)
