"""Session issuance, sliding expiration, eviction and revocation."""

from __future__ import annotations

import logging
import sqlite3
import uuid

from authcore.auth.errors import ConflictError, ExpiredError, NotFoundError
from authcore.auth.models import DeviceMeta, Session
from authcore.core.clock import Clock, system_clock
from authcore.core.config import EVICTION_POLICY_REJECT, AuthConfig
from authcore.core.security import generate_token, hash_secret
from authcore.core.state_db import StateDatabase

LOGGER = logging.getLogger(__name__)

_SESSION_COLUMNS = (
    "session_id, user_id, created_at, expires_at, last_seen_at, ip_address, user_agent"
)


def _session_from_row(row: sqlite3.Row, token: str = "") -> Session:
    return Session(
        session_id=str(row["session_id"]),
        user_id=str(row["user_id"]),
        token=token,
        created_at=int(row["created_at"]),
        expires_at=int(row["expires_at"]),
        last_seen_at=int(row["last_seen_at"]),
        ip_address=str(row["ip_address"] or ""),
        user_agent=str(row["user_agent"] or ""),
    )


class SessionManager:
    """SQLite-backed session store; exclusive owner of session records.

    Only the SHA-256 of a bearer token is persisted. Per-user limit
    enforcement reads, evicts and inserts inside one ``BEGIN IMMEDIATE``
    transaction so concurrent sign-ins for the same user cannot overshoot
    ``maximum_sessions``.
    """

    def __init__(
        self, state_db: StateDatabase, config: AuthConfig, *, clock: Clock = system_clock
    ) -> None:
        self._db = state_db
        self._config = config
        self._clock = clock

    def create_session(self, user_id: str, device: DeviceMeta | None = None) -> Session:
        """Issue a new session token for the user."""
        device = device or DeviceMeta()
        now = self._clock()
        token = generate_token()
        session = Session(
            session_id=uuid.uuid4().hex,
            user_id=user_id,
            token=token,
            created_at=now,
            expires_at=now + self._config.session_max_age_seconds,
            last_seen_at=now,
            ip_address=device.ip_address,
            user_agent=device.user_agent,
        )
        limit = max(1, self._config.maximum_sessions)

        with self._db.transaction() as conn:
            conn.execute(
                "DELETE FROM auth_sessions WHERE user_id = ? AND expires_at <= ?",
                (user_id, now),
            )
            live = conn.execute(
                "SELECT session_id FROM auth_sessions WHERE user_id = ? "
                "ORDER BY last_seen_at ASC, created_at ASC",
                (user_id,),
            ).fetchall()
            overflow = len(live) - limit + 1
            if overflow > 0:
                if self._config.session_eviction_policy == EVICTION_POLICY_REJECT:
                    raise ConflictError("Maximum number of sessions reached")
                evicted = [str(row["session_id"]) for row in live[:overflow]]
                conn.executemany(
                    "DELETE FROM auth_sessions WHERE session_id = ?",
                    [(session_id,) for session_id in evicted],
                )
                LOGGER.info(
                    "sessions_evicted",
                    extra={"user_id": user_id, "action": f"evicted:{len(evicted)}"},
                )
            conn.execute(
                """
                INSERT INTO auth_sessions(
                  session_id, user_id, token_hash, created_at, expires_at,
                  last_seen_at, ip_address, user_agent
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    session.session_id,
                    user_id,
                    hash_secret(token),
                    session.created_at,
                    session.expires_at,
                    session.last_seen_at,
                    session.ip_address,
                    session.user_agent,
                ),
            )

        LOGGER.info(
            "session_created",
            extra={"user_id": user_id, "session_id": session.session_id},
        )
        return session

    def validate_session(self, token: str) -> Session:
        """Resolve a bearer token, sliding its expiry once per update-age window."""
        if not token:
            raise NotFoundError("Session not found")
        now = self._clock()
        token_hash = hash_secret(token)

        with self._db.transaction() as conn:
            row = conn.execute(
                f"SELECT {_SESSION_COLUMNS} FROM auth_sessions WHERE token_hash = ?",
                (token_hash,),
            ).fetchone()
            if row is None:
                raise NotFoundError("Session not found")
            expired = int(row["expires_at"]) <= now
            if expired:
                conn.execute("DELETE FROM auth_sessions WHERE token_hash = ?", (token_hash,))
            elif now - int(row["last_seen_at"]) > self._config.session_update_age_seconds:
                conn.execute(
                    "UPDATE auth_sessions SET expires_at = ?, last_seen_at = ? "
                    "WHERE token_hash = ?",
                    (now + self._config.session_max_age_seconds, now, token_hash),
                )
                row = conn.execute(
                    f"SELECT {_SESSION_COLUMNS} FROM auth_sessions WHERE token_hash = ?",
                    (token_hash,),
                ).fetchone()

        if expired:
            raise ExpiredError("Session expired")
        return _session_from_row(row, token=token)

    def revoke(self, token: str) -> None:
        """Delete the session behind ``token``; unknown tokens are ignored."""
        if not token:
            return
        with self._db.transaction() as conn:
            conn.execute(
                "DELETE FROM auth_sessions WHERE token_hash = ?", (hash_secret(token),)
            )

    def revoke_by_id(self, user_id: str, session_id: str) -> None:
        """Delete one of the user's sessions by id; unknown ids are ignored."""
        with self._db.transaction() as conn:
            conn.execute(
                "DELETE FROM auth_sessions WHERE session_id = ? AND user_id = ?",
                (session_id, user_id),
            )

    def revoke_all_except(self, user_id: str, keep_token: str) -> int:
        """Delete every session of the user except the one for ``keep_token``."""
        with self._db.transaction() as conn:
            cursor = conn.execute(
                "DELETE FROM auth_sessions WHERE user_id = ? AND token_hash != ?",
                (user_id, hash_secret(keep_token)),
            )
            return int(cursor.rowcount)

    def revoke_all(self, user_id: str) -> int:
        """Delete every session of the user."""
        with self._db.transaction() as conn:
            cursor = conn.execute("DELETE FROM auth_sessions WHERE user_id = ?", (user_id,))
            count = int(cursor.rowcount)
        LOGGER.info("sessions_revoked_all", extra={"user_id": user_id})
        return count

    def list_sessions(self, user_id: str) -> list[Session]:
        """List the user's live sessions, most recently seen first."""
        rows = self._db.fetch_all(
            f"SELECT {_SESSION_COLUMNS} FROM auth_sessions "
            "WHERE user_id = ? AND expires_at > ? ORDER BY last_seen_at DESC",
            (user_id, self._clock()),
        )
        return [_session_from_row(row) for row in rows]

    def sweep_expired(self) -> int:
        """Delete expired sessions and return how many were removed."""
        with self._db.transaction() as conn:
            cursor = conn.execute(
                "DELETE FROM auth_sessions WHERE expires_at <= ?", (self._clock(),)
            )
            return int(cursor.rowcount)
