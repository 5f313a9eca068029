"""One-time challenges: OTP codes, link tokens and passkey ceremony nonces."""

from __future__ import annotations

import json
import logging
import sqlite3
import uuid
from typing import Any, Callable

from authcore.auth.errors import ExpiredError, MismatchError, NotFoundError
from authcore.auth.models import (
    NUMERIC_CODE_PURPOSES,
    Challenge,
    ChallengePurpose,
    IssuedChallenge,
)
from authcore.core.clock import Clock, system_clock
from authcore.core.config import AuthConfig
from authcore.core.security import (
    CHALLENGE_TOKEN_BYTES,
    generate_numeric_code,
    generate_token,
    hash_secret,
    secrets_equal,
)
from authcore.core.state_db import StateDatabase

LOGGER = logging.getLogger(__name__)

CodeGenerator = Callable[[int], str]

_CHALLENGE_COLUMNS = (
    "challenge_id, purpose, subject, user_id, secret_hash, payload_json, attempts, "
    "created_at, expires_at, consumed_at"
)


def _challenge_from_row(row: sqlite3.Row) -> Challenge:
    return Challenge(
        challenge_id=str(row["challenge_id"]),
        purpose=ChallengePurpose(str(row["purpose"])),
        subject=str(row["subject"]),
        user_id=row["user_id"],
        payload=json.loads(row["payload_json"] or "{}"),
        attempts=int(row["attempts"]),
        created_at=int(row["created_at"]),
        expires_at=int(row["expires_at"]),
        consumed_at=row["consumed_at"],
    )


class ChallengeEngine:
    """Issues and verifies single-use challenges; exclusive owner of their records.

    Secrets are stored as SHA-256 digests. Consumption is a conditional update
    (``consumed_at IS NULL``), so of any number of concurrent verifications of
    the same challenge at most one succeeds.
    """

    def __init__(
        self,
        state_db: StateDatabase,
        config: AuthConfig,
        *,
        clock: Clock = system_clock,
        code_generator: CodeGenerator = generate_numeric_code,
    ) -> None:
        self._db = state_db
        self._config = config
        self._clock = clock
        self._code_generator = code_generator

    def ttl_for(self, purpose: ChallengePurpose) -> int:
        """Return lifetime in seconds for challenges of ``purpose``."""
        if purpose in NUMERIC_CODE_PURPOSES:
            return self._config.otp_ttl_seconds
        if purpose == ChallengePurpose.MAGIC_LINK:
            return self._config.magic_link_ttl_seconds
        if purpose == ChallengePurpose.PASSWORD_RESET:
            return self._config.password_reset_ttl_seconds
        if purpose == ChallengePurpose.TWO_FACTOR:
            return self._config.two_factor_ttl_seconds
        return self._config.passkey_challenge_ttl_seconds

    def issue(
        self,
        purpose: ChallengePurpose,
        subject: str,
        *,
        user_id: str | None = None,
        payload: dict[str, Any] | None = None,
    ) -> IssuedChallenge:
        """Create a challenge and return it with its plaintext secret.

        Issuing a numeric code supersedes any earlier unconsumed code for the
        same purpose and subject.
        """
        now = self._clock()
        if purpose in NUMERIC_CODE_PURPOSES:
            secret = self._code_generator(self._config.otp_length)
        else:
            secret = generate_token(CHALLENGE_TOKEN_BYTES)
        challenge = Challenge(
            challenge_id=uuid.uuid4().hex,
            purpose=purpose,
            subject=subject,
            user_id=user_id,
            payload=dict(payload or {}),
            created_at=now,
            expires_at=now + self.ttl_for(purpose),
        )

        with self._db.transaction() as conn:
            if purpose in NUMERIC_CODE_PURPOSES:
                conn.execute(
                    "UPDATE auth_challenges SET consumed_at = ? "
                    "WHERE purpose = ? AND subject = ? AND consumed_at IS NULL",
                    (now, str(purpose), subject),
                )
            conn.execute(
                f"INSERT INTO auth_challenges({_CHALLENGE_COLUMNS}) "
                "VALUES (?, ?, ?, ?, ?, ?, 0, ?, ?, NULL)",
                (
                    challenge.challenge_id,
                    str(purpose),
                    subject,
                    user_id,
                    hash_secret(secret),
                    json.dumps(challenge.payload, ensure_ascii=False),
                    challenge.created_at,
                    challenge.expires_at,
                ),
            )

        LOGGER.info(
            "challenge_issued",
            extra={"purpose": str(purpose), "user_id": user_id or ""},
        )
        return IssuedChallenge(challenge=challenge, secret=secret)

    def verify(self, purpose: ChallengePurpose, subject: str, presented: str) -> Challenge:
        """Consume the latest open challenge for ``subject`` if ``presented`` matches.

        Wrong values count against the challenge; it is burnt once
        ``otp_max_attempts`` mismatches have been recorded.
        """
        now = self._clock()
        presented_hash = hash_secret(presented.strip())
        outcome = "ok"

        with self._db.transaction() as conn:
            row = conn.execute(
                f"SELECT {_CHALLENGE_COLUMNS} FROM auth_challenges "
                "WHERE purpose = ? AND subject = ? AND consumed_at IS NULL "
                "ORDER BY created_at DESC, rowid DESC LIMIT 1",
                (str(purpose), subject),
            ).fetchone()
            if row is None:
                raise NotFoundError("Challenge not found")
            if int(row["expires_at"]) <= now:
                raise ExpiredError("Challenge expired")

            if not secrets_equal(presented_hash, str(row["secret_hash"])):
                attempts = int(row["attempts"]) + 1
                burn = attempts >= max(1, self._config.otp_max_attempts)
                conn.execute(
                    "UPDATE auth_challenges SET attempts = ?, consumed_at = ? "
                    "WHERE challenge_id = ? AND consumed_at IS NULL",
                    (attempts, now if burn else None, row["challenge_id"]),
                )
                outcome = "mismatch"
            else:
                outcome = self._consume(conn, str(row["challenge_id"]), now)

        if outcome == "mismatch":
            raise MismatchError()
        if outcome == "lost":
            raise NotFoundError("Challenge not found")
        return self._consumed_copy(row, now)

    def redeem(self, purpose: ChallengePurpose, token: str) -> Challenge:
        """Consume an opaque-token challenge looked up by its secret."""
        now = self._clock()
        with self._db.transaction() as conn:
            row = self._find_by_secret(conn, purpose, token)
            if int(row["expires_at"]) <= now:
                raise ExpiredError("Challenge expired")
            outcome = self._consume(conn, str(row["challenge_id"]), now)

        if outcome == "lost":
            raise NotFoundError("Challenge not found")
        return self._consumed_copy(row, now)

    def get_active(self, purpose: ChallengePurpose, token: str) -> Challenge:
        """Return an open opaque-token challenge without consuming it."""
        row = self._db.fetch_one(
            f"SELECT {_CHALLENGE_COLUMNS} FROM auth_challenges "
            "WHERE purpose = ? AND secret_hash = ? AND consumed_at IS NULL",
            (str(purpose), hash_secret(token.strip())),
        )
        if row is None:
            raise NotFoundError("Challenge not found")
        if int(row["expires_at"]) <= self._clock():
            raise ExpiredError("Challenge expired")
        return _challenge_from_row(row)

    def sweep_expired(self) -> int:
        """Delete expired and consumed challenges."""
        with self._db.transaction() as conn:
            cursor = conn.execute(
                "DELETE FROM auth_challenges WHERE expires_at <= ? OR consumed_at IS NOT NULL",
                (self._clock(),),
            )
            return int(cursor.rowcount)

    @staticmethod
    def _find_by_secret(
        conn: sqlite3.Connection, purpose: ChallengePurpose, token: str
    ) -> sqlite3.Row:
        row = conn.execute(
            f"SELECT {_CHALLENGE_COLUMNS} FROM auth_challenges "
            "WHERE purpose = ? AND secret_hash = ? AND consumed_at IS NULL",
            (str(purpose), hash_secret(token.strip())),
        ).fetchone()
        if row is None:
            raise NotFoundError("Challenge not found")
        return row

    @staticmethod
    def _consume(conn: sqlite3.Connection, challenge_id: str, now: int) -> str:
        cursor = conn.execute(
            "UPDATE auth_challenges SET consumed_at = ? "
            "WHERE challenge_id = ? AND consumed_at IS NULL",
            (now, challenge_id),
        )
        return "ok" if cursor.rowcount == 1 else "lost"

    @staticmethod
    def _consumed_copy(row: sqlite3.Row, now: int) -> Challenge:
        challenge = _challenge_from_row(row)
        return challenge.model_copy(update={"consumed_at": now})
