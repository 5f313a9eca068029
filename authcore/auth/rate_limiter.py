"""Fixed-window brute-force protection backed by SQLite runtime state."""

from __future__ import annotations

import logging

from authcore.auth.errors import RateLimitedError
from authcore.core.clock import Clock, system_clock
from authcore.core.config import RateLimitRule
from authcore.core.state_db import StateDatabase

LOGGER = logging.getLogger(__name__)


def bucket_key(action: str, subject: str) -> str:
    """Build normalized bucket key for an (action, subject) pair."""
    return f"{action.strip().lower()}|{subject.strip().lower() or 'unknown'}"


class RateLimiter:
    """Counts actions per wall-clock aligned window.

    A window of ``W`` seconds covers ``[t - t % W, t - t % W + W)``; the counter
    restarts at each boundary rather than sliding.
    """

    def __init__(
        self,
        state_db: StateDatabase,
        rules: dict[str, RateLimitRule],
        *,
        clock: Clock = system_clock,
    ) -> None:
        """Initialize limiter storage and policy parameters."""
        self._db = state_db
        self._rules = dict(rules)
        self._clock = clock

    def check_and_increment(self, key: str, window_seconds: int, max_requests: int) -> bool:
        """Count one attempt for ``key`` and report whether it is within the limit."""
        window = max(1, int(window_seconds))
        now = self._clock()
        window_start = now - now % window

        with self._db.transaction() as conn:
            row = conn.execute(
                "SELECT window_start, request_count FROM auth_rate_limit_buckets "
                "WHERE bucket_key = ?",
                (key,),
            ).fetchone()
            if row is None or int(row["window_start"]) != window_start:
                count = 1
            else:
                count = int(row["request_count"]) + 1
            conn.execute(
                """
                INSERT INTO auth_rate_limit_buckets(
                  bucket_key, window_start, window_seconds, request_count
                ) VALUES (?, ?, ?, ?)
                ON CONFLICT(bucket_key) DO UPDATE SET
                  window_start = excluded.window_start,
                  window_seconds = excluded.window_seconds,
                  request_count = excluded.request_count
                """,
                (key, window_start, window, count),
            )
        return count <= max(0, int(max_requests))

    def assert_allowed(self, action: str, subject: str) -> None:
        """Raise ``RateLimitedError`` when ``action`` by ``subject`` exceeds its rule."""
        rule = self._rules.get(action)
        if rule is None:
            return
        if self.check_and_increment(
            bucket_key(action, subject), rule.window_seconds, rule.max_requests
        ):
            return

        now = self._clock()
        window = max(1, rule.window_seconds)
        retry_after = window - now % window
        LOGGER.warning("rate_limited", extra={"action": action})
        raise RateLimitedError(
            f"Too many attempts. Retry after {retry_after} seconds.",
            retry_after=retry_after,
        )

    def sweep(self, grace_seconds: int = 60) -> int:
        """Evict buckets whose window ended more than ``grace_seconds`` ago."""
        with self._db.transaction() as conn:
            cursor = conn.execute(
                "DELETE FROM auth_rate_limit_buckets "
                "WHERE window_start + window_seconds + ? <= ?",
                (max(0, int(grace_seconds)), self._clock()),
            )
            return int(cursor.rowcount)
