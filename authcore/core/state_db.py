"""Shared SQLite runtime state connection with serialized write transactions."""

from __future__ import annotations

import sqlite3
from contextlib import contextmanager
from pathlib import Path
from threading import Lock
from typing import Iterator

from authcore.auth.errors import UnavailableError
from authcore.core.migrations import apply_migrations


class StateDatabase:
    """SQLite connection wrapper used by session, challenge and rate-limit stores.

    Every write goes through :meth:`transaction`, which opens a
    ``BEGIN IMMEDIATE`` transaction. SQLite grants the reserved lock to a single
    writer at a time, so read-then-write sequences inside one transaction are
    serialized across threads and across processes sharing the database file.
    """

    def __init__(self, database_path: Path, *, busy_timeout_seconds: float = 5.0) -> None:
        """Open the database and ensure schema is migrated."""
        self.database_path = database_path
        apply_migrations(database_path)
        self._connection = sqlite3.connect(
            str(database_path),
            check_same_thread=False,
            timeout=busy_timeout_seconds,
            isolation_level=None,
        )
        self._connection.row_factory = sqlite3.Row
        self._lock = Lock()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Run a serialized write transaction, translating storage faults."""
        with self._lock:
            try:
                self._connection.execute("BEGIN IMMEDIATE")
            except sqlite3.Error as exc:
                raise UnavailableError() from exc
            try:
                yield self._connection
            except sqlite3.Error as exc:
                self._rollback()
                raise UnavailableError() from exc
            except BaseException:
                self._rollback()
                raise
            try:
                self._connection.execute("COMMIT")
            except sqlite3.Error as exc:
                self._rollback()
                raise UnavailableError() from exc

    def _rollback(self) -> None:
        if not self._connection.in_transaction:
            return
        try:
            self._connection.execute("ROLLBACK")
        except sqlite3.Error as exc:
            raise UnavailableError() from exc

    def fetch_one(self, sql: str, params: tuple = ()) -> sqlite3.Row | None:
        """Run a read query and return the first row."""
        with self._lock:
            try:
                return self._connection.execute(sql, params).fetchone()
            except sqlite3.Error as exc:
                raise UnavailableError() from exc

    def fetch_all(self, sql: str, params: tuple = ()) -> list[sqlite3.Row]:
        """Run a read query and return all rows."""
        with self._lock:
            try:
                return self._connection.execute(sql, params).fetchall()
            except sqlite3.Error as exc:
                raise UnavailableError() from exc

    def close(self) -> None:
        """Close SQLite resources."""
        with self._lock:
            self._connection.close()
