"""SQLite-backed ledger state for cl-hive-ballot."""

from __future__ import annotations

import os
import sqlite3
import threading
from contextlib import contextmanager
from typing import Callable, Iterator, Optional, Tuple


def _is_numeric_key(key: str) -> bool:
    return key.isascii() and key.isdigit()


def _ledger_key_order(left: str, right: str) -> int:
    """Digit-only keys compare numerically and sort before all other keys."""
    left_num = _is_numeric_key(left)
    right_num = _is_numeric_key(right)
    if left_num and right_num:
        a, b = int(left), int(right)
        return (a > b) - (a < b)
    if left_num != right_num:
        return -1 if left_num else 1
    return (left > right) - (left < right)


class BallotStore:
    """Ordered key/value ledger with point reads, writes, and range scans."""

    def __init__(self, db_path: str, logger: Optional[Callable[[str, str], None]] = None):
        self.db_path = os.path.expanduser(db_path)
        self._logger = logger
        self._local = threading.local()

    def _log(self, message: str, level: str = "info") -> None:
        if self._logger:
            self._logger(message, level)

    def _get_connection(self) -> sqlite3.Connection:
        conn = getattr(self._local, "conn", None)
        if conn is None:
            db_dir = os.path.dirname(self.db_path)
            if db_dir:
                os.makedirs(db_dir, exist_ok=True)
            conn = sqlite3.connect(
                self.db_path,
                isolation_level=None,
                timeout=30.0,
            )
            conn.create_collation("LEDGER_KEY", _ledger_key_order)
            conn.execute("PRAGMA journal_mode=WAL;")
            self._local.conn = conn
        return conn

    def initialize(self) -> None:
        conn = self._get_connection()
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS ledger_state (
                key TEXT NOT NULL COLLATE LEDGER_KEY PRIMARY KEY,
                value BLOB NOT NULL
            )
            """
        )

    def close(self) -> None:
        conn = getattr(self._local, "conn", None)
        if conn is not None:
            conn.close()
            self._local.conn = None

    @contextmanager
    def transaction(self, write: bool = True) -> Iterator[sqlite3.Connection]:
        """Run the enclosed reads and writes as one transaction.

        Writers take the database lock up front (BEGIN IMMEDIATE), so two
        writers touching the same keys are serialized rather than racing.
        Nested use joins the outer transaction. Any failure, including a
        failed COMMIT or a BaseException, leaves the connection outside a
        transaction.
        """
        conn = self._get_connection()
        if conn.in_transaction:
            yield conn
            return
        conn.execute("BEGIN IMMEDIATE" if write else "BEGIN")
        try:
            yield conn
            conn.execute("COMMIT")
        except BaseException as exc:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            self._log(f"ballot: transaction rolled back: {exc!r}", "warn")
            raise

    def get_state(self, key: str) -> Optional[bytes]:
        conn = self._get_connection()
        row = conn.execute(
            "SELECT value FROM ledger_state WHERE key = ?",
            (key,),
        ).fetchone()
        return bytes(row[0]) if row else None

    def put_state(self, key: str, value: bytes) -> None:
        conn = self._get_connection()
        conn.execute(
            """
            INSERT INTO ledger_state (key, value) VALUES (?, ?)
            ON CONFLICT(key) DO UPDATE SET value = excluded.value
            """,
            (key, sqlite3.Binary(value)),
        )

    @contextmanager
    def state_by_range(self, start_key: str, end_key: str) -> Iterator[Iterator[Tuple[str, bytes]]]:
        """Yield ordered (key, value) pairs with start_key <= key < end_key.

        The underlying cursor is closed however the caller leaves the block.
        """
        conn = self._get_connection()
        cursor = conn.execute(
            """
            SELECT key, value FROM ledger_state
            WHERE key >= ? AND key < ?
            ORDER BY key
            """,
            (start_key, end_key),
        )
        try:
            yield ((str(key), bytes(value)) for key, value in cursor)
        finally:
            cursor.close()
