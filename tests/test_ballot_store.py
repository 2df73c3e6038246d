"""Unit tests for the cl-hive-ballot ledger store."""

import os
import sqlite3
import sys

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from modules.ballot_store import BallotStore, _ledger_key_order


def _make_store(tmp_path, **kwargs):
    store = BallotStore(db_path=str(tmp_path / "ballot.db"), **kwargs)
    store.initialize()
    return store


def test_get_missing_key_returns_none(tmp_path):
    store = _make_store(tmp_path)
    assert store.get_state("0") is None


def test_put_then_get_and_overwrite(tmp_path):
    store = _make_store(tmp_path)
    store.put_state("0", b'{"a":1}')
    assert store.get_state("0") == b'{"a":1}'

    store.put_state("0", b'{"a":2}')
    assert store.get_state("0") == b'{"a":2}'


def test_ledger_key_order():
    assert _ledger_key_order("2", "10") < 0
    assert _ledger_key_order("10", "2") > 0
    assert _ledger_key_order("7", "7") == 0
    # Digit-only keys always sort before reserved keys
    assert _ledger_key_order("999999", "~election/clock") < 0
    assert _ledger_key_order("~a", "~b") < 0


def test_range_scan_is_numeric_and_excludes_reserved_keys(tmp_path):
    store = _make_store(tmp_path)
    for token_id in range(12):
        store.put_state(str(token_id), str(token_id).encode("utf-8"))
    store.put_state("~election/clock", b"{}")

    with store.state_by_range("0", "12") as rows:
        keys = [key for key, _ in rows]
    assert keys == [str(i) for i in range(12)]

    with store.state_by_range("0", "3") as rows:
        pairs = list(rows)
    assert pairs == [("0", b"0"), ("1", b"1"), ("2", b"2")]


def test_range_scan_empty_range(tmp_path):
    store = _make_store(tmp_path)
    store.put_state("0", b"x")
    with store.state_by_range("0", "0") as rows:
        assert list(rows) == []


def test_range_scan_releases_cursor_on_error(tmp_path):
    store = _make_store(tmp_path)
    for token_id in range(3):
        store.put_state(str(token_id), b"x")

    with pytest.raises(ValueError):
        with store.state_by_range("0", "3") as rows:
            next(rows)
            raise ValueError("boom")

    # A write transaction can still run after the aborted scan
    with store.transaction():
        store.put_state("3", b"y")
    assert store.get_state("3") == b"y"


def test_transaction_rolls_back_on_exception(tmp_path):
    logged = []
    store = _make_store(tmp_path, logger=lambda msg, level: logged.append((msg, level)))

    with pytest.raises(RuntimeError):
        with store.transaction():
            store.put_state("0", b"partial")
            raise RuntimeError("abort")

    assert store.get_state("0") is None
    assert any(level == "warn" and "rolled back" in msg for msg, level in logged)


class _CommitFailingConnection:
    """Wraps a connection so that COMMIT fails like a busy database."""

    def __init__(self, conn):
        self._conn = conn

    @property
    def in_transaction(self):
        return self._conn.in_transaction

    def execute(self, sql, *args):
        if sql == "COMMIT":
            raise sqlite3.OperationalError("database is locked")
        return self._conn.execute(sql, *args)


def test_transaction_rolls_back_on_base_exception(tmp_path):
    store = _make_store(tmp_path)

    with pytest.raises(KeyboardInterrupt):
        with store.transaction():
            store.put_state("0", b"partial")
            raise KeyboardInterrupt

    assert store._get_connection().in_transaction is False
    with store.transaction():
        store.put_state("1", b"later")

    other = _make_store(tmp_path)
    assert other.get_state("0") is None
    assert other.get_state("1") == b"later"


def test_transaction_rolls_back_when_commit_fails(tmp_path):
    store = _make_store(tmp_path)
    real_conn = store._get_connection()
    store._local.conn = _CommitFailingConnection(real_conn)

    with pytest.raises(sqlite3.OperationalError):
        with store.transaction():
            store.put_state("0", b"uncommitted")

    store._local.conn = real_conn
    assert real_conn.in_transaction is False
    with store.transaction():
        store.put_state("1", b"later")

    other = _make_store(tmp_path)
    assert other.get_state("0") is None
    assert other.get_state("1") == b"later"


def test_nested_transaction_joins_outer(tmp_path):
    store = _make_store(tmp_path)

    with pytest.raises(RuntimeError):
        with store.transaction():
            with store.transaction():
                store.put_state("0", b"inner")
            store.put_state("1", b"outer")
            raise RuntimeError("abort")

    assert store.get_state("0") is None
    assert store.get_state("1") is None


def test_transaction_commits(tmp_path):
    store = _make_store(tmp_path)
    with store.transaction():
        store.put_state("0", b"a")
        store.put_state("1", b"b")

    # A fresh store on the same file sees committed state
    other = _make_store(tmp_path)
    assert other.get_state("0") == b"a"
    assert other.get_state("1") == b"b"


def test_store_close(tmp_path):
    """BallotStore.close() releases the thread-local connection."""
    store = _make_store(tmp_path)
    conn = store._get_connection()
    assert conn is not None
    store.close()
    assert getattr(store._local, "conn", None) is None
