from contextlib import contextmanager

import pytest
from psycopg import IsolationLevel
from psycopg.errors import SerializationFailure, UniqueViolation

import db.transaction as transaction
from db.transaction import with_serializable_transaction
from errors import AlreadyProcessed, ReferralError, SerializationConflict, TransactionFailed


class FakeConn:
    def __init__(self):
        self.isolation_level = None
        self.commits = 0
        self.rollbacks = 0

    def commit(self):
        self.commits += 1

    def rollback(self):
        self.rollbacks += 1


class FakeStore:
    """hands out a fresh FakeConn per attempt and keeps them for inspection."""

    def __init__(self):
        self.conns = []

    @contextmanager
    def connect(self):
        conn = FakeConn()
        self.conns.append(conn)
        yield conn


@pytest.fixture
def sleeps(monkeypatch):
    recorded = []
    monkeypatch.setattr(transaction.time, "sleep", recorded.append)
    return recorded


def test_commits_once_on_success(sleeps):
    store = FakeStore()

    result = with_serializable_transaction(lambda conn: "ok", connect=store.connect)

    assert result == "ok"
    assert len(store.conns) == 1
    conn = store.conns[0]
    assert conn.isolation_level == IsolationLevel.SERIALIZABLE
    assert (conn.commits, conn.rollbacks) == (1, 0)
    assert sleeps == []


def test_serialization_failures_retry_with_backoff(sleeps):
    store = FakeStore()
    attempts = []

    def work(conn):
        attempts.append(conn)
        if len(attempts) < 3:
            raise SerializationFailure("could not serialize access")
        return "done"

    result = with_serializable_transaction(
        work, max_retries=3, base_delay=0.01, connect=store.connect
    )

    assert result == "done"
    assert len(attempts) == 3
    assert sleeps == [0.01, 0.02]
    assert [c.rollbacks for c in store.conns] == [1, 1, 0]
    assert store.conns[-1].commits == 1


def test_exhausted_retries_raise_transaction_failed(sleeps):
    store = FakeStore()

    def work(conn):
        raise SerializationConflict("conflict")

    with pytest.raises(TransactionFailed):
        with_serializable_transaction(work, max_retries=3, base_delay=0.01, connect=store.connect)

    assert len(store.conns) == 3
    assert sleeps == [0.01, 0.02]


def test_business_errors_are_not_retried(sleeps):
    store = FakeStore()

    def work(conn):
        raise AlreadyProcessed("dup")

    with pytest.raises(AlreadyProcessed):
        with_serializable_transaction(work, connect=store.connect)

    assert len(store.conns) == 1
    assert store.conns[0].rollbacks == 1
    assert sleeps == []


def test_other_database_errors_are_fatal(sleeps):
    store = FakeStore()

    def work(conn):
        raise UniqueViolation("duplicate key")

    with pytest.raises(TransactionFailed):
        with_serializable_transaction(work, connect=store.connect)

    assert len(store.conns) == 1
    assert sleeps == []


def test_serialization_conflict_is_not_a_business_error():
    assert not issubclass(SerializationConflict, ReferralError)
    assert not issubclass(SerializationConflict, ValueError)
