import os

import pytest

from config import get_settings

TEST_DATABASE_URL = os.environ.get("REFERRAL_TEST_DATABASE_URL")


@pytest.fixture
def pg(monkeypatch):
    """
    point the app at the test database, (re)create the schema and empty it.
    skipped unless REFERRAL_TEST_DATABASE_URL is set.
    """
    if not TEST_DATABASE_URL:
        pytest.skip("REFERRAL_TEST_DATABASE_URL not set")

    from db.db import get_conn
    from db.schema import LEDGER_TABLES, create_schema

    monkeypatch.setenv("REFERRAL_DATABASE_URL", TEST_DATABASE_URL)
    get_settings.cache_clear()

    with get_conn() as conn:
        create_schema(conn)
        with conn.cursor() as cur:
            cur.execute(f"TRUNCATE {', '.join(LEDGER_TABLES)} RESTART IDENTITY CASCADE")
        conn.commit()

    yield get_conn

    get_settings.cache_clear()


@pytest.fixture
def users(pg):
    """create users A, B, C, D (1% fee tier). returns {name: (id, referral_code)}."""
    from db.repositories import create_user_db

    created = {}
    with pg() as conn:
        for name in "ABCD":
            row = create_user_db(conn, name)
            created[name] = (row["id"], row["referral_code"])
        conn.commit()
    return created


@pytest.fixture
def chain(users):
    """wire A -> B -> C -> D through registration. returns {name: id}."""
    from referral_db import register_referral_db

    register_referral_db(users["B"][0], users["A"][1])
    register_referral_db(users["C"][0], users["B"][1])
    register_referral_db(users["D"][0], users["C"][1])
    return {name: user_id for name, (user_id, _) in users.items()}
