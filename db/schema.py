from loguru import logger
from psycopg import Connection

from db.db import get_conn

# money columns are NUMERIC(28, 18): exact, never floating point
SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS users (
    id             BIGSERIAL PRIMARY KEY,
    username       TEXT NOT NULL UNIQUE,
    referral_code  TEXT UNIQUE,
    referrer_id    BIGINT REFERENCES users(id) ON DELETE SET NULL,
    referral_depth INTEGER NOT NULL DEFAULT 0 CHECK (referral_depth BETWEEN 0 AND 3),
    fee_tier       NUMERIC(5, 4) NOT NULL DEFAULT 0.0100 CHECK (fee_tier BETWEEN 0 AND 1),
    created_at     TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at     TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    CHECK (referrer_id IS NULL OR referrer_id <> id)
);
CREATE INDEX IF NOT EXISTS users_referrer_id_idx ON users (referrer_id);

CREATE TABLE IF NOT EXISTS trades (
    id                        TEXT PRIMARY KEY,
    user_id                   BIGINT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
    volume                    NUMERIC(28, 18) NOT NULL,
    fee_amount                NUMERIC(28, 18) NOT NULL,
    fee_tier                  NUMERIC(5, 4) NOT NULL,
    token_type                TEXT NOT NULL CHECK (token_type IN ('USDC-ARBITRUM', 'USDC-SOLANA')),
    processed_for_commissions BOOLEAN NOT NULL DEFAULT FALSE,
    created_at                TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
CREATE INDEX IF NOT EXISTS trades_user_id_created_at_idx ON trades (user_id, created_at);
CREATE INDEX IF NOT EXISTS trades_processed_idx ON trades (processed_for_commissions);

CREATE TABLE IF NOT EXISTS commissions (
    id         TEXT PRIMARY KEY,
    user_id    BIGINT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
    trade_id   TEXT NOT NULL REFERENCES trades(id) ON DELETE CASCADE,
    amount     NUMERIC(28, 18) NOT NULL,
    level      INTEGER NOT NULL CHECK (level BETWEEN 1 AND 3),
    token_type TEXT NOT NULL,
    claimed    BOOLEAN NOT NULL DEFAULT FALSE,
    claimed_at TIMESTAMPTZ,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    UNIQUE (trade_id, level)
);
CREATE INDEX IF NOT EXISTS commissions_user_token_claimed_idx
    ON commissions (user_id, token_type, claimed);

CREATE TABLE IF NOT EXISTS cashback (
    id         TEXT PRIMARY KEY,
    user_id    BIGINT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
    trade_id   TEXT NOT NULL UNIQUE REFERENCES trades(id) ON DELETE CASCADE,
    amount     NUMERIC(28, 18) NOT NULL,
    token_type TEXT NOT NULL,
    claimed    BOOLEAN NOT NULL DEFAULT FALSE,
    claimed_at TIMESTAMPTZ,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
CREATE INDEX IF NOT EXISTS cashback_user_token_claimed_idx
    ON cashback (user_id, token_type, claimed);

CREATE TABLE IF NOT EXISTS treasury_allocation (
    id              TEXT PRIMARY KEY,
    trade_id        TEXT NOT NULL UNIQUE REFERENCES trades(id) ON DELETE CASCADE,
    amount          NUMERIC(28, 18) NOT NULL,
    absorbed_levels INTEGER[] NOT NULL DEFAULT '{}',
    token_type      TEXT NOT NULL,
    created_at      TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
CREATE INDEX IF NOT EXISTS treasury_allocation_token_type_idx
    ON treasury_allocation (token_type);

CREATE TABLE IF NOT EXISTS processed_trades (
    trade_id     TEXT PRIMARY KEY REFERENCES trades(id) ON DELETE CASCADE,
    processed_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
"""

LEDGER_TABLES = (
    "processed_trades",
    "treasury_allocation",
    "cashback",
    "commissions",
    "trades",
    "users",
)


def create_schema(conn: Connection) -> None:
    """
    idempotent DDL for every ledger table.

    the API never applies it on its own: run `python -m db.schema` from the
    project root once per database (REFERRAL_DATABASE_URL picks the target).
    the test suite calls it through the `pg` fixture.
    """
    with conn.cursor() as cur:
        cur.execute(SCHEMA_SQL)
    conn.commit()


if __name__ == "__main__":
    with get_conn() as conn:
        create_schema(conn)
    logger.info("Schema applied", extra={"tables": list(LEDGER_TABLES)})
