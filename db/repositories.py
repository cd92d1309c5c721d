from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

from psycopg import Connection, sql
from psycopg.errors import UniqueViolation
from psycopg.rows import dict_row

from config import get_settings
from errors import AlreadyProcessed, AlreadyReferred, InvalidInput, NotFound, TransactionFailed
from referral_engine import MAX_REFERRAL_DEPTH, generate_referral_code

USER_COLUMNS = "id, username, referral_code, referrer_id, referral_depth, fee_tier, created_at"

# ---------
# users
# ---------


def create_user_db(
    conn: Connection, username: str, fee_tier: Optional[Decimal] = None
) -> Dict[str, Any]:
    """
    create a new user with a freshly generated referral_code.
    returns the user row.

    enforces:
      - username unique
      - referral_code unique
    """
    username = username.strip()
    if not username:
        raise InvalidInput("username cannot be empty")
    if fee_tier is None:
        fee_tier = get_settings().default_fee_tier

    for _ in range(get_settings().referral_code_attempts):
        try:
            with conn.transaction(), conn.cursor(row_factory=dict_row) as cur:
                cur.execute(
                    f"""
                    INSERT INTO users (username, referral_code, fee_tier)
                    VALUES (%s, %s, %s)
                    RETURNING {USER_COLUMNS}
                    """,
                    (username, generate_referral_code(), fee_tier),
                )
                return cur.fetchone()
        except UniqueViolation as e:
            if e.diag.constraint_name == "users_username_key":
                raise InvalidInput(f"username '{username}' already exists")
            # referral_code collision, try another code

    raise TransactionFailed("could not generate a unique referral code")


def get_user_db(conn: Connection, user_id: int, for_update: bool = False) -> Dict[str, Any]:
    query = f"SELECT {USER_COLUMNS} FROM users WHERE id = %s"
    if for_update:
        query += " FOR UPDATE"
    with conn.cursor(row_factory=dict_row) as cur:
        cur.execute(query, (user_id,))
        row = cur.fetchone()
    if row is None:
        raise NotFound(f"User {user_id} not found")
    return row


def get_user_by_referral_code(conn: Connection, referral_code: str) -> Dict[str, Any]:
    """
    return the user owning referral_code.
    """
    with conn.cursor(row_factory=dict_row) as cur:
        cur.execute(
            f"SELECT {USER_COLUMNS} FROM users WHERE referral_code = %s",
            (referral_code,),
        )
        row = cur.fetchone()
    if row is None:
        raise NotFound(f"No user found with referral_code={referral_code}")
    return row


def set_user_referrer_db(conn: Connection, child_id: int, parent_id: int, depth: int) -> None:
    """
    set referrer_id/referral_depth for child. conditional on the child having
    no referrer yet, so a concurrent registration loses with AlreadyReferred.
    """
    with conn.cursor() as cur:
        cur.execute(
            """
            UPDATE users
            SET referrer_id = %s, referral_depth = %s, updated_at = NOW()
            WHERE id = %s AND referrer_id IS NULL
            """,
            (parent_id, depth, child_id),
        )
        if cur.rowcount != 1:
            raise AlreadyReferred(f"User {child_id} already has a referrer.")


def shift_downline_depth_db(conn: Connection, user_id: int, delta: int) -> int:
    """add delta to the stored depth of every descendant of user_id."""
    if delta == 0:
        return 0
    with conn.cursor() as cur:
        cur.execute(
            """
            WITH RECURSIVE downline(id, path) AS (
                SELECT id, ARRAY[%(root)s::BIGINT, id] FROM users WHERE referrer_id = %(root)s
                UNION ALL
                SELECT u.id, d.path || u.id
                FROM users u
                JOIN downline d ON u.referrer_id = d.id
                WHERE NOT u.id = ANY(d.path)
            )
            UPDATE users
            SET referral_depth = referral_depth + %(delta)s, updated_at = NOW()
            WHERE id IN (SELECT id FROM downline)
            """,
            {"root": user_id, "delta": delta},
        )
        return cur.rowcount


def get_or_generate_referral_code_db(conn: Connection, user_id: int) -> Tuple[str, bool]:
    """
    return (code, already_existed).
    if the user has no code yet, assign one with a conditional update guarded
    by the unique constraint; collisions retry inside a savepoint.
    """
    user = get_user_db(conn, user_id)
    if user["referral_code"]:
        return user["referral_code"], True

    for _ in range(get_settings().referral_code_attempts):
        candidate = generate_referral_code()
        try:
            with conn.transaction(), conn.cursor() as cur:
                cur.execute(
                    """
                    UPDATE users SET referral_code = %s, updated_at = NOW()
                    WHERE id = %s AND referral_code IS NULL
                    """,
                    (candidate, user_id),
                )
                updated = cur.rowcount
        except UniqueViolation:
            continue

        if updated == 1:
            return candidate, False
        # someone else assigned a code meanwhile
        return get_user_db(conn, user_id)["referral_code"], True

    raise TransactionFailed("Failed to generate unique referral code after multiple attempts")


# ---------
# referral graph
# ---------


def get_upline_chain_db(
    conn: Connection, user_id: int, max_levels: int = MAX_REFERRAL_DEPTH
) -> List[Tuple[int, int]]:
    """
    DB-backed upline lookup: follow referrer_id up to max_levels.
    returns [(user_id, level), ...] nearest first.
    """
    with conn.cursor() as cur:
        cur.execute(
            """
            WITH RECURSIVE upline(id, referrer_id, level, path) AS (
                SELECT id, referrer_id, 0, ARRAY[id]
                FROM users
                WHERE id = %s

                UNION ALL

                SELECT u.id, u.referrer_id, up.level + 1, up.path || u.id
                FROM users u
                JOIN upline up ON u.id = up.referrer_id
                WHERE up.level < %s AND NOT u.id = ANY(up.path)
            )
            SELECT id, level FROM upline ORDER BY level
            """,
            (user_id, max_levels),
        )
        rows = cur.fetchall()

    if not rows:
        raise NotFound(f"User {user_id} not found")
    return [(r[0], r[1]) for r in rows if r[1] > 0]


def get_downline_db(conn: Connection, user_id: int) -> List[Tuple[int, int]]:
    """
    every descendant of user_id as (user_id, level), level 1 = direct referrals.
    """
    with conn.cursor() as cur:
        cur.execute(
            """
            WITH RECURSIVE downline(id, level, path) AS (
                SELECT id, 1, ARRAY[%(root)s::BIGINT, id]
                FROM users
                WHERE referrer_id = %(root)s

                UNION ALL

                SELECT u.id, d.level + 1, d.path || u.id
                FROM users u
                JOIN downline d ON u.referrer_id = d.id
                WHERE NOT u.id = ANY(d.path)
            )
            SELECT id, level FROM downline ORDER BY level, id
            """,
            {"root": user_id},
        )
        return [(r[0], r[1]) for r in cur.fetchall()]


# ---------
# trades & ledger rows
# ---------


def insert_trade_db(conn: Connection, trade: Dict[str, Any]) -> None:
    with conn.cursor() as cur:
        cur.execute(
            """
            INSERT INTO trades
                (id, user_id, volume, fee_amount, fee_tier, token_type,
                 processed_for_commissions, created_at)
            VALUES (%s, %s, %s, %s, %s, %s, FALSE, %s)
            """,
            (
                trade["id"],
                trade["user_id"],
                trade["volume"],
                trade["fee_amount"],
                trade["fee_tier"],
                trade["token_type"],
                trade["created_at"],
            ),
        )


def get_trade_db(conn: Connection, trade_id: str, for_update: bool = False) -> Dict[str, Any]:
    query = """
        SELECT id, user_id, volume, fee_amount, fee_tier, token_type,
               processed_for_commissions, created_at
        FROM trades WHERE id = %s
    """
    if for_update:
        query += " FOR UPDATE"
    with conn.cursor(row_factory=dict_row) as cur:
        cur.execute(query, (trade_id,))
        row = cur.fetchone()
    if row is None:
        raise NotFound(f"Trade {trade_id} not found")
    return row


def insert_ledger_rows_db(conn: Connection, rows: Dict[str, Any]) -> None:
    """insert the commission, cashback and treasury rows built for one trade."""
    with conn.cursor() as cur:
        if rows["commissions"]:
            cur.executemany(
                """
                INSERT INTO commissions
                    (id, user_id, trade_id, amount, level, token_type, claimed, created_at)
                VALUES (%(id)s, %(user_id)s, %(trade_id)s, %(amount)s, %(level)s,
                        %(token_type)s, FALSE, %(created_at)s)
                """,
                rows["commissions"],
            )
        cur.execute(
            """
            INSERT INTO cashback
                (id, user_id, trade_id, amount, token_type, claimed, created_at)
            VALUES (%(id)s, %(user_id)s, %(trade_id)s, %(amount)s, %(token_type)s,
                    FALSE, %(created_at)s)
            """,
            rows["cashback"],
        )
        cur.execute(
            """
            INSERT INTO treasury_allocation
                (id, trade_id, amount, absorbed_levels, token_type, created_at)
            VALUES (%(id)s, %(trade_id)s, %(amount)s, %(absorbed_levels)s,
                    %(token_type)s, %(created_at)s)
            """,
            rows["treasury"],
        )


def mark_trade_processed_db(conn: Connection, trade_id: str) -> None:
    with conn.cursor() as cur:
        cur.execute(
            """
            UPDATE trades SET processed_for_commissions = TRUE
            WHERE id = %s AND processed_for_commissions = FALSE
            """,
            (trade_id,),
        )
        if cur.rowcount != 1:
            raise AlreadyProcessed(f"Trade {trade_id} already processed")


def insert_processed_marker_db(conn: Connection, trade_id: str, processed_at: datetime) -> None:
    """idempotency marker. primary key collision means the trade was already processed."""
    try:
        with conn.cursor() as cur:
            cur.execute(
                "INSERT INTO processed_trades (trade_id, processed_at) VALUES (%s, %s)",
                (trade_id, processed_at),
            )
    except UniqueViolation:
        raise AlreadyProcessed(f"Trade {trade_id} already processed")


def is_trade_processed_db(conn: Connection, trade_id: str) -> bool:
    with conn.cursor() as cur:
        cur.execute("SELECT 1 FROM processed_trades WHERE trade_id = %s", (trade_id,))
        return cur.fetchone() is not None


# ---------
# claims
# ---------

CLAIMABLE_TABLES = ("commissions", "cashback")


def claim_unclaimed_db(
    conn: Connection, table: str, user_id: int, token_type: str, claimed_at: datetime
) -> List[Dict[str, Any]]:
    """
    flip every unclaimed row of (user_id, token_type) in table to claimed.
    the claimed = FALSE condition makes this a compare-and-set: a row can
    only be returned by one claim.
    """
    if table not in CLAIMABLE_TABLES:
        raise ValueError(f"not a claimable table: {table}")
    with conn.cursor(row_factory=dict_row) as cur:
        cur.execute(
            sql.SQL(
                """
                UPDATE {table}
                SET claimed = TRUE, claimed_at = %s
                WHERE user_id = %s AND token_type = %s AND claimed = FALSE
                RETURNING id, amount
                """
            ).format(table=sql.Identifier(table)),
            (claimed_at, user_id, token_type),
        )
        return cur.fetchall()


def claim_row_db(
    conn: Connection, table: str, row_id: str, claimed_at: datetime
) -> Optional[Decimal]:
    """
    claim a single row. returns its amount, or None if it was already claimed.
    """
    if table not in CLAIMABLE_TABLES:
        raise ValueError(f"not a claimable table: {table}")
    with conn.cursor() as cur:
        cur.execute(
            sql.SQL(
                """
                UPDATE {table}
                SET claimed = TRUE, claimed_at = %s
                WHERE id = %s AND claimed = FALSE
                RETURNING amount
                """
            ).format(table=sql.Identifier(table)),
            (claimed_at, row_id),
        )
        row = cur.fetchone()
    return row[0] if row else None


def get_row_owner_db(conn: Connection, table: str, row_id: str) -> int:
    if table not in CLAIMABLE_TABLES:
        raise ValueError(f"not a claimable table: {table}")
    with conn.cursor() as cur:
        cur.execute(
            sql.SQL("SELECT user_id FROM {table} WHERE id = %s").format(
                table=sql.Identifier(table)
            ),
            (row_id,),
        )
        row = cur.fetchone()
    if row is None:
        raise NotFound(f"{table} row {row_id} not found")
    return row[0]


def get_unclaimed_amounts_db(conn: Connection, table: str, user_id: int) -> List[Tuple[str, Decimal]]:
    """(token_type, amount) of every unclaimed row of user_id in table."""
    if table not in CLAIMABLE_TABLES:
        raise ValueError(f"not a claimable table: {table}")
    with conn.cursor() as cur:
        cur.execute(
            sql.SQL(
                "SELECT token_type, amount FROM {table} WHERE user_id = %s AND claimed = FALSE"
            ).format(table=sql.Identifier(table)),
            (user_id,),
        )
        return [(r[0], r[1]) for r in cur.fetchall()]


def get_earning_rows_db(
    conn: Connection, user_id: int, token_type: Optional[str] = None
) -> Tuple[List[Dict[str, Any]], List[Dict[str, Any]]]:
    """all commission and cashback rows of a user, optionally for one token."""
    clauses = ["user_id = %s"]
    params: List[Any] = [user_id]
    if token_type is not None:
        clauses.append("token_type = %s")
        params.append(token_type)
    where = " AND ".join(clauses)

    with conn.cursor(row_factory=dict_row) as cur:
        cur.execute(
            f"SELECT id, amount, level, token_type, claimed FROM commissions WHERE {where}",
            tuple(params),
        )
        commissions = cur.fetchall()
        cur.execute(
            f"SELECT id, amount, token_type, claimed FROM cashback WHERE {where}",
            tuple(params),
        )
        cashback = cur.fetchall()
    return commissions, cashback
