from typing import Any, Dict, Optional

from loguru import logger
from psycopg import Connection

from claim_engine import aggregate_balances, claim_result, earnings_summary, single_claim_result
from db.db import get_conn
from db.repositories import (
    claim_row_db,
    claim_unclaimed_db,
    get_earning_rows_db,
    get_row_owner_db,
    get_unclaimed_amounts_db,
)
from db.transaction import with_serializable_transaction
from errors import NotOwner
from tokens import parse_token_type
from trade_engine import utcnow


def claim_db(user_id: int, token_type) -> Dict[str, Any]:
    """
    claim every unclaimed commission and cashback row of (user_id, token_type).

    a single transaction; each table is flipped with one conditional UPDATE
    so two concurrent claims can never both return the same row.
    """
    token = parse_token_type(token_type)

    def work(conn: Connection) -> Dict[str, Any]:
        claimed_at = utcnow()
        commissions = claim_unclaimed_db(conn, "commissions", user_id, token.value, claimed_at)
        cashback = claim_unclaimed_db(conn, "cashback", user_id, token.value, claimed_at)
        return claim_result(user_id, token, commissions, cashback, claimed_at)

    result = with_serializable_transaction(work)
    logger.info(
        "Claim executed",
        extra={
            "user_id": user_id,
            "token_type": token.value,
            "claimed_total": str(result["claimed_total"]),
            "rows": len(result["commission_ids"]) + len(result["cashback_ids"]),
        },
    )
    return result


def claim_commission_db(user_id: int, commission_id: str) -> Dict[str, Any]:
    return _claim_one_db("commissions", user_id, commission_id)


def claim_cashback_db(user_id: int, cashback_id: str) -> Dict[str, Any]:
    return _claim_one_db("cashback", user_id, cashback_id)


def _claim_one_db(table: str, user_id: int, row_id: str) -> Dict[str, Any]:
    def work(conn: Connection) -> Dict[str, Any]:
        owner = get_row_owner_db(conn, table, row_id)
        if owner != user_id:
            raise NotOwner(f"{table} row {row_id} does not belong to user {user_id}")

        claimed_at = utcnow()
        amount = claim_row_db(conn, table, row_id, claimed_at)
        return single_claim_result(row_id, amount, claimed_at)

    result = with_serializable_transaction(work)
    if result["claimed"]:
        logger.info(
            "Row claimed",
            extra={"table": table, "user_id": user_id, "id": row_id,
                   "amount": str(result["claimed_amount"])},
        )
    return result


def get_claimable_balance_db(user_id: int) -> Dict[str, Any]:
    """read-only: unclaimed commissions + cashback per token type."""
    with get_conn() as conn:
        commissions = get_unclaimed_amounts_db(conn, "commissions", user_id)
        cashback = get_unclaimed_amounts_db(conn, "cashback", user_id)
    return aggregate_balances(commissions, cashback)


def get_earnings_db(user_id: int, token_type: Optional[str] = None) -> Dict[str, Any]:
    token = parse_token_type(token_type).value if token_type is not None else None
    with get_conn() as conn:
        commissions, cashback = get_earning_rows_db(conn, user_id, token)
    return earnings_summary(commissions, cashback)
