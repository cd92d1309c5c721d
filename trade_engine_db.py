from decimal import Decimal
from typing import Any, Dict, Optional

from loguru import logger
from psycopg import Connection

from db.repositories import (
    get_trade_db,
    get_upline_chain_db,
    get_user_db,
    insert_ledger_rows_db,
    insert_processed_marker_db,
    insert_trade_db,
    is_trade_processed_db,
    mark_trade_processed_db,
)
from db.transaction import with_serializable_transaction
from errors import AlreadyProcessed
from fee_engine import fee_engine
from referral_engine import MAX_REFERRAL_DEPTH
from trade_engine import build_ledger_rows, new_trade, trade_result, utcnow


def record_trade_db(
    user_id: int,
    volume,
    token_type,
    fee_tier: Optional[Decimal] = None,
) -> Dict[str, Any]:
    """
    DB-backed trade recording.

    one SERIALIZABLE transaction:
      1) look up the trader's fee tier (unless fee_tier overrides it)
      2) fee = volume x fee tier
      3) insert the trade (pending)
      4) resolve upline + split the fee
      5) insert commissions, cashback, treasury allocation
      6) flag the trade processed
      7) insert the processed_trades marker
    retried wholesale on serialization conflicts.
    """

    def work(conn: Connection) -> Dict[str, Any]:
        user = get_user_db(conn, user_id)
        tier = user["fee_tier"] if fee_tier is None else fee_tier

        now = utcnow()
        trade = new_trade(user_id, volume, tier, token_type, now)
        insert_trade_db(conn, trade)

        breakdown = _distribute_in_tx(conn, trade, now)
        return trade_result(trade, breakdown)

    result = with_serializable_transaction(work)
    _log_processed(result, user_id)
    return result


def process_trade_db(trade_id: str) -> Dict[str, Any]:
    """
    distribute an already recorded, still pending trade.
    a processed trade is rejected with AlreadyProcessed and nothing is written.
    """

    def work(conn: Connection) -> Dict[str, Any]:
        trade = get_trade_db(conn, trade_id, for_update=True)
        if trade["processed_for_commissions"] or is_trade_processed_db(conn, trade_id):
            raise AlreadyProcessed(f"Trade {trade_id} already processed")

        breakdown = _distribute_in_tx(conn, trade, utcnow())
        return trade_result(trade, breakdown)

    result = with_serializable_transaction(work)
    _log_processed(result, None)
    return result


def _distribute_in_tx(conn: Connection, trade: Dict[str, Any], now) -> Dict[str, Any]:
    upline = get_upline_chain_db(conn, trade["user_id"], MAX_REFERRAL_DEPTH)
    breakdown = fee_engine(trade["fee_amount"], trade["user_id"], upline)

    insert_ledger_rows_db(conn, build_ledger_rows(trade, breakdown, now))
    mark_trade_processed_db(conn, trade["id"])
    insert_processed_marker_db(conn, trade["id"], now)
    return breakdown


def _log_processed(result: Dict[str, Any], user_id) -> None:
    logger.info(
        "Trade processed",
        extra={
            "trade_id": result["trade_id"],
            "user_id": user_id,
            "fee_amount": str(result["fee_amount"]),
            "levels_paid": len(result["breakdown"]["commissions"]),
        },
    )
