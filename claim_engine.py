from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional

from loguru import logger

from errors import NotFound, NotOwner
from money import ZERO, dsum, to_decimal_string
from tokens import TokenType, parse_token_type
from trade_engine import LedgerState, utcnow


# ---------
# helpers shared with the DB backend
# ---------


def claim_result(
    user_id,
    token_type: TokenType,
    commission_rows: List[Dict[str, Any]],
    cashback_rows: List[Dict[str, Any]],
    claimed_at: Optional[datetime],
) -> Dict[str, Any]:
    """totals for a claim given the rows it actually flipped."""
    commission_total = dsum(r["amount"] for r in commission_rows)
    cashback_total = dsum(r["amount"] for r in cashback_rows)
    return {
        "user_id": user_id,
        "token_type": token_type.value,
        "claimed_commission_total": commission_total,
        "claimed_cashback_total": cashback_total,
        "claimed_total": dsum([commission_total, cashback_total]),
        "commission_ids": [r["id"] for r in commission_rows],
        "cashback_ids": [r["id"] for r in cashback_rows],
        "claimed_at": claimed_at if (commission_rows or cashback_rows) else None,
    }


def single_claim_result(row_id: str, amount: Optional[Decimal], claimed_at) -> Dict[str, Any]:
    """amount is None when the row was already claimed before this call."""
    return {
        "id": row_id,
        "claimed": amount is not None,
        "claimed_amount": amount if amount is not None else ZERO,
        "claimed_at": claimed_at if amount is not None else None,
    }


def empty_balance() -> Dict[str, Decimal]:
    return {"commissions": ZERO, "cashback": ZERO, "total": ZERO}


def aggregate_balances(
    commission_amounts: Iterable, cashback_amounts: Iterable
) -> Dict[str, Dict[str, Decimal]]:
    """
    build {token_type: {commissions, cashback, total}} from
    (token_type, amount) pairs. every known token type is present.
    """
    balances = {t.value: empty_balance() for t in TokenType}
    for token, amount in commission_amounts:
        b = balances.setdefault(token, empty_balance())
        b["commissions"] = dsum([b["commissions"], amount])
    for token, amount in cashback_amounts:
        b = balances.setdefault(token, empty_balance())
        b["cashback"] = dsum([b["cashback"], amount])
    for b in balances.values():
        b["total"] = dsum([b["commissions"], b["cashback"]])
    return balances


def earnings_summary(
    commission_rows: Iterable[Dict[str, Any]], cashback_rows: Iterable[Dict[str, Any]]
) -> Dict[str, Any]:
    """total / claimed / unclaimed for commissions (also per level) and cashback."""

    def split(rows):
        rows = list(rows)
        claimed = dsum(r["amount"] for r in rows if r["claimed"])
        unclaimed = dsum(r["amount"] for r in rows if not r["claimed"])
        return rows, {
            "total": dsum([claimed, unclaimed]),
            "claimed": claimed,
            "unclaimed": unclaimed,
        }

    rows, commissions = split(commission_rows)
    commissions["by_level"] = {
        level: dsum(r["amount"] for r in rows if r["level"] == level) for level in (1, 2, 3)
    }
    _, cashback = split(cashback_rows)
    return {"commissions": commissions, "cashback": cashback}


def serialize_amounts(data):
    """recursively render Decimal / datetime values for JSON"""
    if isinstance(data, Decimal):
        return to_decimal_string(data)
    if isinstance(data, datetime):
        return data.isoformat()
    if isinstance(data, dict):
        return {k: serialize_amounts(v) for k, v in data.items()}
    if isinstance(data, list):
        return [serialize_amounts(v) for v in data]
    return data


# ---------
# in-memory claims
# ---------


def claim(state: LedgerState, user_id, token_type) -> Dict[str, Any]:
    """
    flip every unclaimed commission and cashback row of (user_id, token_type)
    to claimed. nothing to claim is not an error: totals are zero.
    """
    token = parse_token_type(token_type)
    with state.lock:
        claimed_at = utcnow()
        commission_rows = _claim_matching(state.commissions, user_id, token, claimed_at)
        cashback_rows = _claim_matching(state.cashback, user_id, token, claimed_at)

    result = claim_result(user_id, token, commission_rows, cashback_rows, claimed_at)
    logger.info(
        "Claim executed",
        extra={
            "user_id": user_id,
            "token_type": token.value,
            "claimed_total": str(result["claimed_total"]),
            "rows": len(commission_rows) + len(cashback_rows),
        },
    )
    return result


def claim_commission(state: LedgerState, user_id, commission_id: str) -> Dict[str, Any]:
    return _claim_one(state.commissions, state, user_id, commission_id, "Commission")


def claim_cashback(state: LedgerState, user_id, cashback_id: str) -> Dict[str, Any]:
    return _claim_one(state.cashback, state, user_id, cashback_id, "Cashback")


def get_claimable_balance(state: LedgerState, user_id) -> Dict[str, Dict[str, Decimal]]:
    with state.lock:
        commissions = [
            (r["token_type"], r["amount"])
            for r in state.commissions.values()
            if r["user_id"] == user_id and not r["claimed"]
        ]
        cashback = [
            (r["token_type"], r["amount"])
            for r in state.cashback.values()
            if r["user_id"] == user_id and not r["claimed"]
        ]
    return aggregate_balances(commissions, cashback)


def get_earnings(state: LedgerState, user_id, token_type=None) -> Dict[str, Any]:
    token = parse_token_type(token_type).value if token_type is not None else None

    def mine(row):
        return row["user_id"] == user_id and (token is None or row["token_type"] == token)

    with state.lock:
        commissions = [dict(r) for r in state.commissions.values() if mine(r)]
        cashback = [dict(r) for r in state.cashback.values() if mine(r)]
    return earnings_summary(commissions, cashback)


def _claim_matching(table, user_id, token: TokenType, claimed_at) -> List[Dict[str, Any]]:
    claimed = []
    for row in table.values():
        if row["user_id"] == user_id and row["token_type"] == token.value and not row["claimed"]:
            row["claimed"] = True
            row["claimed_at"] = claimed_at
            claimed.append(dict(row))
    return claimed


def _claim_one(table, state: LedgerState, user_id, row_id: str, label: str) -> Dict[str, Any]:
    with state.lock:
        row = table.get(row_id)
        if row is None:
            raise NotFound(f"{label} {row_id} not found")
        if row["user_id"] != user_id:
            raise NotOwner(f"{label} {row_id} does not belong to user {user_id}")
        if row["claimed"]:
            return single_claim_result(row_id, None, None)

        claimed_at = utcnow()
        row["claimed"] = True
        row["claimed_at"] = claimed_at
        amount = row["amount"]

    logger.info(
        f"{label} claimed",
        extra={"user_id": user_id, "id": row_id, "amount": str(amount)},
    )
    return single_claim_result(row_id, amount, claimed_at)
