import threading
import uuid
from datetime import datetime, timezone
from decimal import ROUND_DOWN, Decimal
from typing import Any, Dict, Optional

from loguru import logger

from config import get_settings
from errors import AlreadyProcessed, InvalidInput, NotFound
from fee_engine import fee_engine
from money import multiply, to_decimal, to_decimal_string
from referral_engine import (
    MAX_REFERRAL_DEPTH,
    get_referral_depth,
    get_upline_chain,
    normalize_referral_code,
    register_referral,
)
from tokens import parse_token_type


class LedgerState:
    """
    in-memory 'tables' for the ledger.

    one re-entrant lock plays the role of the store's serializable
    transactions: every public operation below holds it from its first read
    to its last write, and writes are only applied once nothing can fail.
    """

    def __init__(self):
        self.users: Dict[Any, Dict[str, Any]] = {}
        self.ref: Dict[Any, Any] = {}  # child_id -> referrer_id
        self.trades: Dict[str, Dict[str, Any]] = {}
        self.commissions: Dict[str, Dict[str, Any]] = {}
        self.cashback: Dict[str, Dict[str, Any]] = {}
        self.treasury: Dict[str, Dict[str, Any]] = {}
        self.processed_trades: Dict[str, datetime] = {}
        self.lock = threading.RLock()


FEE_TIER_QUANTUM = Decimal("0.0001")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------
# helpers shared with the DB backend
# ---------


def parse_fee_tier(value) -> Decimal:
    """fee tiers are stored as NUMERIC(5, 4); anything finer is refused, never rounded."""
    tier = to_decimal(value)
    if tier < 0 or tier > 1:
        raise InvalidInput(f"fee tier must be between 0 and 1, got {tier}")
    if tier != tier.quantize(FEE_TIER_QUANTUM, rounding=ROUND_DOWN):
        raise InvalidInput(f"fee tier has more than 4 decimal places: {value}")
    return tier


def new_trade(user_id, volume, fee_tier, token_type, now: datetime) -> Dict[str, Any]:
    """
    validate the raw trade inputs and build a pending trade row.
    fee_amount = volume x fee_tier (exact, truncated to 18 dp).
    """
    volume = to_decimal(volume)
    if volume < 0:
        raise InvalidInput(f"volume cannot be negative ({volume})")
    tier = parse_fee_tier(fee_tier)
    token = parse_token_type(token_type)

    return {
        "id": str(uuid.uuid4()),
        "user_id": user_id,
        "volume": volume,
        "fee_amount": multiply(volume, tier),
        "fee_tier": tier,
        "token_type": token.value,
        "processed_for_commissions": False,
        "created_at": now,
    }


def build_ledger_rows(
    trade: Dict[str, Any], breakdown: Dict[str, Any], now: datetime
) -> Dict[str, Any]:
    """turn a fee breakdown into the commission/cashback/treasury rows for a trade."""
    commissions = [
        {
            "id": str(uuid.uuid4()),
            "user_id": c["beneficiary"],
            "trade_id": trade["id"],
            "amount": c["amount"],
            "level": c["level"],
            "token_type": trade["token_type"],
            "claimed": False,
            "claimed_at": None,
            "created_at": now,
        }
        for c in breakdown["commissions"]
    ]
    cashback = {
        "id": str(uuid.uuid4()),
        "user_id": trade["user_id"],
        "trade_id": trade["id"],
        "amount": breakdown["cashback"]["amount"],
        "token_type": trade["token_type"],
        "claimed": False,
        "claimed_at": None,
        "created_at": now,
    }
    treasury = {
        "id": str(uuid.uuid4()),
        "trade_id": trade["id"],
        "amount": breakdown["treasury"]["amount"],
        "absorbed_levels": list(breakdown["treasury"]["absorbed_levels"]),
        "token_type": trade["token_type"],
        "created_at": now,
    }
    return {"commissions": commissions, "cashback": cashback, "treasury": treasury}


def trade_result(trade: Dict[str, Any], breakdown: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "trade_id": trade["id"],
        "fee_amount": trade["fee_amount"],
        "breakdown": breakdown,
    }


def serialize_trade_result(result: Dict[str, Any]) -> Dict[str, Any]:
    """decimals must serialize as strings"""
    breakdown = result["breakdown"]
    return {
        "trade_id": result["trade_id"],
        "fee_amount": to_decimal_string(result["fee_amount"]),
        "breakdown": {
            "commissions": [
                {
                    "beneficiary": c["beneficiary"],
                    "level": c["level"],
                    "amount": to_decimal_string(c["amount"]),
                }
                for c in breakdown["commissions"]
            ],
            "cashback": to_decimal_string(breakdown["cashback"]["amount"]),
            "treasury": to_decimal_string(breakdown["treasury"]["amount"]),
            "absorbed_levels": breakdown["treasury"]["absorbed_levels"],
        },
    }


# ---------
# in-memory users & referrals
# ---------


def add_user(
    state: LedgerState, user_id, fee_tier=None, referral_code: Optional[str] = None
) -> Dict[str, Any]:
    with state.lock:
        if user_id in state.users:
            raise InvalidInput(f"user {user_id} already exists")

        code = normalize_referral_code(referral_code) if referral_code else None
        if code is not None and any(u["referral_code"] == code for u in state.users.values()):
            raise InvalidInput(f"referral code {code} already taken")

        tier = get_settings().default_fee_tier if fee_tier is None else fee_tier
        user = {
            "id": user_id,
            "referral_code": code,
            "fee_tier": parse_fee_tier(tier),
            "created_at": utcnow(),
        }
        state.users[user_id] = user
        return user


def get_user(state: LedgerState, user_id) -> Dict[str, Any]:
    with state.lock:
        user = state.users.get(user_id)
        if user is None:
            raise NotFound(f"User {user_id} not found")
        return {
            **user,
            "referrer_id": state.ref.get(user_id),
            "referral_depth": get_referral_depth(user_id, state.ref),
        }


def register(state: LedgerState, child_id, referral_code: str) -> Dict[str, Any]:
    """attach child_id under the owner of referral_code."""
    code = normalize_referral_code(referral_code)
    with state.lock:
        if child_id not in state.users:
            raise NotFound(f"User {child_id} not found")
        parent_id = next(
            (uid for uid, u in state.users.items() if u["referral_code"] == code),
            None,
        )
        if parent_id is None:
            raise NotFound(f"No user found with referral_code={code}")

        depth = register_referral(child_id, parent_id, state.ref)

    logger.info(
        "Referral linked",
        extra={"child_id": child_id, "parent_id": parent_id, "referral_depth": depth},
    )
    return {
        "status": "linked",
        "child_id": child_id,
        "parent_id": parent_id,
        "referral_depth": depth,
    }


# ---------
# trade processing
# ---------


def record_trade(
    state: LedgerState, user_id, volume, token_type, fee_tier=None
) -> Dict[str, Any]:
    """
    create a trade for user_id and distribute its fee in one step.
    fee_tier overrides the user's own tier (simulation / tests).
    """
    with state.lock:
        if user_id not in state.users:
            raise NotFound(f"User {user_id} not found")
        tier = state.users[user_id]["fee_tier"] if fee_tier is None else fee_tier

        now = utcnow()
        trade = new_trade(user_id, volume, tier, token_type, now)
        breakdown = _distribute_in_lock(state, trade, now)

    return trade_result(trade, breakdown)


def add_pending_trade(
    state: LedgerState, user_id, volume, token_type, fee_tier=None
) -> Dict[str, Any]:
    """insert a trade without distributing it (processed later by process_trade)."""
    with state.lock:
        if user_id not in state.users:
            raise NotFound(f"User {user_id} not found")
        tier = state.users[user_id]["fee_tier"] if fee_tier is None else fee_tier
        trade = new_trade(user_id, volume, tier, token_type, utcnow())
        state.trades[trade["id"]] = trade
        return dict(trade)


def process_trade(state: LedgerState, trade_id: str) -> Dict[str, Any]:
    """distribute an existing pending trade. a second call raises AlreadyProcessed."""
    with state.lock:
        trade = state.trades.get(trade_id)
        if trade is None:
            raise NotFound(f"Trade {trade_id} not found")
        if trade["processed_for_commissions"] or trade_id in state.processed_trades:
            raise AlreadyProcessed(f"Trade {trade_id} already processed")

        breakdown = _distribute_in_lock(state, dict(trade), utcnow())

    return trade_result(trade, breakdown)


def _distribute_in_lock(
    state: LedgerState, trade: Dict[str, Any], now: datetime
) -> Dict[str, Any]:
    upline = get_upline_chain(trade["user_id"], state.ref, MAX_REFERRAL_DEPTH)
    breakdown = fee_engine(trade["fee_amount"], trade["user_id"], upline)
    rows = build_ledger_rows(trade, breakdown, now)

    # nothing below can fail: apply all writes together
    trade["processed_for_commissions"] = True
    state.trades[trade["id"]] = trade
    for row in rows["commissions"]:
        state.commissions[row["id"]] = row
    state.cashback[rows["cashback"]["id"]] = rows["cashback"]
    state.treasury[rows["treasury"]["id"]] = rows["treasury"]
    state.processed_trades[trade["id"]] = now

    logger.info(
        "Trade processed",
        extra={
            "trade_id": trade["id"],
            "user_id": trade["user_id"],
            "fee_amount": str(trade["fee_amount"]),
            "levels_paid": len(breakdown["commissions"]),
        },
    )
    return breakdown
