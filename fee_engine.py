from decimal import Decimal
from types import MappingProxyType
from typing import Any, Dict, List, Sequence, Tuple

from errors import InvalidInput
from money import ZERO, dsum, multiply, subtract, to_decimal

COMMISSION_RATES = MappingProxyType(
    {
        "cashback": Decimal("0.10"),
        "level1": Decimal("0.30"),
        "level2": Decimal("0.03"),
        "level3": Decimal("0.02"),
        "treasury": Decimal("0.55"),
    }
)

LEVEL_RATE_KEYS = {1: "level1", 2: "level2", 3: "level3"}

if sum(COMMISSION_RATES.values()) != Decimal(1):
    raise RuntimeError("commission rates must sum to exactly 1")


def calculate_commission_breakdown(fee_amount) -> Dict[str, Decimal]:
    """
    nominal share of the fee for every rate, ignoring who actually exists
    upline. each share is fee x rate truncated to 18 dp.
    """
    fee = to_decimal(fee_amount)
    return {key: multiply(fee, rate) for key, rate in COMMISSION_RATES.items()}


def fee_engine(
    fee_amount,
    trader_id,
    upline: Sequence[Tuple[Any, int]],
) -> Dict[str, Any]:
    """
    split a trade fee between the trader, their upline and the treasury.

    fee_amount: Decimal (or decimal string)
    trader_id: id of the trader, receives the cashback
    upline: [(user_id, level), ...] nearest first, as returned by the
            referral graph accessor. levels without an entry are absorbed
            by the treasury.

    treasury is derived as fee - everything else, so the shares always add
    up to the fee exactly; any truncation residue lands in the treasury.
    """
    fee = to_decimal(fee_amount)
    if fee < 0:
        raise InvalidInput(f"fee amount cannot be negative ({fee})")

    nominal = calculate_commission_breakdown(fee)
    by_level = {level: user_id for user_id, level in upline}

    commissions: List[Dict[str, Any]] = []
    absorbed_levels: List[int] = []
    for level, rate_key in LEVEL_RATE_KEYS.items():
        beneficiary = by_level.get(level)
        if beneficiary is None:
            absorbed_levels.append(level)
            continue
        commissions.append(
            {
                "beneficiary": beneficiary,
                "level": level,
                "amount": nominal[rate_key],
            }
        )

    cashback = nominal["cashback"]
    paid_out = dsum([cashback] + [c["amount"] for c in commissions])
    treasury = subtract(fee, paid_out)

    return {
        "fee_amount": fee,
        "commissions": commissions,
        "cashback": {"beneficiary": trader_id, "amount": cashback},
        "treasury": {"amount": treasury, "absorbed_levels": absorbed_levels},
    }


def breakdown_total(breakdown: Dict[str, Any]) -> Decimal:
    parts = [c["amount"] for c in breakdown["commissions"]]
    parts.append(breakdown["cashback"]["amount"])
    parts.append(breakdown["treasury"]["amount"])
    return dsum(parts)


def validate_breakdown(
    fee_amount,
    breakdown: Dict[str, Any],
    trader_id,
    upline: Sequence[Tuple[Any, int]],
) -> bool:
    """
    independently re-check a breakdown against the trade it came from.

    true only if the shares add up to the fee, every commission/cashback
    matches its rate, levels are distinct and in range, the treasury holds
    exactly the base share plus the absorbed levels, the cashback goes to
    the trader and each commission goes to the upline member at its level.
    """
    try:
        fee = to_decimal(fee_amount)
        nominal = calculate_commission_breakdown(fee)

        if breakdown["fee_amount"] != fee:
            return False
        if breakdown_total(breakdown) != fee:
            return False
        if breakdown["cashback"]["amount"] != nominal["cashback"]:
            return False
        if breakdown["cashback"]["beneficiary"] != trader_id:
            return False

        seen_levels = set()
        for c in breakdown["commissions"]:
            level = c["level"]
            if level not in LEVEL_RATE_KEYS or level in seen_levels:
                return False
            seen_levels.add(level)
            if c["amount"] != nominal[LEVEL_RATE_KEYS[level]]:
                return False

        absorbed = sorted(breakdown["treasury"]["absorbed_levels"])
        if absorbed != sorted(set(LEVEL_RATE_KEYS) - seen_levels):
            return False

        absorbed_share = dsum(nominal[LEVEL_RATE_KEYS[lvl]] for lvl in absorbed)
        expected_treasury = dsum([nominal["treasury"], absorbed_share])
        # truncation residue (at most a few units of 1e-18) may sit in the treasury
        residue = subtract(breakdown["treasury"]["amount"], expected_treasury)
        if residue < ZERO or residue >= Decimal("1e-17"):
            return False

        expected = {level: user_id for user_id, level in upline}
        for c in breakdown["commissions"]:
            if c["level"] not in expected or expected[c["level"]] != c["beneficiary"]:
                return False
        if set(expected) & set(absorbed):
            return False
    except (KeyError, TypeError, InvalidInput):
        return False

    return True
