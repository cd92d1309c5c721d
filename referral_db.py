from typing import Any, Dict

from loguru import logger
from psycopg import Connection

from db.repositories import (
    get_downline_db,
    get_or_generate_referral_code_db,
    get_user_by_referral_code,
    get_user_db,
    set_user_referrer_db,
    shift_downline_depth_db,
)
from db.transaction import with_serializable_transaction
from errors import AlreadyReferred, CircularReference, MaxDepthExceeded, SelfReferral
from referral_engine import MAX_REFERRAL_DEPTH, normalize_referral_code


def register_referral_db(child_id: int, referral_code: str) -> Dict[str, Any]:
    """
    DB-backed referral registration.

    child_id: user_id of the user being referred
    referral_code: code of the referrer (e.g. 'REF_AB12CD34')

    rules (all checked before any write):
      - child and referrer must exist
      - child cannot already have a referrer
      - child cannot refer themselves
      - referrer cannot be at max depth
      - referrer cannot sit in child's downline (cycle), checked unconditionally
      - child's existing downline must stay within max depth
    """
    code = normalize_referral_code(referral_code)

    def work(conn: Connection) -> Dict[str, Any]:
        return _register_in_tx(conn, child_id, code)

    result = with_serializable_transaction(work)
    logger.info(
        "Referral linked",
        extra={
            "child_id": child_id,
            "parent_id": result["parent_id"],
            "referral_depth": result["referral_depth"],
        },
    )
    return result


def _register_in_tx(conn: Connection, child_id: int, code: str) -> Dict[str, Any]:
    child = get_user_db(conn, child_id, for_update=True)
    parent = get_user_by_referral_code(conn, code)

    if child["referrer_id"] is not None:
        raise AlreadyReferred(f"User {child_id} already has a referrer ({child['referrer_id']}).")

    if parent["id"] == child_id:
        raise SelfReferral("User cannot refer themselves.")

    if parent["referral_depth"] >= MAX_REFERRAL_DEPTH:
        raise MaxDepthExceeded("Referral code is at maximum depth.")

    downline = get_downline_db(conn, child_id)
    if any(user_id == parent["id"] for user_id, _ in downline):
        raise CircularReference(
            f"Registering {parent['id']} as referrer of {child_id} would create a cycle."
        )

    depth = parent["referral_depth"] + 1
    subtree_height = max((level for _, level in downline), default=0)
    if depth + subtree_height > MAX_REFERRAL_DEPTH:
        raise MaxDepthExceeded(
            f"Linking {child_id} would push its downline past depth {MAX_REFERRAL_DEPTH}."
        )

    set_user_referrer_db(conn, child_id, parent["id"], depth)
    shift_downline_depth_db(conn, child_id, depth - child["referral_depth"])

    return {
        "status": "linked",
        "child_id": child_id,
        "parent_id": parent["id"],
        "referral_depth": depth,
    }


def generate_referral_code_db(user_id: int) -> Dict[str, Any]:
    """
    return the user's referral code, generating one if they don't have it yet.
    """

    def work(conn: Connection) -> Dict[str, Any]:
        code, existed = get_or_generate_referral_code_db(conn, user_id)
        return {"user_id": user_id, "referral_code": code, "already_exists": existed}

    return with_serializable_transaction(work)
