import secrets
import string
from collections import deque
from typing import Any, Dict, List, Optional, Tuple

from errors import (
    AlreadyReferred,
    CircularReference,
    MaxDepthExceeded,
    SelfReferral,
)

MAX_REFERRAL_DEPTH = 3

REFERRAL_CODE_PREFIX = "REF_"
_CODE_ALPHABET = string.ascii_uppercase + string.digits


def generate_referral_code() -> str:
    """REF_ followed by 8 random [A-Z0-9] characters."""
    return REFERRAL_CODE_PREFIX + "".join(secrets.choice(_CODE_ALPHABET) for _ in range(8))


def normalize_referral_code(code: str) -> str:
    """referral codes are case-insensitive"""
    return code.strip().upper()


def get_upline_chain(
    user_id, ref: Dict[Any, Any], max_levels: int = MAX_REFERRAL_DEPTH
) -> List[Tuple[Any, int]]:
    """
    given a user_id and a mapping ref: child -> referrer,
    return [(L1, 1), (L2, 2), ...] up to max_levels, nearest first.
    empty list if the user has no referrer.
    """
    chain = []
    seen = {user_id}
    current = user_id

    for level in range(1, max_levels + 1):
        parent = ref.get(current)
        if parent is None:
            break
        if parent in seen:
            raise CircularReference(f"referral cycle detected above user {user_id}")
        chain.append((parent, level))
        seen.add(parent)
        current = parent

    return chain


def get_referral_depth(user_id, ref: Dict[Any, Any]) -> int:
    """number of referrer edges between user_id and its root."""
    depth = 0
    seen = {user_id}
    current = ref.get(user_id)
    while current is not None:
        if current in seen:
            raise CircularReference(f"referral cycle detected above user {user_id}")
        seen.add(current)
        depth += 1
        current = ref.get(current)
    return depth


def get_downline(
    user_id, ref: Dict[Any, Any], max_levels: Optional[int] = None
) -> List[Tuple[Any, int]]:
    """
    breadth-first walk down the referral tree.
    returns [(descendant, level), ...] with level 1 = direct referrals.
    """
    children: Dict[Any, List[Any]] = {}
    for child, parent in ref.items():
        if parent is not None:
            children.setdefault(parent, []).append(child)

    downline = []
    seen = {user_id}
    queue = deque([(user_id, 0)])
    while queue:
        current, level = queue.popleft()
        if max_levels is not None and level >= max_levels:
            continue
        for child in children.get(current, []):
            if child in seen:
                continue
            seen.add(child)
            downline.append((child, level + 1))
            queue.append((child, level + 1))

    return downline


def register_referral(child_id, parent_id, ref: Dict[Any, Any]) -> int:
    """
    register that `parent_id` referred `child_id`. returns the child's new depth.
    rules:
      - a child can only have ONE referrer (cannot be overwritten)
      - nobody refers themselves
      - a referrer already at max depth cannot take referrals
      - the referrer must not sit in the child's downline (no cycles)
      - the child's existing downline must stay within max depth
    """
    if ref.get(child_id) is not None:
        raise AlreadyReferred(f"User {child_id} already has a referrer ({ref[child_id]}).")

    if child_id == parent_id:
        raise SelfReferral("User cannot refer themselves.")

    parent_depth = get_referral_depth(parent_id, ref)
    if parent_depth >= MAX_REFERRAL_DEPTH:
        raise MaxDepthExceeded(f"Referrer {parent_id} is at maximum depth.")

    # walk UP from parent, we must never hit the child
    current = parent_id
    while current is not None:
        if current == child_id:
            raise CircularReference(
                f"Registering {parent_id} as referrer of {child_id} would create a cycle."
            )
        current = ref.get(current)

    child_depth = parent_depth + 1
    subtree_height = max((level for _, level in get_downline(child_id, ref)), default=0)
    if child_depth + subtree_height > MAX_REFERRAL_DEPTH:
        raise MaxDepthExceeded(
            f"Linking {child_id} under {parent_id} would push its downline past depth {MAX_REFERRAL_DEPTH}."
        )

    ref[child_id] = parent_id
    return child_depth
