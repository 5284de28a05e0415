from collections import deque
from typing import Callable, Dict, List, Optional

from config import MAX_REFERRAL_DEPTH
from models import ReferredAccount


def register_referral(child_id, referral_code, codes, referred_by):
    """
    register that the owner of `referral_code` referred `child_id`.

    codes: dict mapping user_id -> referral_code
    referred_by: dict mapping user_id -> referral_code of their referrer
    rules:
      - the code must belong to someone
      - a user cannot refer themselves
      - a child can only have ONE referrer (cannot be overwritten)
      - adding the edge must NOT create a cycle
    """
    owners = {code: user_id for user_id, code in codes.items()}

    parent_id = owners.get(referral_code)
    if parent_id is None:
        raise ValueError(f"No user found with referral_code={referral_code}")

    if parent_id == child_id:
        raise ValueError("User cannot refer themselves.")

    if referred_by.get(child_id) is not None:
        raise ValueError(f"User {child_id} already has a referrer ({referred_by[child_id]}).")

    # walk UP from parent, we must never hit child
    current = parent_id
    seen = set()
    while current is not None and current not in seen:
        if current == child_id:
            raise ValueError(
                f"Registering {parent_id} as referrer of {child_id} would create a cycle."
            )
        seen.add(current)
        current = owners.get(referred_by.get(current))

    referred_by[child_id] = referral_code


def get_lineage(broker_id, parents, max_levels=MAX_REFERRAL_DEPTH):
    """
    given a broker_id and a mapping parents: broker -> parent broker,
    return [parent, grandparent, ..., root] up to max_levels.

    unlike a padded fixed-width lineage this stops at the root, and it stops
    early (without raising) if the data loops back on itself.
    """
    lineage = []
    seen = {broker_id}
    current = broker_id

    for _ in range(max_levels):
        parent = parents.get(current)
        if parent is None:
            break
        if parent in seen:
            # corrupted data: parent chain loops back
            break
        lineage.append(parent)
        seen.add(parent)
        current = parent

    return lineage


def walk_referrals(
    referral_code: str,
    get_referred: Callable[[str], List[Dict]],
    max_depth: int = MAX_REFERRAL_DEPTH,
    stop_at_brokers: bool = False,
) -> List[ReferredAccount]:
    """
    breadth-first walk over the referred_by -> referral_code edge.

    get_referred(code) returns the users referred by `code` as dicts with
    user_id, referral_code and is_broker. every account is reported once, at
    its shallowest depth. with stop_at_brokers the walk reports approved
    sub-brokers but does not descend into their downline.
    """
    found: List[ReferredAccount] = []
    visited_codes = {referral_code}
    seen_users = set()
    queue = deque([(referral_code, 0)])

    while queue:
        code, depth = queue.popleft()
        if depth >= max_depth:
            continue

        for row in get_referred(code):
            user_id = row["user_id"]
            if user_id in seen_users:
                continue
            seen_users.add(user_id)

            account = ReferredAccount(
                user_id=user_id,
                referral_code=row.get("referral_code"),
                depth=depth + 1,
                is_broker=bool(row.get("is_broker")),
                referred_by=code,
            )
            found.append(account)

            if stop_at_brokers and account.is_broker:
                continue
            child_code = account.referral_code
            if child_code and child_code not in visited_codes:
                visited_codes.add(child_code)
                queue.append((child_code, depth + 1))

    return found


def group_by_depth(accounts: List[ReferredAccount]) -> List[Dict]:
    """
    shape a walk for display:
    [{"level": 1, "users": [...]}, {"level": 2, "users": [...]}, ...]
    """
    levels: Dict[int, List[Dict]] = {}
    for acc in accounts:
        levels.setdefault(acc.depth, []).append(
            {
                "user_id": acc.user_id,
                "referral_code": acc.referral_code,
                "is_broker": acc.is_broker,
                "referred_by": acc.referred_by,
            }
        )
    return [{"level": level, "users": levels[level]} for level in sorted(levels)]


def direct_clients(broker_id: int, accounts: List[ReferredAccount]) -> List[int]:
    """
    clients this broker is the direct (deepest) earning broker for:
    the broker itself plus every non-broker account in its own subtree.
    expects a walk made with stop_at_brokers=True.
    """
    clients = [broker_id]
    for acc in accounts:
        if not acc.is_broker and acc.user_id != broker_id:
            clients.append(acc.user_id)
    return clients


def build_referral_lookup(referred_by: Dict[int, Optional[str]], codes: Dict[int, str], brokers=()):
    """
    in-memory counterpart of the DB lookup used by walk_referrals.
    referred_by: user_id -> referrer's code, codes: user_id -> own code.
    """
    broker_ids = set(brokers)
    children: Dict[str, List[Dict]] = {}
    for user_id in sorted(referred_by):
        code = referred_by[user_id]
        if code is None:
            continue
        children.setdefault(code, []).append(
            {
                "user_id": user_id,
                "referral_code": codes.get(user_id),
                "is_broker": user_id in broker_ids,
            }
        )

    def get_referred(code):
        return children.get(code, [])

    return get_referred
