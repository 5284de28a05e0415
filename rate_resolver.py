from decimal import Decimal, InvalidOperation
from typing import Dict, Mapping, Optional

from loguru import logger

from config import MAX_REFERRAL_DEPTH
from models import Broker, ChainRate, RateChain
from referral_engine import get_lineage


ZERO = Decimal("0")


def resolve_rate(rate_table: Optional[Mapping], group_id) -> Decimal:
    """
    a broker's configured rate (pips per lot) for one instrument group.
    unset -> 0. malformed or negative values are logged and treated as 0.
    """
    if not rate_table:
        return ZERO

    raw = rate_table.get(str(group_id))
    if raw is None or raw == "":
        return ZERO

    try:
        rate = Decimal(str(raw))
    except (InvalidOperation, ValueError):
        logger.warning(f"Malformed rate {raw!r} for group {group_id}, using 0")
        return ZERO

    if not rate.is_finite() or rate < 0:
        logger.warning(f"Invalid rate {raw!r} for group {group_id}, using 0")
        return ZERO

    return rate


def resolve_commission_chain(
    broker_id: int,
    group_id,
    brokers: Mapping[int, Broker],
    parents: Mapping[int, Optional[int]],
    max_depth: int = MAX_REFERRAL_DEPTH,
) -> RateChain:
    """
    resolve the broker's own rate for `group_id` and the rates of its ancestors,
    ordered from immediate parent up to the root master.

    brokers: approved brokers by user_id (rate tables live here)
    parents: broker -> parent broker for every broker record, approved or not

    an ancestor without an approved broker record still appears in the chain,
    with rate 0 and active=False, so the walk can continue above it.
    """
    group_id = str(group_id)
    own = brokers.get(broker_id)
    own_rate = resolve_rate(own.rate_table, group_id) if own else ZERO

    lineage = get_lineage(broker_id, parents, max_levels=max_depth)

    ancestors = []
    for ancestor_id in lineage:
        ancestor = brokers.get(ancestor_id)
        if ancestor is None:
            logger.warning(
                f"Ancestor {ancestor_id} of broker {broker_id} has no approved broker record, "
                f"treating its rate for group {group_id} as 0"
            )
            ancestors.append(ChainRate(broker_id=ancestor_id, rate=ZERO, active=False))
            continue
        ancestors.append(
            ChainRate(broker_id=ancestor_id, rate=resolve_rate(ancestor.rate_table, group_id))
        )

    top = lineage[-1] if lineage else broker_id
    reaches_root = parents.get(top) is None

    if not reaches_root:
        logger.warning(
            f"Chain above broker {broker_id} was cut at {len(lineage)} levels "
            f"(depth limit or cycle), no override will be paid"
        )

    return RateChain(
        broker_id=broker_id,
        group_id=group_id,
        own_rate=own_rate,
        ancestors=ancestors,
        reaches_root=reaches_root,
    )


def index_brokers(brokers) -> Dict[int, Broker]:
    return {b.user_id: b for b in brokers}
