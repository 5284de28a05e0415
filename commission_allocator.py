from decimal import Decimal, ROUND_DOWN
from typing import List, Sequence

from loguru import logger

from models import Allocation, Eligibility, Participant, RateChain


ZERO = Decimal("0")
AMOUNT_QUANTUM = Decimal("0.00000001")  # matches NUMERIC(18, 8) in ib_commissions


def build_participants(chain: RateChain) -> List[Participant]:
    """
    turn a resolved rate chain into participants ordered deepest -> root.

    the direct broker comes first; each ancestor follows one level up. levels
    count down to 1 at the top of the chain. the top entry is the override
    only when the chain has more than one level and really ends at a root.
    """
    depth = len(chain.ancestors) + 1

    participants = [
        Participant(broker_id=chain.broker_id, absolute_rate=chain.own_rate, level=depth)
    ]
    for i, ancestor in enumerate(chain.ancestors, start=1):
        is_top = i == len(chain.ancestors)
        participants.append(
            Participant(
                broker_id=ancestor.broker_id,
                absolute_rate=ancestor.rate,
                level=depth - i,
                is_override=is_top and chain.reaches_root and ancestor.active,
                active=ancestor.active,
            )
        )

    # deepest level first, root/override last
    participants.sort(key=lambda p: (-p.level, p.is_override))
    return participants


def allocate_commissions(
    participants: Sequence[Participant],
    lots: Decimal,
    pip_value: Decimal,
    eligibility: Sequence[Eligibility],
) -> List[Allocation]:
    """
    telescoping split of one trade across its chain.

    every participant earns only the rate it adds above what the level below
    it already took:
        marginal   = max(0, absolute - distributed_so_far)
        commission = lots * marginal * pip_value   (0 when not eligible)
        distributed_so_far = absolute
    for a non-decreasing chain the commissions sum to lots * top_rate * pip_value.

    participants must already be ordered deepest -> root. eligibility is
    per participant, same order. inactive participants (no approved record)
    take nothing and leave distributed_so_far untouched.
    """
    if len(participants) != len(eligibility):
        raise ValueError("participants and eligibility must have the same length")

    lots = Decimal(lots)
    pip_value = Decimal(pip_value)

    distributed_so_far = ZERO
    allocations = []

    for participant, elig in zip(participants, eligibility):
        if not participant.active:
            allocations.append(Allocation(participant, ZERO, ZERO, elig))
            continue

        raw_marginal = participant.absolute_rate - distributed_so_far
        if raw_marginal < 0:
            logger.warning(
                f"Broker {participant.broker_id} rate {participant.absolute_rate} is below "
                f"the {distributed_so_far} already distributed beneath it, clamping to 0"
            )
        marginal = max(ZERO, raw_marginal)

        if elig.eligible:
            commission = (lots * marginal * pip_value).quantize(AMOUNT_QUANTUM, rounding=ROUND_DOWN)
        else:
            commission = ZERO

        allocations.append(Allocation(participant, marginal, commission, elig))
        distributed_so_far = participant.absolute_rate

    return allocations
