import threading
from decimal import Decimal
from typing import Any, Dict, List

from loguru import logger

from commission_allocator import allocate_commissions, build_participants
from models import STATUS_EXCLUDED, LedgerEntry, RateChain, Trade
from trade_validator import MIN_TRADE_DURATION_SECONDS, validate_trade


class InMemoryLedger:
    """
    ledger writer over plain python structures (tests, dry runs).

    processed : set of (trade_ticket, ib_id) for idempotency
    journal   : append-only list of LedgerEntry
    balances  : dict ib_id -> Decimal
    """

    def __init__(self):
        self.processed = set()
        self.journal: List[LedgerEntry] = []
        self.balances: Dict[int, Decimal] = {}
        self._lock = threading.Lock()

    def post(self, entry: LedgerEntry) -> bool:
        # one lock stands in for the per-broker row lock of the DB writer
        with self._lock:
            if entry.key in self.processed:
                return False

            self.processed.add(entry.key)
            self.journal.append(entry)
            if entry.commission_amount > 0:
                self.balances[entry.ib_id] = (
                    self.balances.get(entry.ib_id, Decimal("0")) + entry.commission_amount
                )
            return True

    def balance(self, ib_id: int) -> Decimal:
        return self.balances.get(ib_id, Decimal("0"))

    def entries_for(self, ib_id: int) -> List[LedgerEntry]:
        return [e for e in self.journal if e.ib_id == ib_id]


def process_trade(
    trade: Trade,
    client_id: int,
    chain: RateChain,
    ledger,
    pip_value: Decimal = Decimal("10"),
    min_duration_seconds: int = MIN_TRADE_DURATION_SECONDS,
) -> Dict[str, Any]:
    """
    run one closed trade through validate -> allocate -> post.

    ledger is anything with post(entry) -> bool (InMemoryLedger,
    PostgresLedgerWriter). each participant is posted on its own, deepest
    first, so one failed write never undoes the others.

    returns
    -------
    dict
        {
            "ticket": int,
            "posted": int,       # new entries
            "duplicates": int,   # already in the ledger, skipped
            "excluded": int,     # new entries with status 'excluded'
            "failed": int,       # writes that raised
            "credited": Decimal, # sum of newly posted amounts
            "allocations": [...]
        }
    """
    participants = build_participants(chain)
    eligibility = [
        validate_trade(trade, p.broker_id, client_id, min_duration_seconds) for p in participants
    ]
    allocations = allocate_commissions(participants, trade.volume, pip_value, eligibility)

    result = {
        "ticket": trade.ticket,
        "posted": 0,
        "duplicates": 0,
        "excluded": 0,
        "failed": 0,
        "credited": Decimal("0"),
        "allocations": allocations,
    }

    for alloc in allocations:
        p = alloc.participant
        if not p.active:
            # no approved broker record, nobody to post for
            continue

        entry = LedgerEntry(
            ib_id=p.broker_id,
            client_id=client_id,
            login=trade.login,
            trade_ticket=trade.ticket,
            symbol=trade.symbol,
            lots=trade.volume,
            profit=trade.profit,
            commission_amount=alloc.commission,
            group_id=chain.group_id,
            pip_rate=alloc.marginal_rate,
            pip_value=pip_value,
            open_time=trade.open_time,
            close_time=trade.close_time,
            duration_seconds=alloc.eligibility.duration_seconds,
            status=alloc.eligibility.status,
            exclusion_reason=alloc.eligibility.reason,
            commission_level=p.level,
            is_override=p.is_override,
        )

        try:
            inserted = ledger.post(entry)
        except Exception:
            logger.exception(f"Failed to post trade {trade.ticket} for broker {p.broker_id}")
            result["failed"] += 1
            continue

        if not inserted:
            result["duplicates"] += 1
            continue

        result["posted"] += 1
        result["credited"] += entry.commission_amount
        if entry.status == STATUS_EXCLUDED:
            result["excluded"] += 1

    return result
