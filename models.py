from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional


STATUS_PROCESSED = "processed"
STATUS_EXCLUDED = "excluded"

REASON_SELF_TRADE = "self-trade"
REASON_SHORT_TRADE = "trade duration <= {seconds} seconds"


@dataclass(frozen=True)
class Broker:
    """An approved introducing broker."""

    user_id: int
    referral_code: str
    level: int = 1
    referrer_id: Optional[int] = None
    root_master_id: Optional[int] = None
    rate_table: Dict[str, Decimal] = field(default_factory=dict)


@dataclass(frozen=True)
class ReferredAccount:
    """One node of a referral walk; depth 1 = direct referral."""

    user_id: int
    referral_code: Optional[str]
    depth: int
    is_broker: bool
    referred_by: Optional[str] = None


@dataclass(frozen=True)
class TradingAccount:
    login: str
    group_id: str


@dataclass(frozen=True)
class Trade:
    ticket: int
    login: str
    symbol: str
    volume: Decimal
    profit: Decimal
    open_time: datetime
    close_time: datetime

    @property
    def duration_seconds(self) -> int:
        return int((self.close_time - self.open_time).total_seconds())


@dataclass(frozen=True)
class ChainRate:
    broker_id: int
    rate: Decimal
    active: bool = True


@dataclass(frozen=True)
class RateChain:
    """A broker's own rate plus its ancestors' rates (parent first, root last)."""

    broker_id: int
    group_id: str
    own_rate: Decimal
    ancestors: List[ChainRate] = field(default_factory=list)
    reaches_root: bool = True


@dataclass(frozen=True)
class Participant:
    broker_id: int
    absolute_rate: Decimal
    level: int
    is_override: bool = False
    active: bool = True


@dataclass(frozen=True)
class Eligibility:
    status: str
    reason: Optional[str]
    duration_seconds: int

    @property
    def eligible(self) -> bool:
        return self.status == STATUS_PROCESSED


@dataclass(frozen=True)
class Allocation:
    participant: Participant
    marginal_rate: Decimal
    commission: Decimal
    eligibility: Eligibility


@dataclass(frozen=True)
class LedgerEntry:
    ib_id: int
    client_id: int
    login: str
    trade_ticket: int
    symbol: str
    lots: Decimal
    profit: Decimal
    commission_amount: Decimal
    group_id: str
    pip_rate: Decimal
    pip_value: Decimal
    open_time: datetime
    close_time: datetime
    duration_seconds: int
    status: str
    exclusion_reason: Optional[str]
    commission_level: int
    is_override: bool

    @property
    def key(self):
        return (self.trade_ticket, self.ib_id)
