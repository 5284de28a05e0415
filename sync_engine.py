"""
Periodic IB commission sync.

One run walks every approved broker, finds the clients it is the direct
broker for, pulls their recently closed trades from the trade-history feed,
and pushes each trade through validate -> allocate -> post.

Brokers are independent and run on a thread pool. Within one trade the chain
is always posted deepest level first. A run can be cancelled between brokers;
everything already posted is final and idempotent, so the next run simply
picks up what was left.
"""

import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from enum import Enum
from typing import Callable, Dict, List, Optional

from loguru import logger

from config import Settings
from db.store import PostgresBrokerStore
from models import Broker, Trade
from rate_resolver import index_brokers, resolve_commission_chain
from referral_engine import direct_clients, walk_referrals
from trade_engine import process_trade
from trade_engine_db import PostgresLedgerWriter
from trade_feed import Mt5TradeFeed, TradeFeedError


class SyncState(str, Enum):
    IDLE = "idle"
    ENUMERATING_BROKERS = "enumerating_brokers"
    ENUMERATING_CLIENTS = "enumerating_clients"
    FETCHING_TRADES = "fetching_trades"
    ALLOCATING = "allocating"
    FAILED = "failed"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class SyncContext:
    """Everything one run needs; built per run, never module-global."""

    settings: Settings
    store: object
    ledger: object
    feed: object
    cancel_event: threading.Event = field(default_factory=threading.Event)
    now: Callable[[], datetime] = _utcnow

    def cancel(self) -> None:
        self.cancel_event.set()

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()


@dataclass
class BrokerReport:
    broker_id: int
    state: SyncState = SyncState.IDLE
    clients: int = 0
    accounts: int = 0
    trades: int = 0
    posted: int = 0
    duplicates: int = 0
    excluded: int = 0
    failed_accounts: int = 0
    failed_trades: int = 0
    failed_writes: int = 0
    credited: Decimal = Decimal("0")
    error: Optional[str] = None

    def move(self, state: SyncState) -> None:
        logger.debug(f"Broker {self.broker_id}: {self.state.value} -> {state.value}")
        self.state = state


@dataclass
class SyncReport:
    started_at: datetime
    from_time: datetime
    to_time: datetime
    brokers: List[BrokerReport] = field(default_factory=list)
    skipped_brokers: int = 0
    cancelled: bool = False
    finished_at: Optional[datetime] = None

    def total(self, name: str):
        start = Decimal("0") if name == "credited" else 0
        return sum((getattr(b, name) for b in self.brokers), start)

    @property
    def failed_brokers(self) -> int:
        return sum(1 for b in self.brokers if b.state == SyncState.FAILED)

    def as_dict(self) -> Dict:
        return {
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "window": {"from": self.from_time.isoformat(), "to": self.to_time.isoformat()},
            "brokers": len(self.brokers),
            "failed_brokers": self.failed_brokers,
            "skipped_brokers": self.skipped_brokers,
            "cancelled": self.cancelled,
            "accounts": self.total("accounts"),
            "trades": self.total("trades"),
            "posted": self.total("posted"),
            "duplicates": self.total("duplicates"),
            "excluded": self.total("excluded"),
            "failed_accounts": self.total("failed_accounts"),
            "failed_trades": self.total("failed_trades"),
            "failed_writes": self.total("failed_writes"),
            "credited": f"{self.total('credited'):.8f}",
        }


def build_context(settings: Settings) -> SyncContext:
    """production wiring: Postgres store + ledger, MT5 trade-history feed."""
    return SyncContext(
        settings=settings,
        store=PostgresBrokerStore(settings.database_dsn),
        ledger=PostgresLedgerWriter(settings.database_dsn),
        feed=Mt5TradeFeed(
            base_url=settings.trade_feed_base_url,
            api_key=settings.trade_feed_api_key,
            timeout=settings.trade_feed_timeout_seconds,
            page_size=settings.trade_feed_page_size,
            max_pages=settings.trade_feed_max_pages,
        ),
    )


def run_sync(ctx: SyncContext) -> SyncReport:
    """one batch run over every approved broker."""
    started = ctx.now()
    to_time = started
    from_time = to_time - timedelta(hours=ctx.settings.lookback_hours)
    report = SyncReport(started_at=started, from_time=from_time, to_time=to_time)

    logger.info(f"Starting IB commission sync for window {from_time.isoformat()} .. {to_time.isoformat()}")

    # EnumeratingBrokers: one snapshot of brokers + parent links for the whole run
    brokers = ctx.store.get_approved_brokers()
    parents = ctx.store.get_broker_parents()
    brokers_by_id = index_brokers(brokers)
    logger.info(f"Found {len(brokers)} approved brokers")

    def _work(broker: Broker) -> Optional[BrokerReport]:
        # cooperative checkpoint: never start a new broker after cancel
        if ctx.cancelled:
            return None
        return sync_broker(ctx, broker, brokers_by_id, parents, from_time, to_time)

    with ThreadPoolExecutor(max_workers=ctx.settings.sync_workers, thread_name_prefix="ib-sync") as pool:
        for broker_report in pool.map(_work, brokers):
            if broker_report is None:
                report.skipped_brokers += 1
            else:
                report.brokers.append(broker_report)

    report.cancelled = ctx.cancelled
    report.finished_at = ctx.now()

    summary = report.as_dict()
    logger.info(
        f"IB commission sync completed: {summary['brokers']} brokers, {summary['trades']} trades, "
        f"{summary['posted']} entries posted ({summary['duplicates']} duplicates), "
        f"credited {summary['credited']}"
        + (f", cancelled with {report.skipped_brokers} brokers left" if report.cancelled else "")
    )
    return report


def sync_broker(
    ctx: SyncContext,
    broker: Broker,
    brokers_by_id: Dict[int, Broker],
    parents: Dict[int, Optional[int]],
    from_time: datetime,
    to_time: datetime,
) -> BrokerReport:
    """
    sync one broker's direct clients. failures on one account or one trade
    are logged and skipped; anything else fails only this broker.
    """
    report = BrokerReport(broker_id=broker.user_id)

    try:
        report.move(SyncState.ENUMERATING_CLIENTS)
        walk = walk_referrals(
            broker.referral_code,
            ctx.store.get_users_referred_by,
            max_depth=ctx.settings.max_referral_depth,
            stop_at_brokers=True,
        )
        clients = direct_clients(broker.user_id, walk)
        report.clients = len(clients)

        for client_id in clients:
            try:
                accounts = ctx.store.get_trading_accounts_for(client_id)
            except Exception:
                logger.exception(f"Error listing trading accounts of client {client_id}")
                report.failed_accounts += 1
                continue

            for account in accounts:
                report.accounts += 1

                report.move(SyncState.FETCHING_TRADES)
                try:
                    trades = ctx.feed.get_closed_trades(account.login, from_time, to_time)
                except TradeFeedError as e:
                    logger.warning(f"Deferring account {account.login} of client {client_id} to next run: {e}")
                    report.failed_accounts += 1
                    continue
                except Exception:
                    logger.exception(f"Error fetching trades for account {account.login} of client {client_id}")
                    report.failed_accounts += 1
                    continue

                report.move(SyncState.ALLOCATING)
                try:
                    chain = resolve_commission_chain(
                        broker.user_id,
                        account.group_id,
                        brokers_by_id,
                        parents,
                        max_depth=ctx.settings.max_referral_depth,
                    )
                except Exception:
                    logger.exception(f"Error resolving rates for account {account.login} of client {client_id}")
                    report.failed_accounts += 1
                    continue

                for trade in trades:
                    _sync_trade(ctx, report, trade, client_id, chain)

    except Exception as e:
        logger.exception(f"Error syncing commissions for IB {broker.user_id}")
        report.error = str(e)
        report.move(SyncState.FAILED)
        return report

    report.move(SyncState.IDLE)
    return report


def _sync_trade(ctx: SyncContext, report: BrokerReport, trade: Trade, client_id: int, chain) -> None:
    report.trades += 1
    try:
        result = process_trade(
            trade,
            client_id,
            chain,
            ctx.ledger,
            pip_value=ctx.settings.pip_value_for(trade.symbol),
            min_duration_seconds=ctx.settings.min_trade_duration_seconds,
        )
    except Exception:
        logger.exception(f"Error processing trade {trade.ticket} for client {client_id}")
        report.failed_trades += 1
        return

    report.posted += result["posted"]
    report.duplicates += result["duplicates"]
    report.excluded += result["excluded"]
    report.failed_writes += result["failed"]
    report.credited += result["credited"]
