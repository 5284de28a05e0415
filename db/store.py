from typing import Dict, List, Optional

from db.db import get_conn
from db.repositories import (
    get_approved_brokers,
    get_broker_parents,
    get_trading_accounts_for,
    get_users_referred_by,
)
from models import Broker, TradingAccount


class PostgresBrokerStore:
    """
    read side of the referral/broker store used by the sync run.
    every call takes a short-lived connection of its own, so broker
    workers on different threads never share one.
    """

    def __init__(self, dsn: str):
        self.dsn = dsn

    def get_approved_brokers(self) -> List[Broker]:
        with get_conn(self.dsn) as conn:
            return get_approved_brokers(conn)

    def get_broker_parents(self) -> Dict[int, Optional[int]]:
        with get_conn(self.dsn) as conn:
            return get_broker_parents(conn)

    def get_users_referred_by(self, referral_code: str) -> List[Dict]:
        with get_conn(self.dsn) as conn:
            return get_users_referred_by(conn, referral_code)

    def get_trading_accounts_for(self, user_id: int) -> List[TradingAccount]:
        with get_conn(self.dsn) as conn:
            return get_trading_accounts_for(conn, user_id)
