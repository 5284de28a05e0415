from loguru import logger
from psycopg import Connection

from db.db import get_conn
from db.repositories import (
    credit_balance,
    insert_ledger_entry_if_absent,
    lock_broker_balance,
)
from models import LedgerEntry


def post_ledger_entry_db(conn: Connection, entry: LedgerEntry) -> bool:
    """
    DB-backed ledger write for ONE participant of one trade.

    entry insert and balance credit commit or roll back together:
      1) lock the broker's balance row (FOR UPDATE, this transaction only)
      2) insert the entry unless (trade_ticket, ib_id) already exists
      3) credit the balance when a row went in and the amount is positive

    returns True when the entry was new, False for a duplicate (no-op).
    """
    try:
        inserted = _post_ledger_entry_in_tx(conn, entry)
        conn.commit()
        return inserted
    except Exception:
        conn.rollback()
        raise


def _post_ledger_entry_in_tx(conn: Connection, entry: LedgerEntry) -> bool:
    lock_broker_balance(conn, entry.ib_id)

    if not insert_ledger_entry_if_absent(conn, entry):
        logger.debug(
            f"Trade {entry.trade_ticket} already posted for broker {entry.ib_id}, skipping"
        )
        return False

    if entry.commission_amount > 0:
        credit_balance(conn, entry.ib_id, entry.commission_amount)

    return True


class PostgresLedgerWriter:
    """ledger writer whose post() runs one transaction per participant."""

    def __init__(self, dsn: str):
        self.dsn = dsn

    def post(self, entry: LedgerEntry) -> bool:
        with get_conn(self.dsn) as conn:
            return post_ledger_entry_db(conn, entry)
