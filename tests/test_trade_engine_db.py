from datetime import timedelta
from decimal import Decimal

import pytest

from db.db import get_conn
from db.repositories import create_user_db, get_broker_balance, get_ledger_entries, upsert_broker_db
from db.store import PostgresBrokerStore
from models import ChainRate, RateChain
from sync_engine import SyncContext, run_sync
from trade_engine import process_trade
from trade_engine_db import PostgresLedgerWriter, post_ledger_entry_db
from tests.utils.fakes import T0, FakeTradeFeed, make_trade


def _seed_chain(dsn):
    """
    master M (2.5 for group 7) -> sub-broker S (1.0) -> client C with account 1001
    """
    with get_conn(dsn) as conn:
        m = create_user_db(conn, "M", "REF_M")["user_id"]
        s = create_user_db(conn, "S", "REF_S")["user_id"]
        c = create_user_db(conn, "C", "REF_C")["user_id"]
        with conn.cursor() as cur:
            cur.execute("UPDATE users SET referred_by = 'REF_M' WHERE id = %s", (s,))
            cur.execute("UPDATE users SET referred_by = 'REF_S' WHERE id = %s", (c,))
            cur.execute(
                "INSERT INTO trading_accounts (user_id, account_number, group_id) VALUES (%s, '1001', '7')",
                (c,),
            )
        upsert_broker_db(conn, m, {"7": "2.5"})
        upsert_broker_db(conn, s, {"7": "1.0"}, referrer_ib_id=m)
        conn.commit()
    return m, s, c


def _chain(m, s):
    return RateChain(
        broker_id=s,
        group_id="7",
        own_rate=Decimal("1.0"),
        ancestors=[ChainRate(broker_id=m, rate=Decimal("2.5"))],
    )


def test_post_credits_balance_and_is_idempotent(clean_db):
    m, s, c = _seed_chain(clean_db)
    writer = PostgresLedgerWriter(clean_db)
    trade = make_trade(700001, login="1001")

    first = process_trade(trade, c, _chain(m, s), writer, pip_value=Decimal("10"))
    second = process_trade(trade, c, _chain(m, s), writer, pip_value=Decimal("10"))

    assert first["posted"] == 2
    assert second["posted"] == 0
    assert second["duplicates"] == 2

    with get_conn(clean_db) as conn:
        assert get_broker_balance(conn, s) == Decimal("15.00")
        assert get_broker_balance(conn, m) == Decimal("22.50")
        with conn.cursor() as cur:
            cur.execute("SELECT COUNT(*) FROM ib_commissions WHERE trade_ticket = %s", (700001,))
            assert cur.fetchone()[0] == 2

        master_rows = get_ledger_entries(conn, m)
        assert master_rows[0]["is_override"] is True
        assert master_rows[0]["pip_rate"] == Decimal("1.5")


def test_short_trade_rows_are_excluded_with_zero_amount(clean_db):
    m, s, c = _seed_chain(clean_db)
    writer = PostgresLedgerWriter(clean_db)

    process_trade(make_trade(700002, login="1001", seconds=45), c, _chain(m, s), writer)

    with get_conn(clean_db) as conn:
        with conn.cursor() as cur:
            cur.execute(
                "SELECT status, exclusion_reason, commission_amount FROM ib_commissions WHERE trade_ticket = %s",
                (700002,),
            )
            rows = cur.fetchall()
        assert len(rows) == 2
        assert all(r[0] == "excluded" and r[1] == "trade duration <= 60 seconds" for r in rows)
        assert all(r[2] == 0 for r in rows)
        assert get_broker_balance(conn, m) == Decimal("0")


def test_failed_credit_rolls_back_the_entry(clean_db):
    m, s, c = _seed_chain(clean_db)
    trade = make_trade(700003, login="1001")
    chain = RateChain(broker_id=s, group_id="7", own_rate=Decimal("1.0"))
    recorder = _RecordingWriter()
    process_trade(trade, c, chain, recorder, pip_value=Decimal("10"))
    entry = recorder.entries[0]

    with get_conn(clean_db) as conn:
        with conn.cursor() as cur:
            # no such broker row to lock -> the whole participant write fails
            cur.execute("DELETE FROM ib_brokers WHERE user_id = %s", (s,))
        conn.commit()

        with pytest.raises(ValueError):
            post_ledger_entry_db(conn, entry)

        with conn.cursor() as cur:
            cur.execute("SELECT COUNT(*) FROM ib_commissions WHERE trade_ticket = %s", (700003,))
            assert cur.fetchone()[0] == 0


class _RecordingWriter:
    def __init__(self):
        self.entries = []

    def post(self, entry):
        self.entries.append(entry)
        return True


def test_full_sync_against_postgres(clean_db, settings):
    m, s, c = _seed_chain(clean_db)
    feed = FakeTradeFeed()
    feed.add(make_trade(700004, login="1001"))

    ctx = SyncContext(
        settings=settings,
        store=PostgresBrokerStore(clean_db),
        ledger=PostgresLedgerWriter(clean_db),
        feed=feed,
        now=lambda: T0 + timedelta(hours=1),
    )

    first = run_sync(ctx)
    second = run_sync(ctx)

    assert first.total("posted") == 2
    assert second.total("posted") == 0
    with get_conn(clean_db) as conn:
        assert get_broker_balance(conn, s) == Decimal("15.00")
        assert get_broker_balance(conn, m) == Decimal("22.50")
