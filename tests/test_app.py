from datetime import timedelta

import pytest
from fastapi.testclient import TestClient

from app import app, get_sync_context
from config import Settings, get_settings
from db.db import get_conn
from db.repositories import create_user_db, upsert_broker_db
from sync_engine import SyncContext
from trade_engine import InMemoryLedger
from tests.utils.fakes import T0, FakeBrokerStore, FakeTradeFeed, make_trade

client = TestClient(app)


@pytest.fixture
def overrides():
    yield app.dependency_overrides
    app.dependency_overrides.clear()


def test_sync_endpoint_runs_one_batch(settings, overrides):
    store = FakeBrokerStore()
    store.add_broker(1, {"7": "2.0"})
    store.add_user(100, referred_by="REF_1", accounts=[("1001", 7)])
    feed = FakeTradeFeed()
    feed.add(make_trade(1, login="1001", lots="1.5"))

    ledger = InMemoryLedger()
    overrides[get_sync_context] = lambda: SyncContext(
        settings=settings,
        store=store,
        ledger=ledger,
        feed=feed,
        now=lambda: T0 + timedelta(hours=1),
    )

    res = client.post("/api/ib/commissions/sync")

    assert res.status_code == 200
    data = res.json()
    assert data["brokers"] == 1
    assert data["posted"] == 1
    assert data["credited"] == "30.00000000"
    assert data["cancelled"] is False


def _pg_settings(dsn):
    return Settings(_env_file=None, database_dsn=dsn)


def test_network_and_balance_endpoints(clean_db, overrides):
    overrides[get_settings] = lambda: _pg_settings(clean_db)

    with get_conn(clean_db) as conn:
        m = create_user_db(conn, "M", "REF_M")["user_id"]
        s = create_user_db(conn, "S", "REF_S")["user_id"]
        c = create_user_db(conn, "C", "REF_C")["user_id"]
        upsert_broker_db(conn, m, {"7": "2.5"})
        upsert_broker_db(conn, s, {"7": "1.0"}, referrer_ib_id=m)
        conn.commit()

    assert client.post(
        "/api/referral/register", json={"child_user_id": s, "referral_code": "REF_M"}
    ).status_code == 200
    assert client.post(
        "/api/referral/register", json={"child_user_id": c, "referral_code": "REF_S"}
    ).status_code == 200

    res = client.get(f"/api/ib/network?user_id={m}&max_levels=3")
    assert res.status_code == 200
    levels = res.json()["levels"]
    assert [lvl["level"] for lvl in levels] == [1, 2]
    assert levels[0]["users"][0]["user_id"] == s
    assert levels[0]["users"][0]["is_broker"] is True
    assert levels[1]["users"][0]["user_id"] == c

    res = client.get(f"/api/ib/balance?user_id={m}")
    assert res.status_code == 200
    assert res.json()["balance"] == "0.00000000"

    res = client.get(f"/api/ib/commissions?user_id={m}")
    assert res.status_code == 200
    assert res.json()["entries"] == []


def test_register_rejects_self_referral(clean_db, overrides):
    overrides[get_settings] = lambda: _pg_settings(clean_db)

    with get_conn(clean_db) as conn:
        a = create_user_db(conn, "A", "REF_A")["user_id"]
        conn.commit()

    res = client.post("/api/referral/register", json={"child_user_id": a, "referral_code": "REF_A"})
    assert res.status_code == 400
    assert "cannot refer themselves" in res.json()["detail"]
