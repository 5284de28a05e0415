"""Pytest fixtures shared across unit and DB tests."""

import os

import psycopg
import pytest

from config import Settings
from db.db import apply_schema


@pytest.fixture(scope="session")
def pg_dsn():
    """DSN of a scratch Postgres database; DB tests skip without one."""
    dsn = os.getenv("IB_TEST_DATABASE_DSN")
    if not dsn:
        pytest.skip("IB_TEST_DATABASE_DSN is not set; skipping Postgres tests")

    with psycopg.connect(dsn) as conn:
        apply_schema(conn)
    return dsn


@pytest.fixture
def clean_db(pg_dsn):
    """empty every table before the test; yields the DSN."""
    with psycopg.connect(pg_dsn) as conn:
        with conn.cursor() as cur:
            cur.execute(
                "TRUNCATE ib_commissions, trading_accounts, ib_brokers, users RESTART IDENTITY CASCADE;"
            )
        conn.commit()
    yield pg_dsn


@pytest.fixture
def settings():
    return Settings(
        _env_file=None,
        database_dsn="dbname=unused",
        pip_value="10",
        min_trade_duration_seconds=60,
        lookback_hours=24,
        sync_workers=2,
    )
