from contextlib import contextmanager
from pathlib import Path

import psycopg


SCHEMA_PATH = Path(__file__).with_name("schema.sql")


@contextmanager
def get_conn(dsn: str):
    """
    simple context manager to get a Postgres connection.
    autocommit is disabled so we can manage transactions explicitly.
    """
    with psycopg.connect(dsn) as conn:
        conn.autocommit = False
        yield conn


def apply_schema(conn) -> None:
    """create the tables from schema.sql (idempotent)."""
    with conn.cursor() as cur:
        cur.execute(SCHEMA_PATH.read_text())
    conn.commit()
