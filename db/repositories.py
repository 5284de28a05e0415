from decimal import Decimal
from typing import Optional, Dict, Any, List
import secrets
import string

from psycopg import Connection
from psycopg.errors import UniqueViolation
from psycopg.types.json import Jsonb

from models import Broker, LedgerEntry, TradingAccount


def _generate_unique_referral_code(conn: Connection) -> str:
    """
    generate a unique referral code (REF_XXXXXXXX).
    uses DB uniqueness check to guarantee no collisions.
    """
    alphabet = string.ascii_uppercase + string.digits
    while True:
        candidate = "REF_" + "".join(secrets.choice(alphabet) for _ in range(8))
        with conn.cursor() as cur:
            cur.execute(
                "SELECT 1 FROM users WHERE referral_code = %s",
                (candidate,),
            )
            if cur.fetchone() is None:
                return candidate


def create_user_db(
    conn: Connection,
    username: str,
    referral_code: Optional[str] = None,
) -> Dict[str, Any]:
    """
    create a new user; generates a referral_code unless one is given.
    returns {user_id, username, referral_code}.
    """
    username = username.strip()
    if not username:
        raise ValueError("username cannot be empty")

    code = referral_code or _generate_unique_referral_code(conn)

    try:
        with conn.cursor() as cur:
            cur.execute(
                """
                INSERT INTO users (username, referral_code)
                VALUES (%s, %s)
                RETURNING id, username, referral_code
                """,
                (username, code),
            )
            user_id, username_out, code_out = cur.fetchone()
        return {
            "user_id": user_id,
            "username": username_out,
            "referral_code": code_out,
        }

    except UniqueViolation:
        raise ValueError(f"username '{username}' or code '{code}' already exists")


def upsert_broker_db(
    conn: Connection,
    user_id: int,
    rate_table: Dict[str, Any],
    referrer_ib_id: Optional[int] = None,
    status: str = "approved",
) -> None:
    """
    create or update a broker record. level and root master are derived from
    the parent broker so the denormalized pointers always agree with the link.
    """
    level = 1
    root_master_id = None
    if referrer_ib_id is not None:
        with conn.cursor() as cur:
            cur.execute(
                "SELECT ib_level, root_master_id FROM ib_brokers WHERE user_id = %s",
                (referrer_ib_id,),
            )
            row = cur.fetchone()
        if row is None:
            raise ValueError(f"Parent broker {referrer_ib_id} not found")
        level = row[0] + 1
        root_master_id = row[1] if row[1] is not None else referrer_ib_id

    with conn.cursor() as cur:
        cur.execute(
            """
            INSERT INTO ib_brokers
                (user_id, status, ib_level, referrer_ib_id, root_master_id,
                 group_pip_commissions, approved_at)
            VALUES (%s, %s, %s, %s, %s, %s,
                    CASE WHEN %s = 'approved' THEN NOW() END)
            ON CONFLICT (user_id) DO UPDATE SET
                status = EXCLUDED.status,
                ib_level = EXCLUDED.ib_level,
                referrer_ib_id = EXCLUDED.referrer_ib_id,
                root_master_id = EXCLUDED.root_master_id,
                group_pip_commissions = EXCLUDED.group_pip_commissions,
                approved_at = COALESCE(ib_brokers.approved_at, EXCLUDED.approved_at),
                updated_at = NOW()
            """,
            (
                user_id,
                status,
                level,
                referrer_ib_id,
                root_master_id,
                Jsonb({str(k): str(v) for k, v in rate_table.items()}),
                status,
            ),
        )


def get_approved_brokers(conn: Connection) -> List[Broker]:
    """
    approved, non-banned brokers with their rate tables.
    """
    with conn.cursor() as cur:
        cur.execute(
            """
            SELECT u.id, u.referral_code, b.ib_level, b.referrer_ib_id,
                   b.root_master_id, b.group_pip_commissions
            FROM ib_brokers b
            JOIN users u ON u.id = b.user_id
            WHERE b.status = 'approved' AND u.is_banned = FALSE
            ORDER BY u.id
            """
        )
        rows = cur.fetchall()

    return [
        Broker(
            user_id=r[0],
            referral_code=r[1],
            level=r[2],
            referrer_id=r[3],
            root_master_id=r[4],
            rate_table=dict(r[5] or {}),
        )
        for r in rows
    ]


def get_broker_parents(conn: Connection) -> Dict[int, Optional[int]]:
    """
    parent link for every broker record, approved or not, so chains can be
    walked straight through deactivated brokers.
    """
    with conn.cursor() as cur:
        cur.execute("SELECT user_id, referrer_ib_id FROM ib_brokers")
        return {r[0]: r[1] for r in cur.fetchall()}


def get_users_referred_by(conn: Connection, referral_code: str) -> List[Dict[str, Any]]:
    """
    users whose referred_by equals `referral_code`, flagged when they are
    themselves approved (and not banned) brokers.
    """
    with conn.cursor() as cur:
        cur.execute(
            """
            SELECT u.id,
                   u.referral_code,
                   (b.user_id IS NOT NULL AND b.status = 'approved' AND NOT u.is_banned)
            FROM users u
            LEFT JOIN ib_brokers b ON b.user_id = u.id
            WHERE u.referred_by = %s
            ORDER BY u.id
            """,
            (referral_code,),
        )
        rows = cur.fetchall()

    return [
        {"user_id": r[0], "referral_code": r[1], "is_broker": bool(r[2])}
        for r in rows
    ]


def get_trading_accounts_for(conn: Connection, user_id: int) -> List[TradingAccount]:
    """live (non-demo) MT5 accounts of a user."""
    with conn.cursor() as cur:
        cur.execute(
            """
            SELECT account_number, group_id
            FROM trading_accounts
            WHERE user_id = %s AND platform = 'MT5' AND is_demo = FALSE
            ORDER BY id
            """,
            (user_id,),
        )
        rows = cur.fetchall()

    return [TradingAccount(login=r[0], group_id=str(r[1])) for r in rows]


def lock_broker_balance(conn: Connection, ib_id: int) -> Decimal:
    """
    row-lock the broker's balance for the rest of the current transaction.
    """
    with conn.cursor() as cur:
        cur.execute(
            "SELECT balance FROM ib_brokers WHERE user_id = %s FOR UPDATE",
            (ib_id,),
        )
        row = cur.fetchone()
        if row is None:
            raise ValueError(f"Broker {ib_id} not found")
        return row[0]


def insert_ledger_entry_if_absent(conn: Connection, entry: LedgerEntry) -> bool:
    """
    insert one ib_commissions row unless (trade_ticket, ib_id) is already there.
    returns True when a row was inserted.
    """
    with conn.cursor() as cur:
        cur.execute(
            """
            INSERT INTO ib_commissions (
                ib_id, client_id, mt5_account_id, trade_ticket, symbol,
                lots, profit, commission_amount, group_id, pip_rate,
                pip_value, trade_open_time, trade_close_time, duration_seconds,
                status, exclusion_reason, commission_level, is_override
            ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            ON CONFLICT (trade_ticket, ib_id) DO NOTHING
            RETURNING id
            """,
            (
                entry.ib_id,
                entry.client_id,
                entry.login,
                entry.trade_ticket,
                entry.symbol,
                entry.lots,
                entry.profit,
                entry.commission_amount,
                entry.group_id,
                entry.pip_rate,
                entry.pip_value,
                entry.open_time,
                entry.close_time,
                entry.duration_seconds,
                entry.status,
                entry.exclusion_reason,
                entry.commission_level,
                entry.is_override,
            ),
        )
        return cur.fetchone() is not None


def credit_balance(conn: Connection, ib_id: int, amount: Decimal) -> None:
    if amount < 0:
        raise ValueError(f"Refusing to credit negative amount {amount} to broker {ib_id}")

    with conn.cursor() as cur:
        cur.execute(
            """
            UPDATE ib_brokers
            SET balance = balance + %s,
                updated_at = NOW()
            WHERE user_id = %s
            """,
            (amount, ib_id),
        )
        if cur.rowcount != 1:
            raise ValueError(f"Failed to credit balance for broker {ib_id}")


def get_broker_balance(conn: Connection, ib_id: int) -> Decimal:
    with conn.cursor() as cur:
        cur.execute("SELECT balance FROM ib_brokers WHERE user_id = %s", (ib_id,))
        row = cur.fetchone()
        if row is None:
            raise ValueError(f"Broker {ib_id} not found")
        return row[0]


def get_ledger_entries(
    conn: Connection,
    ib_id: int,
    limit: int = 50,
) -> List[Dict[str, Any]]:
    """
    most recent ledger entries for a broker, newest first.
    """
    with conn.cursor() as cur:
        cur.execute(
            """
            SELECT trade_ticket, client_id, mt5_account_id, symbol, lots,
                   commission_amount, group_id, pip_rate, pip_value,
                   duration_seconds, status, exclusion_reason,
                   commission_level, is_override, trade_close_time
            FROM ib_commissions
            WHERE ib_id = %s
            ORDER BY trade_close_time DESC NULLS LAST, id DESC
            LIMIT %s
            """,
            (ib_id, limit),
        )
        rows = cur.fetchall()

    return [
        {
            "trade_ticket": r[0],
            "client_id": r[1],
            "login": r[2],
            "symbol": r[3],
            "lots": r[4],
            "commission_amount": r[5],
            "group_id": r[6],
            "pip_rate": r[7],
            "pip_value": r[8],
            "duration_seconds": r[9],
            "status": r[10],
            "exclusion_reason": r[11],
            "commission_level": r[12],
            "is_override": r[13],
            "trade_close_time": r[14],
        }
        for r in rows
    ]


def get_user_by_referral_code(conn: Connection, referral_code: str) -> int:
    """
    return user_id for a given referral_code.
    """
    with conn.cursor() as cur:
        cur.execute(
            "SELECT id FROM users WHERE referral_code = %s",
            (referral_code,),
        )
        row = cur.fetchone()
        if row is None:
            raise ValueError(f"No user found with referral_code={referral_code}")
        return row[0]


def get_user_referred_by(conn: Connection, user_id: int) -> Optional[str]:
    """
    fetch the referral code the user signed up with, or None.
    """
    with conn.cursor() as cur:
        cur.execute(
            "SELECT referred_by FROM users WHERE id = %s",
            (user_id,),
        )
        row = cur.fetchone()
        if row is None:
            raise ValueError(f"User {user_id} not found")
        return row[0]


def get_user_referral_code(conn: Connection, user_id: int) -> str:
    with conn.cursor() as cur:
        cur.execute("SELECT referral_code FROM users WHERE id = %s", (user_id,))
        row = cur.fetchone()
        if row is None:
            raise ValueError(f"User {user_id} not found")
        return row[0]


def set_user_referred_by(conn: Connection, child_id: int, referral_code: str) -> None:
    """
    set referred_by for child. assumes all checks already done.
    """
    with conn.cursor() as cur:
        cur.execute(
            "UPDATE users SET referred_by = %s, updated_at = NOW() WHERE id = %s",
            (referral_code, child_id),
        )
        if cur.rowcount != 1:
            raise ValueError(f"Failed to update referrer for child {child_id}")
