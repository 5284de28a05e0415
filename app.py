from typing import Dict, Any

from fastapi import Depends, FastAPI, HTTPException, Query
from loguru import logger
from pydantic import BaseModel, Field

from config import MAX_REFERRAL_DEPTH, Settings, get_settings
from db.db import get_conn
from db.repositories import (
    get_broker_balance,
    get_ledger_entries,
    get_user_referral_code,
    get_users_referred_by,
)
from referral_db import register_referral_db
from referral_engine import group_by_depth, walk_referrals
from sync_engine import SyncContext, build_context, run_sync


app = FastAPI(title="IB Commission Engine", version="0.1.0")


# ---------
# pydantic models (requests)
# ---------

class ReferralRegisterRequest(BaseModel):
    child_user_id: int = Field(..., description="ID of the user being referred")
    referral_code: str = Field(..., description="Referral code used on signup")


# ---------
# dependencies
# ---------

def get_sync_context(settings: Settings = Depends(get_settings)) -> SyncContext:
    return build_context(settings)


def _fmt(value) -> str:
    return f"{value:.8f}"


# ---------
# endpoints
# ---------


@app.post("/api/referral/register")
def referral_register(payload: ReferralRegisterRequest, settings: Settings = Depends(get_settings)):
    """
    attach a user to a referrer using a referral_code.
    wraps register_referral_db and normalizes errors into HTTP 400s.
    """
    try:
        return register_referral_db(
            settings.database_dsn,
            child_id=payload.child_user_id,
            referral_code=payload.referral_code,
        )
    except ValueError as e:
        # business rule violations (already has referrer, invalid code, cycle, etc.)
        raise HTTPException(status_code=400, detail=str(e))
    except Exception:
        logger.exception("Referral registration failed")
        raise HTTPException(status_code=500, detail="Internal server error")


@app.post("/api/ib/commissions/sync")
def commissions_sync(ctx: SyncContext = Depends(get_sync_context)):
    """
    run one commission sync right now (the scheduler does this periodically).
    safe to call at any time: already posted trades are skipped.
    """
    try:
        report = run_sync(ctx)
    except Exception:
        logger.exception("Manual IB commission sync failed")
        raise HTTPException(status_code=500, detail="Internal server error")
    return report.as_dict()


@app.get("/api/ib/network")
def ib_network(
    user_id: int = Query(..., description="Root user ID whose referral tree we want"),
    max_levels: int = Query(3, ge=1, le=MAX_REFERRAL_DEPTH, description="How many levels deep to walk"),
    settings: Settings = Depends(get_settings),
):
    """
    return the user's referral tree, level by level:
    {"user_id": 1, "max_levels": 3, "levels": [{"level": 1, "users": [...]}, ...]}
    """
    with get_conn(settings.database_dsn) as conn:
        try:
            code = get_user_referral_code(conn, user_id)
        except ValueError as e:
            raise HTTPException(status_code=404, detail=str(e))

        accounts = walk_referrals(
            code,
            lambda c: get_users_referred_by(conn, c),
            max_depth=max_levels,
        )

    return {
        "user_id": user_id,
        "max_levels": max_levels,
        "levels": group_by_depth(accounts),
    }


@app.get("/api/ib/commissions")
def ib_commissions(
    user_id: int = Query(..., description="Broker user ID"),
    limit: int = Query(50, ge=1, le=500, description="Max number of entries to return"),
    settings: Settings = Depends(get_settings),
):
    """latest ledger entries for a broker, newest first."""
    with get_conn(settings.database_dsn) as conn:
        rows = get_ledger_entries(conn, user_id, limit=limit)

    entries = []
    for r in rows:
        entry: Dict[str, Any] = dict(r)
        for key in ("lots", "commission_amount", "pip_rate", "pip_value"):
            entry[key] = _fmt(entry[key])
        if entry["trade_close_time"] is not None:
            entry["trade_close_time"] = entry["trade_close_time"].isoformat()
        entries.append(entry)

    return {"user_id": user_id, "entries": entries}


@app.get("/api/ib/balance")
def ib_balance(
    user_id: int = Query(..., description="Broker user ID"),
    settings: Settings = Depends(get_settings),
):
    with get_conn(settings.database_dsn) as conn:
        try:
            balance = get_broker_balance(conn, user_id)
        except ValueError as e:
            raise HTTPException(status_code=404, detail=str(e))

    return {"user_id": user_id, "balance": _fmt(balance)}
