"""
Batch entry point: run the IB commission sync now (--once) or on an interval.
"""

import argparse
import signal
from datetime import datetime, timezone

from apscheduler.schedulers.blocking import BlockingScheduler
from loguru import logger

from config import Settings, get_settings
from log import setup_logging
from sync_engine import build_context, run_sync


def sync_job(settings: Settings) -> None:
    """one scheduled run; a fresh context per run, nothing outlives it."""
    ctx = build_context(settings)
    try:
        run_sync(ctx)
    except Exception:
        logger.exception("IB commission sync run failed")


def build_scheduler(settings: Settings) -> BlockingScheduler:
    scheduler = BlockingScheduler(timezone=timezone.utc)
    scheduler.add_job(
        sync_job,
        "interval",
        minutes=settings.sync_interval_minutes,
        args=[settings],
        id="ib_commission_sync",
        max_instances=1,
        coalesce=True,
        next_run_time=datetime.now(timezone.utc),
    )
    return scheduler


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="IB commission distribution sync")
    parser.add_argument("--once", action="store_true", help="run a single sync and exit")
    args = parser.parse_args(argv)

    settings = get_settings()
    setup_logging(settings)

    if args.once:
        report = run_sync(build_context(settings))
        return 1 if report.failed_brokers else 0

    scheduler = build_scheduler(settings)

    def _stop(signum, frame):
        logger.info(f"Received signal {signum}, shutting down scheduler")
        scheduler.shutdown(wait=False)

    signal.signal(signal.SIGTERM, _stop)
    logger.info(f"IB commission sync scheduled every {settings.sync_interval_minutes} minutes")
    scheduler.start()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
