# portfolio_engine/main.py
"""
Worker entry point.

This file:
- Configures process-wide logging
- Creates missing tables
- Either runs the daily snapshot once or starts the daily scheduler

Usage:
    python -m portfolio_engine.main                    # scheduler, blocks
    python -m portfolio_engine.main --run-once         # previous business day
    python -m portfolio_engine.main --run-once --date 2024-03-05
"""

import argparse
import logging
import sys
import threading
from datetime import date

from portfolio_engine.config import settings
from portfolio_engine.database import check_database_health, create_tables
from portfolio_engine.dependencies import get_snapshot_scheduler
from portfolio_engine.utils import setup_logging

logger = logging.getLogger(__name__)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="Daily portfolio valuation snapshots"
    )
    parser.add_argument(
        "--run-once",
        action="store_true",
        help="Run the snapshot job once and exit instead of scheduling it",
    )
    parser.add_argument(
        "--date",
        type=date.fromisoformat,
        help="Reference 'today' (YYYY-MM-DD); the job values the previous business day. "
             "Only used with --run-once",
    )
    args = parser.parse_args(argv)
    if args.date is not None and not args.run_once:
        parser.error("--date requires --run-once")
    return args


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)

    setup_logging()
    logger.info(f"Starting valuation engine (environment={settings.environment})")

    health = check_database_health()
    if health["status"] != "healthy":
        logger.error(f"Database unavailable: {health.get('error')}")
        return 1
    create_tables()

    scheduler = get_snapshot_scheduler()

    if args.run_once:
        result = scheduler.run_now(today=args.date)
        logger.info(f"Snapshot run finished: {result.to_summary()}")
        return 0 if result.ok else 2

    if not scheduler.start():
        logger.warning("Scheduler not started; set DAILY_SNAPSHOT_ENABLED=true or use --run-once")
        return 0

    stop_event = threading.Event()
    try:
        stop_event.wait()
    except KeyboardInterrupt:
        logger.info("Interrupted, shutting down")
    finally:
        scheduler.stop()
    return 0


if __name__ == "__main__":
    sys.exit(main())
