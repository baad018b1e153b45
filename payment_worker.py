#!/usr/bin/env python3
"""
Payment Worker - Standalone process for recurring payment collection

Runs the collection loop until the process is stopped. Configuration comes
from the environment (or .env); see config.Settings.

Usage:
    python payment_worker.py run
    python payment_worker.py once
    python payment_worker.py init-db
    python payment_worker.py pending
"""

import argparse
import asyncio
import json
import sys
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent))

from config import load_settings
from collector.database import create_ledger_engine, init_db
from collector.errors import ConfigurationError
from collector.resilience import PendingReconciliationQueue
from collector.runner import build_runner
from utils.logger import logger, set_log_level


def cmd_run(settings) -> int:
    runner = build_runner(settings)
    logger.info(f"Starting payment collector: {json.dumps(settings.describe())}")
    try:
        asyncio.run(runner.run_forever())
    except KeyboardInterrupt:
        logger.info("Payment collector stopped")
    return 0


def cmd_once(settings) -> int:
    runner = build_runner(settings)
    report = asyncio.run(runner.run_cycle())
    print(json.dumps(report.to_dict(), indent=2))
    return 0


def cmd_init_db(settings) -> int:
    engine = create_ledger_engine(settings.DATABASE_URL)
    init_db(engine)
    logger.info("Ledger tables created")
    return 0


def cmd_pending(settings) -> int:
    if not settings.PENDING_RECONCILIATION_PATH:
        print(json.dumps({"size": 0, "storage_path": None, "requests": []}, indent=2))
        return 0
    queue = PendingReconciliationQueue(Path(settings.PENDING_RECONCILIATION_PATH))
    print(json.dumps(queue.get_queue_status(), indent=2))
    return 0


COMMANDS = {
    "run": cmd_run,
    "once": cmd_once,
    "init-db": cmd_init_db,
    "pending": cmd_pending,
}


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(
        description="Autiv recurring payment collector",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python payment_worker.py run
  python payment_worker.py once --verbose
  python payment_worker.py init-db
        """
    )
    parser.add_argument(
        "command",
        choices=sorted(COMMANDS),
        help="run: collect forever; once: single cycle; init-db: create ledger tables; "
             "pending: show queued reconciliations"
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Enable debug logging"
    )
    args = parser.parse_args(argv)

    try:
        settings = load_settings()
    except ConfigurationError as e:
        logger.error(str(e))
        return 2

    set_log_level("DEBUG" if args.verbose else settings.LOG_LEVEL)
    return COMMANDS[args.command](settings)


if __name__ == "__main__":
    sys.exit(main())
