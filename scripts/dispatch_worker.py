#!/usr/bin/env python3
"""
Trigger memory processing dispatch.

Runs one dispatch pass and waits for its processors (suitable for cron), or
keeps dispatching every ``--interval`` seconds.

Usage:
  python scripts/dispatch_worker.py
  python scripts/dispatch_worker.py --interval 30 --db memories.db
"""

import argparse
import asyncio
import logging
import sys
from pathlib import Path

# Add project root to Python path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from database import DatabaseManager, get_db_manager
from error_monitoring import capture_error, setup_logging
from services.memory_repository import MemoryRepository
from services.processing_dispatcher import DispatchSummary, ProcessingDispatcher
from services.processing_queue import ProcessingQueue

logger = logging.getLogger("memories.dispatch_worker")


async def run_once(dispatcher: ProcessingDispatcher) -> DispatchSummary:
    summary = await dispatcher.dispatch(wait=True)
    logger.info("Dispatch summary: %s", summary.to_dict())
    return summary


async def run_worker(dispatcher: ProcessingDispatcher, interval: float) -> None:
    logger.info("Dispatch worker started (every %ss)", interval)
    while True:
        try:
            await run_once(dispatcher)
        except Exception as exc:
            capture_error(exc, "dispatch", {"trigger": "worker"})
        await asyncio.sleep(interval)


def main(argv=None) -> int:
    ap = argparse.ArgumentParser(description="Dispatch scheduled memory processing jobs")
    ap.add_argument("--db", default=None, help="Path to the memories SQLite DB")
    ap.add_argument("--interval", type=float, default=0, help="Loop every N seconds (0 = run once)")
    args = ap.parse_args(argv)

    setup_logging()
    db = DatabaseManager(args.db) if args.db else get_db_manager()
    db.initialize_database()
    repository = MemoryRepository(db)
    dispatcher = ProcessingDispatcher(repository, ProcessingQueue(db))

    try:
        if args.interval > 0:
            asyncio.run(run_worker(dispatcher, args.interval))
        else:
            asyncio.run(run_once(dispatcher))
    except KeyboardInterrupt:
        logger.info("Dispatch worker stopped")
    finally:
        db.close_all_connections()
    return 0


if __name__ == "__main__":
    sys.exit(main())
