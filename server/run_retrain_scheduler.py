#!/usr/bin/env python3
"""
CLI script to run the categorizer retrain scheduler

Usage:
    python run_retrain_scheduler.py          # run daily on the cron schedule
    python run_retrain_scheduler.py --once   # trigger one retrain and exit

Environment Variables:
    DATABASE_URL: PostgreSQL connection URL
    RETRAIN_CRON_HOUR / RETRAIN_CRON_MINUTE: Daily UTC schedule (default: 02:00)
    CATEGORIZER_MIN_NEW_FEEDBACK: New feedback needed before retraining (default: 10)
    CATEGORIZER_MIN_RETRAIN_SAMPLES: Verified samples needed to retrain (default: 50)
"""

import argparse
import asyncio
import logging

import asyncpg

from smart_categorizer import config
from smart_categorizer.database import set_db_pool
from smart_categorizer.scheduler.retrain_scheduler import RetrainScheduler
from smart_categorizer.services.categorizer import engine
from smart_categorizer.services.field_cipher import get_field_cipher
from smart_categorizer.services.store import PostgresCategorizationStore


async def main(run_once: bool):
    # Set up database connection
    try:
        pool = await asyncpg.create_pool(config.DATABASE_URL, min_size=1, max_size=5)
        set_db_pool(pool)
        print("✅ Database connection established")
    except Exception as e:
        print(f"❌ Database connection failed: {e}")
        return

    engine.set_store(PostgresCategorizationStore(pool, cipher=get_field_cipher()))
    scheduler = RetrainScheduler(engine, enabled=True)

    try:
        await engine.initialize()

        if run_once:
            report = await scheduler.run_retrain_job()
            if report:
                print(f"Retrain outcome: {report.outcome.value}")
            return

        await scheduler.start_scheduler()
        print("🕒 Retrain Scheduler running. Press Ctrl+C to stop.")
        await asyncio.Event().wait()
    except (KeyboardInterrupt, asyncio.CancelledError):
        print("\n⏹️ Shutting down scheduler...")
    finally:
        await scheduler.stop_scheduler()
        await pool.close()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Categorizer Retrain Scheduler")
    parser.add_argument("--once", action="store_true", help="Trigger a single retrain and exit")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    asyncio.run(main(args.once))
