# /backend/scheduler.py

import asyncio
import logging
from datetime import datetime, timezone
from apscheduler.schedulers.asyncio import AsyncIOScheduler

from leadflow.config.settings import settings
from leadflow.jobs.followup_job import run_follow_up_sweep
from leadflow.utils.logging import setup_logging

logger = logging.getLogger("SchedulerService")


async def main():
    setup_logging()
    scheduler = AsyncIOScheduler(timezone=settings.scheduler_timezone)

    async def run_follow_ups():
        # Fresh timestamp per run for the elapsed-time windows
        await run_follow_up_sweep(datetime.now(timezone.utc))

    scheduler.add_job(
        run_follow_ups,
        'interval',
        minutes=settings.follow_up_sweep_interval_minutes,
        id="follow_up_sweep_job",
        max_instances=1,
        coalesce=True,
        replace_existing=True
    )
    logger.info(f"Scheduled job: follow-up sweep (every {settings.follow_up_sweep_interval_minutes} minutes).")

    scheduler.start()
    logger.info("Scheduler started successfully. Press Ctrl+C to exit.")

    # This loop keeps the script running forever
    try:
        while True:
            await asyncio.sleep(3600)
    except (KeyboardInterrupt, SystemExit):
        scheduler.shutdown()

if __name__ == "__main__":
    asyncio.run(main())
