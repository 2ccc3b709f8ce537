"""
Model Retrain Scheduler

Periodically triggers the categorizer's retraining pipeline:
- Runs daily on a cron schedule (default: 02:00 UTC)
- The pipeline itself decides whether there is enough new feedback to retrain
- Environment flag to disable in local development
"""

import logging
from typing import Any, Dict, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from .. import config
from ..models import RetrainReport
from ..services import categorizer

logger = logging.getLogger(__name__)

JOB_ID = "categorizer_retrain"


class RetrainScheduler:
    """Cron scheduler for classifier retraining"""

    def __init__(self, engine=None, enabled: Optional[bool] = None,
                 hour: Optional[int] = None, minute: Optional[int] = None):
        self.engine = engine or categorizer.engine
        self.scheduler: Optional[AsyncIOScheduler] = None
        self.running = False

        # Configuration from environment
        self.enabled = config.RETRAIN_SCHEDULER_ENABLED if enabled is None else enabled
        self.hour = config.RETRAIN_CRON_HOUR if hour is None else hour
        self.minute = config.RETRAIN_CRON_MINUTE if minute is None else minute

        logger.info(f"Retrain Scheduler configured: enabled={self.enabled}, "
                    f"daily at {self.hour:02d}:{self.minute:02d} UTC")

    def build_trigger(self) -> CronTrigger:
        return CronTrigger(hour=self.hour, minute=self.minute, timezone="UTC")

    async def run_retrain_job(self) -> Optional[RetrainReport]:
        """Job function called by the scheduler"""
        logger.info("⏰ Running scheduled model retrain check...")

        try:
            report = await self.engine.retrain_model()
        except Exception as e:
            logger.error(f"❌ Retrain job failed: {e}")
            return None

        logger.info(f"Retrain job finished: {report.outcome.value} "
                    f"(new feedback: {report.new_feedback}, samples: {report.sample_count})")
        return report

    async def start_scheduler(self):
        """Start the APScheduler-based scheduler"""
        if not self.enabled:
            logger.info("Retrain Scheduler is disabled (RETRAIN_SCHEDULER_ENABLED=false)")
            return

        logger.info(f"🚀 Starting Retrain Scheduler (daily at {self.hour:02d}:{self.minute:02d} UTC)")

        try:
            self.scheduler = AsyncIOScheduler(timezone="UTC")

            self.scheduler.add_job(
                self.run_retrain_job,
                trigger=self.build_trigger(),
                id=JOB_ID,
                name='Categorizer Model Retrain',
                replace_existing=True,
                max_instances=1,
                coalesce=True,
            )

            self.scheduler.start()
            self.running = True

            logger.info("✅ Retrain Scheduler started successfully")

        except Exception as e:
            logger.error(f"❌ Failed to start Retrain Scheduler: {e}")
            raise

    async def stop_scheduler(self):
        """Stop the scheduler"""
        logger.info("🛑 Stopping Retrain Scheduler...")

        self.running = False

        if self.scheduler:
            self.scheduler.shutdown(wait=False)
            self.scheduler = None

        logger.info("✅ Retrain Scheduler stopped")

    def get_scheduler_stats(self) -> Dict[str, Any]:
        """Get scheduler statistics"""
        stats = {
            "enabled": self.enabled,
            "running": self.running,
            "cron": f"{self.minute} {self.hour} * * *",
            "next_run": None,
        }

        if self.scheduler and self.running:
            job = self.scheduler.get_job(JOB_ID)
            if job and job.next_run_time:
                stats["next_run"] = job.next_run_time.isoformat()

        return stats
