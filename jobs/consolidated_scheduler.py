"""
Consolidated Background Job Scheduler

Three jobs on one AsyncIOScheduler:
1. Stuck Transaction Sweeper - TSQ reconciliation, then pending timeouts (every 5 minutes)
2. Completion Recovery - processing keys whose in-process task was lost (every minute)
3. Monthly Maintenance Fee - day 1 at 03:00 in the scheduler timezone
"""

import logging
from datetime import datetime

from apscheduler.executors.asyncio import AsyncIOExecutor
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from config import Config
from jobs.completion_worker import recover_processing_keys
from jobs.monthly_maintenance_fee import run_monthly_maintenance_fee
from jobs.stuck_transaction_sweeper import run_stuck_transaction_sweeper

logger = logging.getLogger(__name__)


async def run_completion_recovery() -> None:
    try:
        recovered = await recover_processing_keys()
        if recovered:
            logger.warning(f"🩹 COMPLETION_RECOVERY: recovered={recovered}")
    except Exception as e:
        logger.error(f"❌ COMPLETION_RECOVERY_FAILED: {type(e).__name__}: {e}", exc_info=True)


class ConsolidatedScheduler:
    """
    Scheduling Strategy:
    - Sweeper: every SWEEPER_INTERVAL_MINUTES
    - Completion recovery: every minute
    - Maintenance fee: cron MAINTENANCE_FEE_DAY / MAINTENANCE_FEE_HOUR
    """

    def __init__(self, timezone: str = None):
        jobstores = {
            'default': MemoryJobStore()
        }
        executors = {
            'default': AsyncIOExecutor()
        }
        job_defaults = {
            'coalesce': True,  # Prevent job pileup
            'max_instances': 1,  # Single instance enforcement
            'misfire_grace_time': 120
        }
        self.timezone = timezone or Config.SCHEDULER_TIMEZONE
        self.scheduler = AsyncIOScheduler(
            jobstores=jobstores,
            executors=executors,
            job_defaults=job_defaults,
            timezone=self.timezone
        )

    def setup_jobs(self):
        for job in self.scheduler.get_jobs():
            self.scheduler.remove_job(job.id)
            logger.info(f"🧹 Removed existing job: {job.id}")

        # ===== JOB 1: STUCK TRANSACTION SWEEPER =====
        self.scheduler.add_job(
            run_stuck_transaction_sweeper,
            trigger=IntervalTrigger(
                minutes=Config.SWEEPER_INTERVAL_MINUTES,
                start_date=datetime.now().replace(second=15, microsecond=0),
            ),
            id="stuck_transaction_sweeper",
            name="🧹 Stuck Transaction Sweeper - TSQ & Timeouts",
            replace_existing=True
        )
        logger.info(f"✅ Stuck Transaction Sweeper scheduled every {Config.SWEEPER_INTERVAL_MINUTES} minutes")

        # ===== JOB 2: COMPLETION RECOVERY =====
        self.scheduler.add_job(
            run_completion_recovery,
            trigger=IntervalTrigger(minutes=1, start_date=datetime.now().replace(second=45, microsecond=0)),
            id="completion_recovery",
            name="🩹 Completion Recovery - Orphaned Processing Keys",
            replace_existing=True
        )
        logger.info("✅ Completion Recovery scheduled every minute")

        # ===== JOB 3: MONTHLY MAINTENANCE FEE =====
        self.scheduler.add_job(
            run_monthly_maintenance_fee,
            trigger=CronTrigger(
                day=Config.MAINTENANCE_FEE_DAY,
                hour=Config.MAINTENANCE_FEE_HOUR,
                minute=0,
                timezone=self.timezone,
            ),
            id="monthly_maintenance_fee",
            name="🧾 Monthly Maintenance Fee",
            misfire_grace_time=3600,
            replace_existing=True
        )
        logger.info(
            f"✅ Monthly Maintenance Fee scheduled: day {Config.MAINTENANCE_FEE_DAY} "
            f"at {Config.MAINTENANCE_FEE_HOUR:02d}:00 {self.timezone}"
        )

    def start(self):
        self.setup_jobs()
        self.scheduler.start()
        for job in self.scheduler.get_jobs():
            logger.info(f"   - {job.name}: next run {job.next_run_time}")

    def stop(self):
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        logger.info("📴 Consolidated job scheduler stopped")


_global_scheduler = None


def get_consolidated_scheduler_instance() -> ConsolidatedScheduler:
    global _global_scheduler
    if _global_scheduler is None:
        _global_scheduler = ConsolidatedScheduler()
    return _global_scheduler


__all__ = [
    "ConsolidatedScheduler",
    "get_consolidated_scheduler_instance",
    "run_completion_recovery",
]
