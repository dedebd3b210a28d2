"""Background job scheduler for the DealPact Escrow Bot"""

import logging
from datetime import datetime

from apscheduler.executors.asyncio import AsyncIOExecutor
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from config import Config
from jobs.deal_reconciliation import DealReconciler

logger = logging.getLogger(__name__)


class DealScheduler:
    """Runs the reconciliation loop on a fixed interval, one instance at a time"""

    def __init__(self, reconciler: DealReconciler, interval_seconds: int = None):
        self.reconciler = reconciler
        self.interval_seconds = interval_seconds or Config.RECONCILIATION_INTERVAL_SECONDS

        jobstores = {
            'default': MemoryJobStore()
        }
        executors = {
            'default': AsyncIOExecutor()
        }
        job_defaults = {
            'coalesce': True,  # Prevent job pileup
            'max_instances': 1,  # Single instance enforcement
            'misfire_grace_time': self.interval_seconds
        }

        self.scheduler = AsyncIOScheduler(
            jobstores=jobstores,
            executors=executors,
            job_defaults=job_defaults,
            timezone='UTC'
        )

    def setup_jobs(self):
        """Register the reconciliation job"""
        for job in self.scheduler.get_jobs():
            self.scheduler.remove_job(job.id)
            logger.info(f"🧹 Removed existing job: {job.id}")

        self.scheduler.add_job(
            self.reconciler.run_tick,
            trigger=IntervalTrigger(seconds=self.interval_seconds, start_date=datetime.now().replace(microsecond=0)),
            id="deal_reconciliation",
            name="⛓️ Deal Reconciliation - Ledger Sync, Reminders & Pending Writes",
            max_instances=1,
            coalesce=True,
            replace_existing=True
        )
        logger.info(f"✅ Deal Reconciliation scheduled every {self.interval_seconds} seconds")

    def start(self):
        self.setup_jobs()
        self.scheduler.start()
        logger.info("✅ SCHEDULER ENABLED: deal reconciliation running")

    def stop(self):
        """Stop the scheduler"""
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        logger.info("📴 Deal scheduler stopped")
