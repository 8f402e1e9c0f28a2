"""Background job scheduler for escrow auto-release and quality assessment sweeps"""

import asyncio
import logging
from datetime import datetime
from typing import Optional

from apscheduler.executors.asyncio import AsyncIOExecutor
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from config import Config
from services.auto_release_service import (
    AutoReleaseService,
    AutoReleaseSweepResult,
    QualityAutoApprovalResult,
)

logger = logging.getLogger(__name__)


class AutoReleaseScheduler:
    """Periodic sweeps over held escrows"""

    def __init__(self, scheduler: Optional[AsyncIOScheduler] = None):
        jobstores = {
            'default': MemoryJobStore()
        }
        executors = {
            'default': AsyncIOExecutor()
        }
        job_defaults = {
            'coalesce': True,  # A late sweep covers the ones it missed
            'max_instances': 1,
            'misfire_grace_time': 120
        }

        self.scheduler = scheduler or AsyncIOScheduler(
            jobstores=jobstores,
            executors=executors,
            job_defaults=job_defaults,
            timezone='UTC'
        )

    def setup_jobs(self):
        """Register sweeps; safe to call again after a reload"""
        for job_id in ("escrow_auto_release", "quality_reminders", "quality_auto_approval"):
            if self.scheduler.get_job(job_id):
                self.scheduler.remove_job(job_id)
                logger.info(f"🧹 Removed existing {job_id} job before re-registering")

        if Config.AUTO_RELEASE_ENABLED:
            self.scheduler.add_job(
                self.run_auto_release,
                trigger=IntervalTrigger(minutes=Config.AUTO_RELEASE_SWEEP_MINUTES),
                id="escrow_auto_release",
                name="Escrow Auto-Release Sweep",
                max_instances=1,
                coalesce=True,
            )
        else:
            logger.warning("⚠️ Escrow auto-release disabled by configuration")

        self.scheduler.add_job(
            self.run_quality_reminders,
            trigger=IntervalTrigger(minutes=Config.QUALITY_REMINDER_SWEEP_MINUTES),
            id="quality_reminders",
            name="Quality Assessment Reminders",
            max_instances=1,
            coalesce=True,
        )
        self.scheduler.add_job(
            self.run_quality_auto_approval,
            trigger=IntervalTrigger(minutes=Config.QUALITY_REMINDER_SWEEP_MINUTES),
            id="quality_auto_approval",
            name="Quality Assessment Auto-Approval",
            max_instances=1,
            coalesce=True,
        )

    async def run_auto_release(self, now: Optional[datetime] = None) -> Optional[AutoReleaseSweepResult]:
        """Run one auto-release sweep off the event loop"""
        try:
            return await asyncio.to_thread(AutoReleaseService.process_auto_release, now)
        except Exception as e:
            logger.error(f"❌ Error in auto-release sweep: {e}", exc_info=True)
            return None

    async def run_quality_reminders(self, now: Optional[datetime] = None) -> int:
        try:
            return await asyncio.to_thread(AutoReleaseService.send_quality_reminders, now)
        except Exception as e:
            logger.error(f"❌ Error in quality reminder sweep: {e}", exc_info=True)
            return 0

    async def run_quality_auto_approval(
        self, now: Optional[datetime] = None
    ) -> Optional[QualityAutoApprovalResult]:
        try:
            return await asyncio.to_thread(AutoReleaseService.process_quality_auto_approval, now)
        except Exception as e:
            logger.error(f"❌ Error in quality auto-approval sweep: {e}", exc_info=True)
            return None

    def start(self):
        self.setup_jobs()
        self.scheduler.start()
        logger.info("✅ Auto-release scheduler started")

    def shutdown(self, wait: bool = False):
        if self.scheduler.running:
            self.scheduler.shutdown(wait=wait)
        logger.info("✅ Auto-release scheduler stopped")


__all__ = ["AutoReleaseScheduler"]
