"""Background scheduler for periodic sync"""

import logging

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from jirasync.config import settings
from jirasync.exceptions import SyncInProgressError
from jirasync.models.base import SessionLocal
from jirasync.services.sync_service import run_from_files

logger = logging.getLogger(__name__)

JOB_ID = "sync_all_projects"


class SyncScheduler:
    """Scheduler for periodic issue synchronization"""

    def __init__(self):
        self.scheduler = BackgroundScheduler()

    def start(self, interval_minutes: int = None):
        """Start the scheduler"""
        self.scheduler.start()
        logger.info("Sync scheduler started")
        self.schedule(interval_minutes or settings.sync_interval_minutes)

    def stop(self):
        """Stop the scheduler"""
        if self.scheduler.running:
            self.scheduler.shutdown()
        logger.info("Sync scheduler stopped")

    def schedule(self, interval_minutes: int):
        """(Re)schedule the sync job"""
        self.scheduler.add_job(
            func=self._sync_job,
            trigger=IntervalTrigger(minutes=interval_minutes),
            id=JOB_ID,
            replace_existing=True,
            max_instances=1,
        )
        logger.info(f"Scheduled sync every {interval_minutes} minutes")

    def _sync_job(self):
        """Job function running one sync pass"""
        db = SessionLocal()
        try:
            logger.info("Running scheduled sync")
            result = run_from_files(db, settings)
            logger.info(
                f"Scheduled sync completed: "
                f"{[(p.name, p.status.value, p.next_watermark) for p in result.projects]}"
            )
        except SyncInProgressError:
            logger.info("Skipping scheduled sync, a pass is already running")
        except Exception as e:
            logger.error(f"Scheduled sync failed: {e}")
        finally:
            db.close()


# Global scheduler instance
scheduler = SyncScheduler()
