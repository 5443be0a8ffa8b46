"""APScheduler setup for recurring maintenance jobs"""

from typing import Any, Dict, List, Optional

from apscheduler.executors.asyncio import AsyncIOExecutor
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from filevault.utils.logger import get_logger

logger = get_logger(__name__)


class SchedulerService:
    """Owns the AsyncIOScheduler running the storage maintenance jobs"""

    def __init__(self):
        self.scheduler: Optional[AsyncIOScheduler] = None
        self.running = False

    def initialize(self):
        """Create the scheduler (jobs are kept in memory only)"""
        try:
            self.scheduler = AsyncIOScheduler(
                jobstores={"default": MemoryJobStore()},
                executors={"default": AsyncIOExecutor()},
                job_defaults={
                    "coalesce": True,
                    "max_instances": 1,
                    "misfire_grace_time": 300,
                },
                timezone="UTC",
            )
            logger.info("Scheduler initialized")
        except Exception as e:
            logger.error(f"Failed to initialize scheduler: {e}")
            raise

    def _require(self) -> AsyncIOScheduler:
        if not self.scheduler:
            raise RuntimeError("Scheduler not initialized. Call initialize() first.")
        return self.scheduler

    def start(self):
        scheduler = self._require()
        try:
            scheduler.start()
            self.running = True
            logger.info("Scheduler started")
        except Exception as e:
            logger.error(f"Failed to start scheduler: {e}")
            raise

    def stop(self):
        """Shut down without waiting for running jobs"""
        if not (self.scheduler and self.running):
            return
        try:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
        except Exception as e:
            logger.error(f"Failed to stop scheduler: {e}")
        finally:
            self.running = False

    def add_job(self, func, trigger, job_id: Optional[str] = None, **kwargs):
        """Register (or replace) a job and return it"""
        scheduler = self._require()
        job = scheduler.add_job(func, trigger=trigger, id=job_id, replace_existing=True, **kwargs)
        logger.info(f"Job scheduled: {job.id} ({trigger})")
        return job

    def add_interval_job(self, func, minutes: int, job_id: Optional[str] = None, **kwargs):
        return self.add_job(func, IntervalTrigger(minutes=minutes), job_id=job_id, **kwargs)

    def add_cron_job(self, func, hour: int = 0, minute: int = 0, job_id: Optional[str] = None, **kwargs):
        return self.add_job(func, CronTrigger(hour=hour, minute=minute), job_id=job_id, **kwargs)

    def get_jobs(self) -> list:
        if not self.scheduler:
            return []
        return self.scheduler.get_jobs()

    def describe_jobs(self) -> List[Dict[str, Any]]:
        """Job ids with their next run time, for the health endpoint"""
        return [
            {
                "id": job.id,
                "next_run_time": job.next_run_time.isoformat() if getattr(job, "next_run_time", None) else None,
            }
            for job in self.get_jobs()
        ]


# Global scheduler instance
scheduler = SchedulerService()
