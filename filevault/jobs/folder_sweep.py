"""Storage maintenance jobs run by the scheduler"""

from filevault.config import Settings
from filevault.scheduler import SchedulerService
from filevault.services.cleanup_service import CleanupService
from filevault.utils.logger import get_logger

logger = get_logger(__name__)


async def sweep_empty_folders_job(cleanup: CleanupService):
    """Remove upload folders left empty by deletes or compression"""
    try:
        logger.debug("Starting empty folder sweep...")
        removed = await cleanup.cleanup_empty_folders()
        if removed == 0:
            logger.debug("No empty folders to clean up")
    except Exception as e:
        logger.error(f"Failed to sweep empty folders: {e}", exc_info=True)


async def cleanup_expired_files_job(cleanup: CleanupService):
    """Delete records (and their bytes) whose expiry has passed"""
    try:
        deleted = await cleanup.cleanup_expired_files()
        if deleted == 0:
            logger.debug("No expired files to clean up")
    except Exception as e:
        logger.error(f"Failed to clean up expired files: {e}", exc_info=True)


def schedule_storage_jobs(scheduler: SchedulerService, cleanup: CleanupService, config: Settings) -> None:
    """Register the maintenance jobs enabled in the configuration"""
    if config.cleanup_enabled:
        scheduler.add_interval_job(
            sweep_empty_folders_job,
            minutes=config.cleanup_interval_minutes,
            job_id="sweep_empty_folders",
            args=[cleanup],
        )
        logger.debug("Empty folder sweep scheduled")

    if config.expired_cleanup_enabled:
        scheduler.add_cron_job(
            cleanup_expired_files_job,
            hour=config.expired_cleanup_hour,
            minute=0,
            job_id="cleanup_expired_files",
            args=[cleanup],
        )
        logger.debug("Expired file cleanup scheduled")
