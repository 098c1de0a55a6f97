import logging
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from config import config
from services.sync_errors import AlreadyRunningError
from services.sync_service import SyncService
from utils.structured_logging import sync_logger

logger = logging.getLogger("drive_mirror.scheduler")


class SchedulerService:
    def __init__(self):
        self.scheduler = AsyncIOScheduler()
        self.sync_service: Optional[SyncService] = None

    def start(self, sync_service: SyncService):
        """
        Start the scheduler and add jobs.
        """
        self.sync_service = sync_service
        if not self.scheduler.running:
            # Periodic full sync of the default scope
            self.scheduler.add_job(
                self.sync_drive_job,
                IntervalTrigger(minutes=config.SYNC_INTERVAL_MINUTES),
                id="sync_drive",
                replace_existing=True,
                max_instances=1,
                coalesce=True,
            )

            self.scheduler.start()
            logger.info("Scheduler started.", extra={"interval_minutes": config.SYNC_INTERVAL_MINUTES})

    def shutdown(self):
        if self.scheduler.running:
            self.scheduler.shutdown()
            logger.info("Scheduler stopped.")

    def sync_drive_job(self):
        """
        Job wrapper: starts a background run, or logs when one is already active.
        """
        if self.sync_service is None:
            logger.warning("Sync job skipped: scheduler started without a sync service")
            return

        try:
            handle = self.sync_service.start_run()
        except AlreadyRunningError as e:
            sync_logger.info(
                action="scheduled_sync",
                status="skipped",
                message=str(e),
                run_id=e.run_id,
                scope=e.scope,
            )
            return
        except Exception as e:
            sync_logger.error(action="scheduled_sync", message="Error starting scheduled sync", error=e)
            return

        sync_logger.info(
            action="scheduled_sync",
            status="started",
            message="Scheduled Drive sync started",
            run_id=handle.run_id,
            scope=handle.scope,
        )


scheduler_service = SchedulerService()
