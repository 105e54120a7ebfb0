"""
Scheduler Service Module
Runs the default incremental sync per stream on a cron schedule (APScheduler)
"""

import asyncio
from typing import Dict, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from ..config import config
from ..exceptions import SyncInProgress, UnknownStream
from ..models.streams import STREAMS
from ..utils.logger import logger


def _job_id(stream: str) -> str:
    return f"sync_{stream}"


class SchedulerService:
    """Service for managing scheduled sync jobs"""

    def __init__(self):
        self.scheduler: Optional[AsyncIOScheduler] = None
        self.is_running = False
        self.schedules: Dict[str, str] = dict(config.scheduler.jobs)

    def start(self):
        """Start the scheduler and register every configured stream"""
        if self.scheduler is None:
            self.scheduler = AsyncIOScheduler(timezone="UTC")

        if not self.scheduler.running:
            self.scheduler.start()
            self.is_running = True
            logger.info("Scheduler started")

        for stream, crontab in self.schedules.items():
            self._add_sync_job(stream, crontab)

    def stop(self):
        """Stop the scheduler"""
        if self.scheduler and self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            self.is_running = False
            logger.info("Scheduler stopped")

    def get_status(self) -> Dict:
        """Get scheduler status"""
        jobs = []
        if self.scheduler:
            for job in self.scheduler.get_jobs():
                next_run = job.next_run_time
                jobs.append({
                    "id": job.id,
                    "name": job.name,
                    "next_run": next_run.isoformat() if next_run else None
                })

        return {
            "is_running": self.is_running,
            "schedules": self.schedules,
            "jobs": jobs
        }

    def update_schedule(self, stream: str, crontab: Optional[str]) -> Dict:
        """Set or clear (crontab=None) the schedule of one stream"""
        if stream not in STREAMS:
            raise UnknownStream(stream)

        if crontab:
            CronTrigger.from_crontab(crontab)
            self.schedules[stream] = crontab
        else:
            self.schedules.pop(stream, None)

        if self.scheduler and self.scheduler.get_job(_job_id(stream)):
            self.scheduler.remove_job(_job_id(stream))

        if crontab and self.is_running:
            self._add_sync_job(stream, crontab)
            return {"status": "success", "message": f"Schedule for {stream} set to '{crontab}'"}
        if crontab:
            return {"status": "success", "message": f"Schedule for {stream} saved; scheduler not running"}
        return {"status": "success", "message": f"Schedule for {stream} disabled"}

    def _add_sync_job(self, stream: str, crontab: str):
        """Add sync job to scheduler"""
        if stream not in STREAMS:
            logger.warning(f"Ignoring schedule for unknown stream: {stream}")
            return

        self.scheduler.add_job(
            self._run_scheduled_sync,
            trigger=CronTrigger.from_crontab(crontab, timezone="UTC"),
            args=[stream],
            id=_job_id(stream),
            name=f"Incremental sync: {stream}",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        logger.info(f"Scheduled sync job added: {stream} at '{crontab}'")

    async def _run_scheduled_sync(self, stream: str):
        """Execute scheduled sync"""
        from .sync_service import get_sync_service

        logger.info(f"Running scheduled incremental sync: {stream}")
        try:
            result = await get_sync_service(stream).run_incremental()
        except SyncInProgress:
            logger.warning(f"Scheduled sync skipped, {stream} is already running")
            return
        logger.info(f"Scheduled sync {stream} finished with status {result.status}")

    def run_now(self, stream: str) -> Dict:
        """Trigger the scheduled job of one stream immediately"""
        if stream not in STREAMS:
            raise UnknownStream(stream)
        asyncio.create_task(self._run_scheduled_sync(stream))
        return {"status": "started", "message": f"Sync triggered manually: {stream}"}


# Global service instance
scheduler_service = SchedulerService()
