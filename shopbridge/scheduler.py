"""
Scheduled tasks for the integration service.
Runs the daily TikTok sweep inside the FastAPI process.
"""

import logging
from datetime import datetime
from typing import Optional
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.events import EVENT_JOB_EXECUTED, EVENT_JOB_ERROR

from shopbridge.core.config import get_settings

logger = logging.getLogger(__name__)

# Global scheduler instance
scheduler: Optional[AsyncIOScheduler] = None


async def sync_tiktok_connections_task():
    """Scheduled sweep over every TikTok connection"""
    from shopbridge.dependencies import get_sync_service

    logger.info("=== SCHEDULED TIKTOK SYNC STARTING ===")
    response = await get_sync_service().queue_scheduled_sync(run_inline=True)
    failed = [entry.id for entry in response.results if entry.status == "error"]
    logger.info(f"Scheduled TikTok sync processed {response.processed} connection(s), {len(failed)} failed")
    if failed:
        logger.warning(f"Failed connections: {', '.join(failed)}")


def job_listener(event):
    """Listen to job events for logging"""
    if event.exception:
        logger.error(f"Job {event.job_id} crashed: {event.exception}")
    else:
        logger.info(f"Job {event.job_id} executed successfully at {datetime.now()}")


def create_scheduler() -> AsyncIOScheduler:
    """Create and configure the scheduler"""
    global scheduler

    if scheduler is not None:
        return scheduler

    settings = get_settings()
    scheduler = AsyncIOScheduler()
    scheduler.add_listener(job_listener, EVENT_JOB_EXECUTED | EVENT_JOB_ERROR)

    scheduler.add_job(
        sync_tiktok_connections_task,
        CronTrigger(hour=settings.TIKTOK_SYNC_CRON_HOUR, minute=0),
        id="sync_tiktok_connections",
        name="Sync TikTok Connections",
        replace_existing=True,
        max_instances=1,  # Only one sweep at a time
        misfire_grace_time=3600
    )
    logger.info(f"Scheduled TikTok sync added for {settings.TIKTOK_SYNC_CRON_HOUR:02d}:00 daily")

    return scheduler


async def start_scheduler():
    """Start the scheduler"""
    global scheduler

    if scheduler is None:
        scheduler = create_scheduler()

    if not scheduler.running:
        scheduler.start()
        logger.info("Scheduler started successfully")
        for job in scheduler.get_jobs():
            logger.info(f"  - {job.name}: {job.trigger}")


async def stop_scheduler():
    """Stop the scheduler gracefully"""
    global scheduler

    if scheduler and scheduler.running:
        scheduler.shutdown(wait=True)
        logger.info("Scheduler stopped successfully")
    scheduler = None
