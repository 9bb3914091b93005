from __future__ import annotations
from typing import Optional
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.executors.asyncio import AsyncIOExecutor
from apscheduler.triggers.interval import IntervalTrigger
from pytz import utc
from loguru import logger

from ..config import settings
from ..services.analytics_cache import AnalyticsCache
from ..services.day_cycle_service import DayCycleWindow
from .jobs import habit_day_cycle_job

# Jobs carry live objects (window, cache), so they stay in memory
jobstores = {
    'default': MemoryJobStore()
}

executors = {
    'default': AsyncIOExecutor()
}

job_defaults = {
    'coalesce': True,  # Combine missed runs
    'max_instances': 1,  # Never overlap two polls
    'misfire_grace_time': 300,
}

scheduler = AsyncIOScheduler(
    jobstores=jobstores,
    executors=executors,
    job_defaults=job_defaults,
    timezone=utc,
)

DAY_CYCLE_JOB_ID = "habit_day_cycle"


def start_scheduler(window: DayCycleWindow, cache: Optional[AnalyticsCache] = None):
    if not scheduler.running:
        scheduler.start()
        try:
            scheduler.add_job(
                habit_day_cycle_job,
                trigger=IntervalTrigger(minutes=settings.SCHEDULER_POLL_MINUTES, timezone=utc),
                kwargs={"window": window, "cache": cache},
                id=DAY_CYCLE_JOB_ID,
                replace_existing=True,
            )
            logger.info("Scheduled habit day cycle every {} min", settings.SCHEDULER_POLL_MINUTES)
        except Exception:
            logger.exception("Failed to schedule habit day cycle job")
        logger.info("APScheduler started")


def shutdown_scheduler():
    if scheduler.running:
        scheduler.shutdown()
        logger.info("APScheduler shut down")
