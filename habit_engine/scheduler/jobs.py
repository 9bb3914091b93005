from __future__ import annotations
from datetime import datetime
from typing import Optional
from loguru import logger

from ..db import AsyncSessionLocal
from ..config import settings
from ..services.analytics_cache import AnalyticsCache
from ..services.day_cycle_service import DayCycleWindow, close_day, seed_day
from ..services.schedule import utc_now


async def habit_day_cycle_job(
    window: DayCycleWindow,
    cache: Optional[AnalyticsCache] = None,
    now: Optional[datetime] = None,
):
    """Periodic poll: seed today's logs after the seed hour, close them after the close hour."""
    now = now or utc_now()
    session = AsyncSessionLocal()
    try:
        if window.due_for_seed(now):
            created = await seed_day(session, now)
            window.mark_seeded(now)
            if created and cache is not None:
                cache.clear()

        if window.due_for_close(now):
            await close_day(session, now, cache=cache, reset_policy=settings.PROTECTION_RESET_POLICY)
            window.mark_closed(now)
    except Exception as e:
        logger.exception("Error in habit_day_cycle_job at {}: {}", now, e)
        await session.rollback()
    finally:
        await session.close()
