from __future__ import annotations
from contextlib import asynccontextmanager
from typing import AsyncIterator
from datetime import datetime, timezone
from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from redis.asyncio import Redis
from loguru import logger

from .config import settings
from .db import init_db
from .errors import (
    HabitEngineError,
    habit_engine_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from .events import EventBroadcaster
from .routers import analytics, habits
from .scheduler.scheduler_instance import scheduler, shutdown_scheduler, start_scheduler
from .services.analytics_cache import AnalyticsCache
from .services.day_cycle_service import DayCycleWindow
from .services.side_effects import CollaboratorClient, HabitSideEffects


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    # --- startup ---
    logger.remove()
    logger.add(lambda msg: print(msg, end=""), level=settings.LOG_LEVEL)

    await init_db()

    app.state.cache = AnalyticsCache(default_ttl=settings.RISK_CACHE_TTL_SECONDS)
    app.state.events = EventBroadcaster()
    app.state.redis = Redis.from_url(settings.REDIS_URL, decode_responses=True)
    app.state.side_effects = HabitSideEffects(
        client=CollaboratorClient(
            gamification_url=settings.GAMIFICATION_URL,
            notification_url=settings.NOTIFICATION_URL,
            token=settings.SIDE_EFFECTS_TOKEN,
        ),
        redis=app.state.redis,
    )
    app.state.day_cycle = DayCycleWindow(settings.SEED_HOUR_UTC, settings.CLOSE_HOUR_UTC)

    if settings.ENABLE_SCHEDULER:
        start_scheduler(app.state.day_cycle, app.state.cache)
    logger.info("Habit engine started ({})", settings.ENV)

    yield

    # --- shutdown ---
    shutdown_scheduler()
    await app.state.side_effects.aclose()
    await app.state.redis.aclose()
    logger.info("Habit engine shut down")


app = FastAPI(title="Habit Engine", lifespan=lifespan)

app.add_exception_handler(HabitEngineError, habit_engine_exception_handler)
app.add_exception_handler(RequestValidationError, validation_exception_handler)
app.add_exception_handler(Exception, unhandled_exception_handler)

app.include_router(habits.router)
app.include_router(analytics.router)


@app.get("/health")
async def health():
    return {
        "status": "ok",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "scheduler_running": scheduler.running,
        "jobs_count": len(scheduler.get_jobs()) if scheduler.running else 0,
    }
