from __future__ import annotations
from typing import Optional
from fastapi import Header, HTTPException, Request

from .events import EventBroadcaster
from .services.analytics_cache import AnalyticsCache
from .services.analytics_service import AnalyticsService
from .services.completion_service import CompletionService
from .services.routine_service import RoutineService
from .services.side_effects import HabitSideEffects


async def current_user_id(x_user_id: Optional[str] = Header(default=None)) -> int:
    """Caller identity, asserted by the gateway in front of this service."""
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Missing X-User-Id header")
    try:
        user_id = int(x_user_id)
    except ValueError:
        raise HTTPException(status_code=400, detail="X-User-Id must be an integer")
    if user_id <= 0:
        raise HTTPException(status_code=400, detail="X-User-Id must be positive")
    return user_id


def get_cache(request: Request) -> AnalyticsCache:
    return request.app.state.cache


def get_events(request: Request) -> EventBroadcaster:
    return request.app.state.events


def get_side_effects(request: Request) -> HabitSideEffects:
    return request.app.state.side_effects


def get_routine_service(request: Request) -> RoutineService:
    return RoutineService(get_cache(request))


def get_completion_service(request: Request) -> CompletionService:
    return CompletionService(get_cache(request), get_side_effects(request), get_events(request))


def get_analytics_service(request: Request) -> AnalyticsService:
    return AnalyticsService(get_cache(request), get_side_effects(request), get_events(request))
