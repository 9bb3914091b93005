from __future__ import annotations
from datetime import date
from typing import Dict, List, Optional
from fastapi import APIRouter, Depends, Query, Response
from fastapi.responses import StreamingResponse
from sqlalchemy.ext.asyncio import AsyncSession
from loguru import logger

from ..db import session_dependency
from ..deps import (
    current_user_id,
    get_analytics_service,
    get_completion_service,
    get_events,
    get_routine_service,
)
from ..events import EventBroadcaster
from ..middleware.rate_limit import heatmap_limit, logs_limit, risk_limit, routines_limit, summary_limit
from ..models.habit import LogStatus
from ..schemas.habit import (
    CompletionRequest,
    Heatmap,
    LogRead,
    OutcomeCounts,
    RoutineCreate,
    RoutineRead,
    RoutineRisk,
    RoutineUpdate,
    RoutineWithToday,
    SessionHookRequest,
    StatusUpdate,
)
from ..services.analytics_service import AnalyticsService
from ..services.completion_service import CompletionService
from ..services.log_service import LogService
from ..services.routine_service import RoutineService
from ..services.schedule import utc_day, utc_now

router = APIRouter(prefix="/habits", tags=["habits"])


@router.get("/routines", response_model=List[RoutineWithToday], dependencies=[Depends(routines_limit)])
async def list_routines(
    user_id: int = Depends(current_user_id),
    session: AsyncSession = Depends(session_dependency),
    events: EventBroadcaster = Depends(get_events),
):
    today = utc_day(utc_now())
    items = [RoutineWithToday.build(r, log) for r, log in await RoutineService.list_routines(session, user_id, today)]
    events.publish("habit_routines_list", {"user_id": user_id, "count": len(items)})
    return items


@router.post("/routines", response_model=RoutineRead, status_code=201, dependencies=[Depends(routines_limit)])
async def create_routine(
    payload: RoutineCreate,
    user_id: int = Depends(current_user_id),
    session: AsyncSession = Depends(session_dependency),
    service: RoutineService = Depends(get_routine_service),
):
    routine = await service.create_routine(session, user_id, payload)
    return RoutineRead.from_model(routine)


@router.patch("/routines/{routine_id}", response_model=RoutineRead, dependencies=[Depends(routines_limit)])
async def update_routine(
    routine_id: int,
    payload: RoutineUpdate,
    user_id: int = Depends(current_user_id),
    session: AsyncSession = Depends(session_dependency),
    service: RoutineService = Depends(get_routine_service),
):
    routine = await service.update_routine(session, user_id, routine_id, payload)
    return RoutineRead.from_model(routine)


@router.patch("/routines/{routine_id}/status", response_model=RoutineRead, dependencies=[Depends(routines_limit)])
async def set_routine_status(
    routine_id: int,
    payload: StatusUpdate,
    user_id: int = Depends(current_user_id),
    session: AsyncSession = Depends(session_dependency),
    service: RoutineService = Depends(get_routine_service),
):
    routine = await service.set_status(session, user_id, routine_id, payload.status)
    return RoutineRead.from_model(routine)


@router.delete("/routines/{routine_id}", status_code=204, dependencies=[Depends(routines_limit)])
async def archive_routine(
    routine_id: int,
    user_id: int = Depends(current_user_id),
    session: AsyncSession = Depends(session_dependency),
    service: RoutineService = Depends(get_routine_service),
):
    await service.archive_routine(session, user_id, routine_id)
    return Response(status_code=204)


@router.get("/logs", response_model=List[LogRead], dependencies=[Depends(logs_limit)])
async def list_logs(
    date_from: Optional[date] = Query(default=None, alias="from"),
    date_to: Optional[date] = Query(default=None, alias="to"),
    routine_id: Optional[int] = None,
    status: Optional[LogStatus] = None,
    user_id: int = Depends(current_user_id),
    session: AsyncSession = Depends(session_dependency),
):
    logs = await LogService.list_logs(
        session, user_id, date_from, date_to, routine_id, status.value if status else None
    )
    return [LogRead.model_validate(log) for log in logs]


@router.post("/routines/{routine_id}/logs", response_model=LogRead, dependencies=[Depends(logs_limit)])
async def mark_completion(
    routine_id: int,
    payload: CompletionRequest,
    user_id: int = Depends(current_user_id),
    session: AsyncSession = Depends(session_dependency),
    service: CompletionService = Depends(get_completion_service),
):
    log = await service.mark_completion(session, user_id, routine_id, payload.action, payload.target_date)
    return LogRead.model_validate(log)


@router.post("/session-hook", response_model=List[LogRead], dependencies=[Depends(logs_limit)])
async def session_hook(
    payload: SessionHookRequest,
    user_id: int = Depends(current_user_id),
    session: AsyncSession = Depends(session_dependency),
    service: CompletionService = Depends(get_completion_service),
):
    captured = await service.capture_session(session, user_id, payload.started_at, payload.duration_minutes)
    return [LogRead.model_validate(log) for log in captured]


@router.get("/summary", response_model=Dict[int, OutcomeCounts], dependencies=[Depends(summary_limit)])
async def get_summary(
    days: Optional[int] = Query(default=None, ge=1),
    user_id: int = Depends(current_user_id),
    session: AsyncSession = Depends(session_dependency),
    service: AnalyticsService = Depends(get_analytics_service),
):
    return await service.summary(session, user_id, days)


@router.get("/heatmap", response_model=Heatmap, dependencies=[Depends(heatmap_limit)])
async def get_heatmap(
    days: Optional[int] = Query(default=None, ge=1),
    user_id: int = Depends(current_user_id),
    session: AsyncSession = Depends(session_dependency),
    service: AnalyticsService = Depends(get_analytics_service),
):
    return await service.heatmap(session, user_id, days)


@router.get("/risk", response_model=List[RoutineRisk], dependencies=[Depends(risk_limit)])
async def get_risk(
    window: Optional[int] = Query(default=None, ge=1),
    user_id: int = Depends(current_user_id),
    session: AsyncSession = Depends(session_dependency),
    service: AnalyticsService = Depends(get_analytics_service),
):
    return await service.risk_snapshot(session, user_id, window)


@router.get("/events")
async def stream_events(
    user_id: int = Depends(current_user_id),
    events: EventBroadcaster = Depends(get_events),
):
    sub = events.subscribe(user_id)
    logger.debug("User {} subscribed to habit events ({} open)", user_id, events.subscriber_count)
    return StreamingResponse(
        events.stream(sub),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )
