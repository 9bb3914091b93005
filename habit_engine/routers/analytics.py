from __future__ import annotations
from typing import List, Optional
from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from ..db import session_dependency
from ..deps import current_user_id, get_analytics_service
from ..middleware.rate_limit import analytics_limit
from ..schemas.habit import Heatmap, Overview, RoutineRisk, Trends
from ..services.analytics_service import AnalyticsService

router = APIRouter(
    prefix="/habit-analytics",
    tags=["habit-analytics"],
    dependencies=[Depends(analytics_limit)],
)


@router.get("/overview", response_model=Overview)
async def overview(
    user_id: int = Depends(current_user_id),
    session: AsyncSession = Depends(session_dependency),
    service: AnalyticsService = Depends(get_analytics_service),
):
    return await service.overview(session, user_id)


@router.get("/heatmap", response_model=Heatmap)
async def heatmap(
    days: Optional[int] = Query(default=None, ge=1),
    user_id: int = Depends(current_user_id),
    session: AsyncSession = Depends(session_dependency),
    service: AnalyticsService = Depends(get_analytics_service),
):
    return await service.heatmap(session, user_id, days)


@router.get("/risk", response_model=List[RoutineRisk])
async def risk(
    window: Optional[int] = Query(default=None, ge=1),
    user_id: int = Depends(current_user_id),
    session: AsyncSession = Depends(session_dependency),
    service: AnalyticsService = Depends(get_analytics_service),
):
    return await service.risk_snapshot(session, user_id, window)


@router.get("/trends", response_model=Trends)
async def trends(
    days: Optional[int] = Query(default=None, ge=1),
    user_id: int = Depends(current_user_id),
    session: AsyncSession = Depends(session_dependency),
    service: AnalyticsService = Depends(get_analytics_service),
):
    return await service.trends(session, user_id, days)
