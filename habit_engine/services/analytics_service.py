from __future__ import annotations
from collections import defaultdict
from typing import Dict, Iterable, List, Optional
from datetime import date, datetime, timedelta
from sqlalchemy.ext.asyncio import AsyncSession
from loguru import logger

from ..config import settings
from ..events import EventBroadcaster
from ..models.habit import HabitLog, HabitRoutine, LogStatus
from ..schemas.habit import (
    Heatmap,
    HeatmapCell,
    OutcomeCounts,
    Overview,
    OverviewTotals,
    RoutineRisk,
    TrendPoint,
    Trends,
)
from ..utils.validators import clamp_window
from .analytics_cache import AnalyticsCache
from .log_service import LogService
from .routine_service import RoutineService
from .side_effects import HabitSideEffects
from .schedule import utc_day, utc_now, weekday_of, window_start
from .streaks import resistance_score

# Fixed policy weights of the risk heuristic
W_SUCCESS_7 = 0.5
W_SUCCESS_14 = 0.2
W_VOLATILITY = 0.2
W_RESISTANCE = 0.1
MISSED_YESTERDAY_PENALTY = 0.15
LONG_STREAK = 7
LONG_STREAK_DISCOUNT = 0.10
LONG_STREAK_DISCOUNT_ABOVE = 0.6

RISK_LOW_BELOW = 0.33
RISK_MEDIUM_BELOW = 0.66

HEATMAP_MIN_SAMPLES = 2
HEATMAP_RANK_SIZE = 5


def risk_level(score: float) -> str:
    if score < RISK_LOW_BELOW:
        return "low"
    if score < RISK_MEDIUM_BELOW:
        return "medium"
    return "high"


def planned_outcomes(routine: HabitRoutine, logs: Iterable[HabitLog], today: date, window_days: int) -> List[bool]:
    """Success flag for every planned day of the window, oldest first."""
    by_day = {log.log_date: log for log in logs}
    start = window_start(today, window_days)
    outcomes = []
    for offset in range(window_days):
        day = start + timedelta(days=offset)
        if not routine.is_planned_for_date(day):
            continue
        log = by_day.get(day)
        outcomes.append(bool(log and log.counts_as_success))
    return outcomes


def compute_routine_risk(
    routine: HabitRoutine, logs: Iterable[HabitLog], today: date, window_days: int = 14
) -> RoutineRisk:
    logs = list(logs)
    outcomes = planned_outcomes(routine, logs, today, window_days)

    last7 = outcomes[-7:]
    success_7 = sum(last7) / len(last7) if last7 else 0.0
    success_14 = sum(outcomes) / len(outcomes) if outcomes else 0.0
    changes = sum(1 for prev, cur in zip(outcomes, outcomes[1:]) if prev != cur)
    volatility = changes / (len(outcomes) - 1) if len(outcomes) > 1 else 0.0

    yesterday = today - timedelta(days=1)
    missed_yesterday = any(
        log.log_date == yesterday and log.status == LogStatus.MISSED.value for log in logs
    )
    streak = routine.current_streak or 0
    resistance = resistance_score(routine.difficulty, streak)

    risk = (
        W_SUCCESS_7 * (1 - success_7)
        + W_SUCCESS_14 * (1 - success_14)
        + W_VOLATILITY * volatility
        + W_RESISTANCE * (resistance / 10)
    )
    if missed_yesterday:
        risk += MISSED_YESTERDAY_PENALTY
    if streak >= LONG_STREAK and risk > LONG_STREAK_DISCOUNT_ABOVE:
        risk -= LONG_STREAK_DISCOUNT
    risk = min(1.0, max(0.0, risk))

    return RoutineRisk(
        routine_id=routine.id,
        name=routine.name,
        type=routine.type,
        streak=streak,
        success_rate_7=round(success_7, 4),
        success_rate_14=round(success_14, 4),
        volatility=round(volatility, 4),
        resistance=resistance,
        missed_yesterday=missed_yesterday,
        risk_score=round(risk, 4),
        risk_level=risk_level(risk),
    )


def compute_risk(
    routines: Iterable[HabitRoutine], logs: Iterable[HabitLog], today: date, window_days: int = 14
) -> List[RoutineRisk]:
    by_routine: Dict[int, List[HabitLog]] = defaultdict(list)
    for log in logs:
        by_routine[log.routine_id].append(log)
    results = [compute_routine_risk(r, by_routine.get(r.id, []), today, window_days) for r in routines]
    results.sort(key=lambda item: item.risk_score, reverse=True)
    return results


def _percent(part: int, whole: int) -> float:
    return round(part / whole * 100, 1) if whole else 0.0


def build_heatmap(routines: Iterable[HabitRoutine], logs: Iterable[HabitLog], range_days: int) -> Heatmap:
    """
    Bucket logs by (weekday, hour of the routine's scheduled start).

    Late completions count as completed and as late.
    """
    routine_map = {r.id: r for r in routines}
    cells: Dict[str, HeatmapCell] = {}
    for log in logs:
        routine = routine_map.get(log.routine_id)
        if routine is None:
            continue
        weekday = weekday_of(log.log_date).value
        hour = f"{routine.time_start.hour:02d}"
        key = f"{weekday}-{hour}"
        cell = cells.get(key)
        if cell is None:
            cell = cells[key] = HeatmapCell(key=key, weekday=weekday, hour=hour)

        cell.planned += 1
        if log.status in (LogStatus.DONE.value, LogStatus.AUTO.value):
            cell.completed += 1
        elif log.status == LogStatus.LATE.value:
            cell.completed += 1
            cell.late += 1
        elif log.status == LogStatus.MISSED.value:
            cell.missed += 1
        elif log.status == LogStatus.SKIPPED.value:
            cell.skipped += 1

    for cell in cells.values():
        cell.success_rate = _percent(cell.completed, cell.planned)

    ranked = sorted(
        (c for c in cells.values() if c.planned >= HEATMAP_MIN_SAMPLES),
        key=lambda c: c.success_rate,
    )
    return Heatmap(
        range_days=range_days,
        cells=list(cells.values()),
        weakest=ranked[:HEATMAP_RANK_SIZE],
        strongest=list(reversed(ranked))[:HEATMAP_RANK_SIZE],
    )


def summarize_outcomes(logs: Iterable[HabitLog]) -> Dict[int, OutcomeCounts]:
    summary: Dict[int, OutcomeCounts] = {}
    for log in logs:
        counts = summary.setdefault(log.routine_id, OutcomeCounts())
        if log.status in OutcomeCounts.model_fields:
            setattr(counts, log.status, getattr(counts, log.status) + 1)
        counts.total += 1
    return summary


def build_overview(routines: List[HabitRoutine], logs: Iterable[HabitLog]) -> Overview:
    totals = OverviewTotals()
    for log in logs:
        totals.planned += 1
        if log.counts_as_success:
            totals.completed += 1
        if log.status == LogStatus.LATE.value:
            totals.late += 1
        elif log.status == LogStatus.MISSED.value:
            totals.missed += 1
        elif log.status == LogStatus.SKIPPED.value:
            totals.skipped += 1
    avg_streak = int(sum(r.current_streak or 0 for r in routines) / len(routines) + 0.5) if routines else 0
    return Overview(
        consistency=_percent(totals.completed, totals.planned),
        avg_streak=avg_streak,
        longest_streak=max((r.longest_streak or 0 for r in routines), default=0),
        active_habits=len(routines),
        totals=totals,
    )


def build_trends(logs: Iterable[HabitLog], days: int) -> Trends:
    by_day: Dict[date, List[int]] = {}
    for log in logs:
        planned_completed = by_day.setdefault(log.log_date, [0, 0])
        planned_completed[0] += 1
        if log.counts_as_success:
            planned_completed[1] += 1
    series = [
        TrendPoint(day=d, planned=p, completed=c, success_rate=_percent(c, p))
        for d, (p, c) in sorted(by_day.items())
    ]
    return Trends(days=days, series=series)


class AnalyticsService:
    """
    Read-only habit analytics with a short-lived per-user cache in front.
    """

    def __init__(
        self,
        cache: AnalyticsCache,
        side_effects: Optional[HabitSideEffects] = None,
        events: Optional[EventBroadcaster] = None,
    ):
        self.cache = cache
        self.side_effects = side_effects
        self.events = events

    def _cached(self, key: str, expected: type):
        value = self.cache.get(key)
        if value is None:
            return None
        if not isinstance(value, expected):
            # recompute rather than serve something unexpected
            logger.warning("Discarding malformed analytics cache entry {}", key)
            self.cache.invalidate_by_prefix(key)
            return None
        return value

    async def _after_risk_snapshot(self, user_id: int, results: List[RoutineRisk], today: date) -> None:
        if self.events is not None:
            try:
                self.events.publish("habit_risk_snapshot", {
                    "user_id": user_id,
                    "items": [item.model_dump() for item in results],
                })
            except Exception as e:
                logger.warning("Failed to publish risk snapshot for user {}: {}", user_id, e)
        if self.side_effects is not None:
            sent = await self.side_effects.on_high_risk(user_id, results, today)
            if sent:
                logger.info("Sent {} high-risk notifications to user {}", sent, user_id)

    async def risk_snapshot(
        self,
        session: AsyncSession,
        user_id: int,
        window_days: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> List[RoutineRisk]:
        window = clamp_window(window_days, settings.RISK_WINDOW_DAYS, settings.HEATMAP_MAX_DAYS)
        key = AnalyticsCache.make_key("risk", user_id, window)
        cached = self._cached(key, list)
        if cached is not None:
            return cached

        today = utc_day(now or utc_now())
        since = min(window_start(today, window), today - timedelta(days=1))
        routines = await RoutineService.list_active(session, user_id)
        logs = await LogService.logs_since(session, user_id, since)
        results = compute_risk(routines, logs, today, window)
        self.cache.set(key, results, ttl=settings.RISK_CACHE_TTL_SECONDS)
        logger.debug("Computed risk for {} routines of user {}", len(results), user_id)
        await self._after_risk_snapshot(user_id, results, today)
        return results

    async def heatmap(
        self,
        session: AsyncSession,
        user_id: int,
        window_days: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> Heatmap:
        days = clamp_window(window_days, settings.HEATMAP_WINDOW_DAYS, settings.HEATMAP_MAX_DAYS)
        key = AnalyticsCache.make_key("heatmap", user_id, days)
        cached = self._cached(key, Heatmap)
        if cached is not None:
            return cached

        today = utc_day(now or utc_now())
        routines = await RoutineService.list_active(session, user_id)
        logs = await LogService.logs_since(session, user_id, window_start(today, days))
        result = build_heatmap(routines, logs, days)
        self.cache.set(key, result, ttl=settings.HEATMAP_CACHE_TTL_SECONDS)
        return result

    async def summary(
        self,
        session: AsyncSession,
        user_id: int,
        window_days: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> Dict[int, OutcomeCounts]:
        days = clamp_window(window_days, settings.SUMMARY_WINDOW_DAYS, settings.HEATMAP_MAX_DAYS)
        key = AnalyticsCache.make_key("summary", user_id, days)
        cached = self._cached(key, dict)
        if cached is not None:
            return cached

        today = utc_day(now or utc_now())
        logs = await LogService.logs_since(session, user_id, window_start(today, days))
        result = summarize_outcomes(logs)
        self.cache.set(key, result)
        return result

    async def overview(
        self, session: AsyncSession, user_id: int, now: Optional[datetime] = None
    ) -> Overview:
        days = settings.OVERVIEW_WINDOW_DAYS
        key = AnalyticsCache.make_key("overview", user_id, days)
        cached = self._cached(key, Overview)
        if cached is not None:
            return cached

        today = utc_day(now or utc_now())
        routines = await RoutineService.list_active(session, user_id)
        logs = await LogService.logs_since(session, user_id, window_start(today, days))
        result = build_overview(routines, logs)
        self.cache.set(key, result)
        return result

    async def trends(
        self,
        session: AsyncSession,
        user_id: int,
        window_days: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> Trends:
        days = clamp_window(window_days, settings.HEATMAP_WINDOW_DAYS, settings.TRENDS_MAX_DAYS)
        key = AnalyticsCache.make_key("trends", user_id, days)
        cached = self._cached(key, Trends)
        if cached is not None:
            return cached

        today = utc_day(now or utc_now())
        logs = await LogService.logs_since(session, user_id, window_start(today, days))
        result = build_trends(logs, days)
        self.cache.set(key, result)
        return result
