from __future__ import annotations
from typing import List, Optional
from datetime import date, datetime, timedelta
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select
from loguru import logger

from ..errors import RoutineValidationError
from ..events import EventBroadcaster
from ..models.habit import HabitLog, HabitRoutine, LogSource, LogStatus, RoutineStatus
from .analytics_cache import AnalyticsCache
from .log_service import LogService
from .routine_service import RoutineService
from .schedule import as_utc, planned_start, utc_day, utc_now
from .side_effects import HabitSideEffects
from .streaks import lateness_minutes, record_success, resistance_score

ACTION_DONE = "done"
ACTION_SKIP = "skip"


class CompletionService:
    """
    Resolves a routine's daily log from a user action or a session hook,
    updating streak and resistance metrics.
    """

    def __init__(
        self,
        cache: AnalyticsCache,
        side_effects: Optional[HabitSideEffects] = None,
        events: Optional[EventBroadcaster] = None,
    ):
        self.cache = cache
        self.side_effects = side_effects or HabitSideEffects()
        self.events = events

    def _publish(self, event: str, payload: dict) -> None:
        if self.events is None:
            return
        try:
            self.events.publish(event, payload)
        except Exception as e:
            logger.warning("Failed to publish {} event: {}", event, e)

    @staticmethod
    async def _previous_status(session: AsyncSession, routine: HabitRoutine, day: date) -> Optional[str]:
        prev = await LogService.get_for_day(session, routine.user_id, routine.id, day - timedelta(days=1))
        return prev.status if prev else None

    async def _advance_streak(self, session: AsyncSession, routine: HabitRoutine, log: HabitLog) -> int:
        previous = await self._previous_status(session, routine, log.log_date)
        streak = record_success(routine, previous)
        log.resistance_snapshot = resistance_score(routine.difficulty, streak)
        log.streak_after = streak
        routine.last_log_date = log.log_date
        routine.touch()
        return streak

    async def mark_completion(
        self,
        session: AsyncSession,
        user_id: int,
        routine_id: int,
        action: str,
        target_date: Optional[date] = None,
        now: Optional[datetime] = None,
    ) -> HabitLog:
        """
        Mark a routine done or skipped for `target_date` (default: today, UTC).

        Done is late when lateness exceeds the routine's tolerance window.
        """
        if action not in (ACTION_DONE, ACTION_SKIP):
            raise RoutineValidationError([f"action: must be '{ACTION_DONE}' or '{ACTION_SKIP}'"])

        now = now or utc_now()
        routine = await RoutineService.get_owned(session, user_id, routine_id, include_archived=False)
        day = target_date or utc_day(now)
        log = await LogService.find_or_create(session, routine, day)

        if action == ACTION_SKIP:
            LogService.transition(log, LogStatus.SKIPPED)
            log.source = LogSource.USER.value
            session.add(log)
            await session.commit()
            self.cache.invalidate_user(user_id)
            logger.info("Routine {} skipped on {} by user {}", routine.id, day, user_id)
            return log

        late_by = lateness_minutes(as_utc(now), planned_start(day, routine.time_start))
        LogService.transition(log, LogStatus.LATE if late_by > routine.tolerance_minutes else LogStatus.DONE)
        LogService.mark_completed_at(log, now)
        log.lateness_minutes = late_by
        log.source = LogSource.USER.value
        streak = await self._advance_streak(session, routine, log)

        session.add(log)
        session.add(routine)
        await session.commit()
        self.cache.invalidate_user(user_id)
        logger.info(
            "Routine {} marked {} on {} (late by {} min, streak {})",
            routine.id, log.status, day, late_by, streak,
        )

        await self.side_effects.on_completion(routine, log)
        self._publish("habit_completed", {
            "user_id": user_id,
            "habit_id": routine.id,
            "log_id": log.id,
            "streak": streak,
            "status": log.status,
        })
        return log

    async def capture_session(
        self,
        session: AsyncSession,
        user_id: int,
        started_at: datetime,
        duration_minutes: int,
        now: Optional[datetime] = None,
    ) -> List[HabitLog]:
        """
        Auto-complete routines satisfied by an activity session.

        A routine qualifies when it opts in, is planned for the session day,
        the session is long enough, and the session starts within the
        tolerance window of the routine's start time.
        """
        now = now or utc_now()
        day = utc_day(started_at)
        result = await session.execute(
            select(HabitRoutine).where(
                HabitRoutine.user_id == user_id,
                HabitRoutine.status == RoutineStatus.ACTIVE.value,
                HabitRoutine.auto_complete_by_session == True,  # noqa: E712
            )
        )
        captured: List[HabitLog] = []
        for routine in result.scalars().all():
            if not routine.is_planned_for_date(day):
                continue
            if duration_minutes < routine.min_session_minutes:
                continue
            planned = planned_start(day, routine.time_start)
            offset = abs(round((as_utc(started_at) - planned).total_seconds() / 60))
            if offset > routine.tolerance_minutes:
                continue

            log = await LogService.find_or_create(session, routine, day, source=LogSource.SESSION_HOOK)
            if log.is_terminal:
                continue
            LogService.transition(log, LogStatus.AUTO)
            LogService.mark_completed_at(log, now)
            log.auto_captured = True
            log.source = LogSource.SESSION_HOOK.value
            streak = await self._advance_streak(session, routine, log)
            session.add(log)
            session.add(routine)
            await session.commit()
            self.cache.invalidate_user(user_id)
            captured.append(log)
            logger.info("Session auto-completed routine {} on {} (streak {})", routine.id, day, streak)

            await self.side_effects.on_completion(routine, log, auto=True)
            self._publish("habit_auto_complete", {
                "user_id": user_id,
                "habit_id": routine.id,
                "date": day.isoformat(),
                "streak": streak,
                "diff_min": offset,
            })

        return captured

