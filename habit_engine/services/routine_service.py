from __future__ import annotations
from typing import Any, List, Optional, Tuple, Union
from datetime import date, time
from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select
from loguru import logger

from ..errors import (
    RoutineArchivedError,
    RoutineNotFoundError,
    RoutineValidationError,
    ScheduleConflictError,
)
from ..models.habit import HabitLog, HabitRoutine, RoutineStatus
from ..schemas.habit import RoutineCreate, RoutineUpdate, ScheduleIn
from ..schemas.recurrence import RecurrenceRule
from .analytics_cache import AnalyticsCache
from .schedule import recurrences_overlap


def _validation_messages(exc: ValidationError) -> List[str]:
    return [
        f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" if err["loc"] else err["msg"]
        for err in exc.errors()
    ]


def _parse(model: type, payload: Union[dict, Any]):
    if isinstance(payload, model):
        return payload
    try:
        return model.model_validate(payload)
    except ValidationError as e:
        raise RoutineValidationError(_validation_messages(e))


class RoutineService:
    """
    Registry of habit routines: CRUD, lifecycle status and the overlap rule.

    Every mutation drops the owner's analytics cache entries.
    """

    def __init__(self, cache: AnalyticsCache):
        self.cache = cache

    @staticmethod
    async def get_owned(
        session: AsyncSession, user_id: int, routine_id: int, include_archived: bool = True
    ) -> HabitRoutine:
        routine = await session.get(HabitRoutine, routine_id)
        if not routine or routine.user_id != user_id:
            raise RoutineNotFoundError(routine_id)
        if not include_archived and routine.status == RoutineStatus.ARCHIVED.value:
            raise RoutineNotFoundError(routine_id)
        return routine

    @staticmethod
    async def list_active(session: AsyncSession, user_id: Optional[int] = None) -> List[HabitRoutine]:
        filters = [HabitRoutine.status == RoutineStatus.ACTIVE.value]
        if user_id is not None:
            filters.append(HabitRoutine.user_id == user_id)
        result = await session.execute(select(HabitRoutine).where(*filters).order_by(HabitRoutine.id))
        return list(result.scalars().all())

    @staticmethod
    async def list_routines(
        session: AsyncSession, user_id: int, today: date
    ) -> List[Tuple[HabitRoutine, Optional[HabitLog]]]:
        """Non-archived routines in display order, each paired with today's log."""
        result = await session.execute(
            select(HabitRoutine)
            .where(
                HabitRoutine.user_id == user_id,
                HabitRoutine.status != RoutineStatus.ARCHIVED.value,
            )
            .order_by(HabitRoutine.sort_order, HabitRoutine.time_start)
        )
        routines = list(result.scalars().all())

        logs = await session.execute(
            select(HabitLog).where(HabitLog.user_id == user_id, HabitLog.log_date == today)
        )
        by_routine = {log.routine_id: log for log in logs.scalars().all()}
        return [(r, by_routine.get(r.id)) for r in routines]

    @staticmethod
    async def find_conflict(
        session: AsyncSession,
        user_id: int,
        time_start: time,
        rule: RecurrenceRule,
        exclude_id: Optional[int] = None,
    ) -> Optional[HabitRoutine]:
        """An active routine starting at the same minute on at least one common weekday."""
        filters = [
            HabitRoutine.user_id == user_id,
            HabitRoutine.status == RoutineStatus.ACTIVE.value,
            HabitRoutine.time_start == time_start,
        ]
        if exclude_id is not None:
            filters.append(HabitRoutine.id != exclude_id)
        result = await session.execute(select(HabitRoutine).where(*filters))
        for other in result.scalars().all():
            if recurrences_overlap(rule, other.recurrence_rule):
                return other
        return None

    async def _ensure_no_conflict(
        self,
        session: AsyncSession,
        user_id: int,
        time_start: time,
        rule: RecurrenceRule,
        exclude_id: Optional[int] = None,
    ) -> None:
        other = await self.find_conflict(session, user_id, time_start, rule, exclude_id)
        if other:
            logger.info("Schedule conflict for user {} with routine {}", user_id, other.id)
            raise ScheduleConflictError(other.id)

    @staticmethod
    def _apply_schedule(routine: HabitRoutine, schedule: ScheduleIn) -> None:
        routine.set_recurrence(schedule.recurrence)
        routine.time_start = schedule.time_start
        routine.time_end = schedule.time_end
        routine.schedule_timezone = schedule.timezone

    async def create_routine(
        self, session: AsyncSession, user_id: int, payload: Union[RoutineCreate, dict]
    ) -> HabitRoutine:
        data: RoutineCreate = _parse(RoutineCreate, payload)
        await self._ensure_no_conflict(session, user_id, data.schedule.time_start, data.schedule.recurrence)

        routine = HabitRoutine(
            user_id=user_id,
            name=data.name,
            type=data.type.value,
            time_start=data.schedule.time_start,
            tolerance_minutes=data.behavior.tolerance_minutes,
            auto_complete_by_session=data.behavior.auto_complete_by_session,
            min_session_minutes=data.behavior.min_session_minutes,
            decay_protection=data.behavior.decay_protection,
            difficulty=data.difficulty,
            target_consistency_percent=data.target_consistency_percent,
            xp_on_complete=data.xp_on_complete,
            sort_order=data.order,
        )
        self._apply_schedule(routine, data.schedule)
        session.add(routine)
        await session.commit()
        self.cache.invalidate_user(user_id)
        logger.info("Created routine {} for user {}", routine.id, user_id)
        return routine

    async def update_routine(
        self,
        session: AsyncSession,
        user_id: int,
        routine_id: int,
        patch: Union[RoutineUpdate, dict],
    ) -> HabitRoutine:
        data: RoutineUpdate = _parse(RoutineUpdate, patch)
        routine = await self.get_owned(session, user_id, routine_id)
        if routine.status == RoutineStatus.ARCHIVED.value:
            raise RoutineArchivedError(routine_id)

        if data.schedule is not None and routine.status == RoutineStatus.ACTIVE.value:
            await self._ensure_no_conflict(
                session, user_id, data.schedule.time_start, data.schedule.recurrence, exclude_id=routine.id
            )

        changes = data.model_dump(exclude_unset=True, exclude={"schedule", "behavior"})
        if "name" in changes and changes["name"] is not None:
            routine.name = changes["name"].strip()
        if changes.get("type") is not None:
            routine.type = data.type.value
        for field in ("difficulty", "target_consistency_percent", "xp_on_complete"):
            if changes.get(field) is not None:
                setattr(routine, field, changes[field])
        if changes.get("order") is not None:
            routine.sort_order = changes["order"]
        if data.schedule is not None:
            self._apply_schedule(routine, data.schedule)
        if data.behavior is not None:
            for field, value in data.behavior.model_dump(exclude_none=True).items():
                setattr(routine, field, value)

        routine.touch()
        session.add(routine)
        await session.commit()
        self.cache.invalidate_user(user_id)
        logger.info("Updated routine {} for user {}", routine.id, user_id)
        return routine

    async def set_status(
        self, session: AsyncSession, user_id: int, routine_id: int, status: Union[RoutineStatus, str]
    ) -> HabitRoutine:
        try:
            target = RoutineStatus(status)
        except ValueError:
            raise RoutineValidationError([f"status: must be one of {[s.value for s in RoutineStatus]}"])

        routine = await self.get_owned(session, user_id, routine_id)
        if routine.status == target.value:
            return routine
        if routine.status == RoutineStatus.ARCHIVED.value:
            raise RoutineArchivedError(routine_id)
        if target == RoutineStatus.ACTIVE:
            await self._ensure_no_conflict(
                session, user_id, routine.time_start, routine.recurrence_rule, exclude_id=routine.id
            )

        routine.status = target.value
        routine.touch()
        session.add(routine)
        await session.commit()
        self.cache.invalidate_user(user_id)
        logger.info("Routine {} of user {} is now {}", routine.id, user_id, target.value)
        return routine

    async def archive_routine(self, session: AsyncSession, user_id: int, routine_id: int) -> HabitRoutine:
        return await self.set_status(session, user_id, routine_id, RoutineStatus.ARCHIVED)
