from __future__ import annotations
from typing import List, Optional
from datetime import date, datetime, timezone
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select
from loguru import logger

from ..errors import DuplicateLogError, LogAlreadyResolvedError
from ..models.habit import HabitLog, HabitRoutine, LogSource, LogStatus

# pending is the only state a log can leave; every other state is terminal
ALLOWED_TRANSITIONS = {
    LogStatus.PENDING.value: frozenset({
        LogStatus.DONE.value,
        LogStatus.LATE.value,
        LogStatus.MISSED.value,
        LogStatus.SKIPPED.value,
        LogStatus.AUTO.value,
    }),
}


class LogService:
    """
    Storage and state machine for per-day completion logs.
    """

    @staticmethod
    def can_transition(current: str, target: str) -> bool:
        return target in ALLOWED_TRANSITIONS.get(current, frozenset())

    @staticmethod
    def transition(log: HabitLog, target: LogStatus) -> HabitLog:
        """Move a pending log into a terminal state; terminal logs are never reopened."""
        if not LogService.can_transition(log.status, target.value):
            raise LogAlreadyResolvedError(log.routine_id, log.log_date, log.status)
        log.status = target.value
        log.touch()
        return log

    @staticmethod
    async def get_for_day(
        session: AsyncSession, user_id: int, routine_id: int, day: date
    ) -> Optional[HabitLog]:
        result = await session.execute(
            select(HabitLog).where(
                HabitLog.user_id == user_id,
                HabitLog.routine_id == routine_id,
                HabitLog.log_date == day,
            )
        )
        return result.scalar_one_or_none()

    @staticmethod
    async def find_or_create(
        session: AsyncSession,
        routine: HabitRoutine,
        day: date,
        source: LogSource = LogSource.USER,
    ) -> HabitLog:
        """
        Return the routine's log for `day`, creating a pending one if absent.

        The (user, routine, day) unique constraint decides races with the day
        cycle; the loser gets DuplicateLogError.
        """
        log = await LogService.get_for_day(session, routine.user_id, routine.id, day)
        if log:
            return log
        log = HabitLog(
            user_id=routine.user_id,
            routine_id=routine.id,
            log_date=day,
            status=LogStatus.PENDING.value,
            source=source.value,
        )
        session.add(log)
        try:
            await session.flush()
        except IntegrityError:
            await session.rollback()
            logger.warning("Concurrent log creation for routine {} on {}", routine.id, day)
            raise DuplicateLogError(routine.id, day)
        return log

    @staticmethod
    async def list_logs(
        session: AsyncSession,
        user_id: int,
        date_from: Optional[date] = None,
        date_to: Optional[date] = None,
        routine_id: Optional[int] = None,
        status: Optional[str] = None,
    ) -> List[HabitLog]:
        filters = [HabitLog.user_id == user_id]
        if routine_id is not None:
            filters.append(HabitLog.routine_id == routine_id)
        if date_from is not None:
            filters.append(HabitLog.log_date >= date_from)
        if date_to is not None:
            filters.append(HabitLog.log_date <= date_to)
        if status is not None:
            filters.append(HabitLog.status == status)

        result = await session.execute(
            select(HabitLog).where(*filters).order_by(HabitLog.log_date.desc(), HabitLog.id.desc())
        )
        return list(result.scalars().all())

    @staticmethod
    async def logs_since(session: AsyncSession, user_id: int, date_from: date) -> List[HabitLog]:
        result = await session.execute(
            select(HabitLog)
            .where(HabitLog.user_id == user_id, HabitLog.log_date >= date_from)
            .order_by(HabitLog.log_date.asc())
        )
        return list(result.scalars().all())

    @staticmethod
    async def logs_for_day(session: AsyncSession, user_id: int, day: date) -> List[HabitLog]:
        result = await session.execute(
            select(HabitLog).where(HabitLog.user_id == user_id, HabitLog.log_date == day)
        )
        return list(result.scalars().all())

    @staticmethod
    def mark_completed_at(log: HabitLog, now: datetime | None = None) -> None:
        log.completed_at = now or datetime.now(timezone.utc)
