from __future__ import annotations
from typing import List, Optional, Set, Tuple
from datetime import date, datetime
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select
from loguru import logger

from ..config import settings
from ..models.habit import HabitLog, HabitRoutine, LogSource, LogStatus
from .analytics_cache import AnalyticsCache
from .log_service import LogService
from .routine_service import RoutineService
from .schedule import as_utc, utc_day, utc_now
from .streaks import apply_missed_day


async def seed_day(session: AsyncSession, now: Optional[datetime] = None) -> int:
    """
    Create pending logs for every active routine planned today.

    Skips the whole day when any log for it already exists, so repeated
    runs are no-ops. Each log is committed on its own; a routine whose log
    appeared in the meantime is skipped without affecting the others.
    Returns the number of logs created.
    """
    day = utc_day(now or utc_now())
    existing = await session.execute(select(HabitLog.id).where(HabitLog.log_date == day).limit(1))
    if existing.first() is not None:
        logger.debug("Logs for {} already seeded; skipping", day)
        return 0

    planned = [
        (routine.id, routine.user_id)
        for routine in await RoutineService.list_active(session)
        if routine.is_planned_for_date(day)
    ]

    created = 0
    for routine_id, user_id in planned:
        session.add(HabitLog(
            user_id=user_id,
            routine_id=routine_id,
            log_date=day,
            status=LogStatus.PENDING.value,
            source=LogSource.SYSTEM.value,
        ))
        try:
            await session.commit()
        except IntegrityError:
            await session.rollback()
            logger.info("Routine {} already has a log for {}; not seeding it", routine_id, day)
            continue
        created += 1

    logger.info("Seeded {} pending habit logs for {}", created, day)
    return created


async def _pending_for_day(session: AsyncSession, day: date) -> List[Tuple[int, int]]:
    result = await session.execute(
        select(HabitLog.id, HabitLog.user_id)
        .where(HabitLog.log_date == day, HabitLog.status == LogStatus.PENDING.value)
        .order_by(HabitLog.user_id, HabitLog.routine_id, HabitLog.id)
    )
    return [(row[0], row[1]) for row in result.all()]


async def close_day(
    session: AsyncSession,
    now: Optional[datetime] = None,
    cache: Optional[AnalyticsCache] = None,
    reset_policy: Optional[str] = None,
) -> int:
    """
    Turn today's pending logs into missed ones and apply decay protection.

    Each log is closed in its own transaction, one after another, so two
    misses of one routine see each other's effect. A failing log is logged
    and skipped. Returns the number of logs closed.
    """
    day = utc_day(now or utc_now())
    policy = reset_policy or settings.PROTECTION_RESET_POLICY
    closed = 0
    affected_users: Set[int] = set()

    for log_id, user_id in await _pending_for_day(session, day):
        try:
            log = await session.get(HabitLog, log_id)
            if log is None or log.is_terminal:
                continue
            routine = await session.get(HabitRoutine, log.routine_id)
            LogService.transition(log, LogStatus.MISSED)
            if routine is not None:
                forgiven = apply_missed_day(routine, policy)
                if forgiven:
                    logger.info("Decay protection spent on routine {} for {}", routine.id, day)
                routine.last_log_date = day
                routine.touch()
                session.add(routine)
            session.add(log)
            await session.commit()
            closed += 1
            affected_users.add(user_id)
        except Exception as e:
            logger.exception("Failed to close habit log {} for {}: {}", log_id, day, e)
            await session.rollback()

    if cache is not None:
        for user_id in affected_users:
            cache.invalidate_user(user_id)

    logger.info("Closed {} pending habit logs as missed for {}", closed, day)
    return closed


class DayCycleWindow:
    """
    Decides when the periodic poll should seed or close a UTC day.

    Each step fires at most once per day per process, on the first poll at
    or after its hour.
    """

    def __init__(self, seed_hour: int = 0, close_hour: int = 23):
        self.seed_hour = seed_hour
        self.close_hour = close_hour
        self.last_seeded: Optional[date] = None
        self.last_closed: Optional[date] = None

    def due_for_seed(self, now: datetime) -> bool:
        now = as_utc(now)
        return now.hour >= self.seed_hour and self.last_seeded != now.date()

    def due_for_close(self, now: datetime) -> bool:
        now = as_utc(now)
        return now.hour >= self.close_hour and self.last_closed != now.date()

    def mark_seeded(self, now: datetime) -> None:
        self.last_seeded = utc_day(now)

    def mark_closed(self, now: datetime) -> None:
        self.last_closed = utc_day(now)
