import asyncio
from datetime import date, datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest
from sqlmodel import select

from conftest import routine_payload
from habit_engine.models.habit import HabitLog, HabitRoutine, LogSource, LogStatus
from habit_engine.scheduler.jobs import habit_day_cycle_job
from habit_engine.services.completion_service import CompletionService
from habit_engine.services.day_cycle_service import DayCycleWindow, close_day, seed_day
from habit_engine.services.routine_service import RoutineService

MONDAY = date(2026, 10, 19)


def at(day: date, hour: int, minute: int = 0) -> datetime:
    return datetime(day.year, day.month, day.day, hour, minute, tzinfo=timezone.utc)


async def _logs(db_session, day):
    result = await db_session.execute(select(HabitLog).where(HabitLog.log_date == day).order_by(HabitLog.routine_id))
    return list(result.scalars().all())


@pytest.mark.asyncio
async def test_seed_creates_pending_logs_for_planned_routines_only(db_session, cache):
    service = RoutineService(cache)
    daily = await service.create_routine(db_session, 1, routine_payload())
    await service.create_routine(db_session, 1, routine_payload(
        name="Hike", schedule={"recurrence": {"kind": "weekends"}, "time_start": "09:00"},
    ))
    paused = await service.create_routine(db_session, 2, routine_payload())
    await service.set_status(db_session, 2, paused.id, "paused")

    created = await seed_day(db_session, at(MONDAY, 0, 5))

    assert created == 1
    logs = await _logs(db_session, MONDAY)
    assert [(log.routine_id, log.status, log.source) for log in logs] == [
        (daily.id, LogStatus.PENDING.value, LogSource.SYSTEM.value)
    ]


@pytest.mark.asyncio
async def test_seed_is_idempotent_per_day(db_session, cache):
    await RoutineService(cache).create_routine(db_session, 1, routine_payload())

    assert await seed_day(db_session, at(MONDAY, 0, 5)) == 1
    assert await seed_day(db_session, at(MONDAY, 0, 10)) == 0
    assert len(await _logs(db_session, MONDAY)) == 1


@pytest.mark.asyncio
async def test_seed_skips_day_with_any_existing_log(db_session, cache):
    service = RoutineService(cache)
    first = await service.create_routine(db_session, 1, routine_payload())
    await service.create_routine(db_session, 1, routine_payload(
        name="Read", schedule={"recurrence": {"kind": "daily"}, "time_start": "21:00"},
    ))
    await CompletionService(cache).mark_completion(db_session, 1, first.id, "done", now=at(MONDAY, 7, 0))

    assert await seed_day(db_session, at(MONDAY, 8, 0)) == 0
    assert len(await _logs(db_session, MONDAY)) == 1


@pytest.mark.asyncio
async def test_seed_keeps_other_routines_when_a_log_lands_mid_seed(db_session, cache, monkeypatch):
    service = RoutineService(cache)
    early = await service.create_routine(db_session, 1, routine_payload())
    late = await service.create_routine(db_session, 2, routine_payload(name="Stretch"))
    late.current_streak = 5
    late.protection_used = True
    db_session.add(late)
    await db_session.commit()
    early_id, late_id = early.id, late.id

    real_list_active = RoutineService.list_active

    async def list_active_then_complete(session, user_id=None):
        routines = await real_list_active(session, user_id)
        await CompletionService(cache).mark_completion(session, 1, early_id, "done", now=at(MONDAY, 0, 5))
        return routines

    monkeypatch.setattr(RoutineService, "list_active", staticmethod(list_active_then_complete))

    assert await seed_day(db_session, at(MONDAY, 0, 5)) == 1

    statuses = {log.routine_id: log.status for log in await _logs(db_session, MONDAY)}
    assert statuses == {early_id: LogStatus.DONE.value, late_id: LogStatus.PENDING.value}

    assert await close_day(db_session, at(MONDAY, 23, 5)) == 1
    missed = await db_session.get(HabitRoutine, late_id)
    await db_session.refresh(missed)
    assert missed.current_streak == 0


@pytest.mark.asyncio
async def test_close_marks_pending_as_missed(db_session, cache):
    routine = await RoutineService(cache).create_routine(db_session, 1, routine_payload())
    await seed_day(db_session, at(MONDAY, 0, 5))

    assert await close_day(db_session, at(MONDAY, 23, 5), cache=cache) == 1
    (log,) = await _logs(db_session, MONDAY)
    assert log.status == LogStatus.MISSED.value
    assert routine.current_streak == 0
    assert routine.protection_used is False


@pytest.mark.asyncio
async def test_close_leaves_resolved_logs_alone(db_session, cache):
    routine = await RoutineService(cache).create_routine(db_session, 1, routine_payload())
    await seed_day(db_session, at(MONDAY, 0, 5))
    await CompletionService(cache).mark_completion(db_session, 1, routine.id, "done", now=at(MONDAY, 7, 5))

    assert await close_day(db_session, at(MONDAY, 23, 5)) == 0
    (log,) = await _logs(db_session, MONDAY)
    assert log.status == LogStatus.DONE.value
    assert routine.current_streak == 1


@pytest.mark.asyncio
async def test_decay_protection_absorbs_one_miss_then_resets(db_session, cache):
    routine = await RoutineService(cache).create_routine(db_session, 1, routine_payload())
    routine.current_streak = 5
    routine.longest_streak = 5
    db_session.add(routine)
    await db_session.commit()

    await seed_day(db_session, at(MONDAY, 0, 5))
    await close_day(db_session, at(MONDAY, 23, 5))
    assert routine.current_streak == 5
    assert routine.protection_used is True

    tuesday = MONDAY + timedelta(days=1)
    await seed_day(db_session, at(tuesday, 0, 5))
    await close_day(db_session, at(tuesday, 23, 5))
    assert routine.current_streak == 0
    assert routine.protection_used is True
    assert routine.longest_streak == 5


@pytest.mark.asyncio
async def test_protection_rearms_with_streak_reset_policy(db_session, cache):
    routine = await RoutineService(cache).create_routine(db_session, 1, routine_payload())
    routine.current_streak = 3
    routine.protection_used = True
    db_session.add(routine)
    await db_session.commit()

    await seed_day(db_session, at(MONDAY, 0, 5))
    await close_day(db_session, at(MONDAY, 23, 5), reset_policy="on_streak_reset")

    assert routine.current_streak == 0
    assert routine.protection_used is False


@pytest.mark.asyncio
async def test_close_continues_after_a_failing_log(db_session, cache, monkeypatch):
    service = RoutineService(cache)
    broken = await service.create_routine(db_session, 1, routine_payload())
    fine = await service.create_routine(db_session, 1, routine_payload(
        name="Read", schedule={"recurrence": {"kind": "daily"}, "time_start": "21:00"},
    ))
    broken_id, fine_id = broken.id, fine.id
    await seed_day(db_session, at(MONDAY, 0, 5))

    from habit_engine.services import day_cycle_service
    real_apply = day_cycle_service.apply_missed_day

    def flaky_apply(routine, policy):
        if routine.id == broken_id:
            raise RuntimeError("disk full")
        return real_apply(routine, policy)

    monkeypatch.setattr(day_cycle_service, "apply_missed_day", flaky_apply)

    assert await close_day(db_session, at(MONDAY, 23, 5)) == 1

    result = await db_session.execute(
        select(HabitLog.routine_id, HabitLog.status).where(HabitLog.log_date == MONDAY)
    )
    statuses = dict(result.all())
    assert statuses[broken_id] == LogStatus.PENDING.value
    assert statuses[fine_id] == LogStatus.MISSED.value


@pytest.mark.asyncio
async def test_close_invalidates_affected_users(db_session, cache):
    await RoutineService(cache).create_routine(db_session, 1, routine_payload())
    await seed_day(db_session, at(MONDAY, 0, 5))
    cache.set(cache.make_key("heatmap", 1, 30), "stale")

    await close_day(db_session, at(MONDAY, 23, 5), cache=cache)

    assert cache.get(cache.make_key("heatmap", 1, 30)) is None


def test_day_cycle_window_fires_each_step_once_per_day():
    window = DayCycleWindow(seed_hour=0, close_hour=23)
    morning = at(MONDAY, 0, 5)
    night = at(MONDAY, 23, 5)

    assert window.due_for_seed(morning)
    assert not window.due_for_close(morning)
    window.mark_seeded(morning)
    assert not window.due_for_seed(at(MONDAY, 12))

    assert window.due_for_close(night)
    window.mark_closed(night)
    assert not window.due_for_close(at(MONDAY, 23, 55))

    next_morning = at(MONDAY + timedelta(days=1), 0, 5)
    assert window.due_for_seed(next_morning)


def test_day_cycle_job_runs_due_steps(monkeypatch):
    fake_session = AsyncMock()
    fake_session.close = AsyncMock()
    monkeypatch.setattr("habit_engine.scheduler.jobs.AsyncSessionLocal", lambda: fake_session)
    seed = AsyncMock(return_value=2)
    close = AsyncMock(return_value=0)
    monkeypatch.setattr("habit_engine.scheduler.jobs.seed_day", seed)
    monkeypatch.setattr("habit_engine.scheduler.jobs.close_day", close)

    window = DayCycleWindow(seed_hour=0, close_hour=23)
    asyncio.run(habit_day_cycle_job(window, now=at(MONDAY, 0, 5)))
    asyncio.run(habit_day_cycle_job(window, now=at(MONDAY, 0, 10)))

    seed.assert_awaited_once()
    close.assert_not_awaited()
    fake_session.close.assert_awaited()


def test_day_cycle_job_logs_and_rolls_back_on_error(monkeypatch):
    fake_session = AsyncMock()
    fake_session.close = AsyncMock()
    monkeypatch.setattr("habit_engine.scheduler.jobs.AsyncSessionLocal", lambda: fake_session)
    monkeypatch.setattr("habit_engine.scheduler.jobs.seed_day", AsyncMock(side_effect=RuntimeError("db down")))

    window = DayCycleWindow()
    asyncio.run(habit_day_cycle_job(window, now=at(MONDAY, 0, 5)))

    fake_session.rollback.assert_awaited()
    fake_session.close.assert_awaited()
    # not marked, so the next poll retries
    assert window.due_for_seed(at(MONDAY, 0, 10))
