import pytest

from conftest import routine_payload
from habit_engine.errors import (
    RoutineArchivedError,
    RoutineNotFoundError,
    RoutineValidationError,
    ScheduleConflictError,
)
from habit_engine.models.habit import RoutineStatus
from habit_engine.schemas.recurrence import WeekdaysRecurrence
from habit_engine.services.routine_service import RoutineService


@pytest.mark.asyncio
async def test_create_routine_applies_defaults(db_session, cache):
    service = RoutineService(cache)
    routine = await service.create_routine(db_session, 1, routine_payload(name="  Stretch  "))

    assert routine.id is not None
    assert routine.name == "Stretch"
    assert routine.status == RoutineStatus.ACTIVE.value
    assert routine.tolerance_minutes == 15
    assert routine.min_session_minutes == 10
    assert routine.decay_protection is True
    assert routine.difficulty == 3
    assert routine.schedule_timezone == "Europe/Istanbul"
    assert routine.current_streak == 0 and routine.protection_used is False


@pytest.mark.asyncio
async def test_create_rejects_malformed_time(db_session, cache):
    service = RoutineService(cache)
    payload = routine_payload(schedule={"recurrence": {"kind": "daily"}, "time_start": "7:00"})
    with pytest.raises(RoutineValidationError) as exc:
        await service.create_routine(db_session, 1, payload)
    assert any("time_start" in e for e in exc.value.details["errors"])


@pytest.mark.asyncio
async def test_create_rejects_unknown_timezone(db_session, cache):
    service = RoutineService(cache)
    payload = routine_payload(
        schedule={"recurrence": {"kind": "daily"}, "time_start": "07:00", "timezone": "Mars/Olympus"}
    )
    with pytest.raises(RoutineValidationError):
        await service.create_routine(db_session, 1, payload)


@pytest.mark.asyncio
async def test_update_rejects_blank_name_and_strips_padding(db_session, cache):
    service = RoutineService(cache)
    routine = await service.create_routine(db_session, 1, routine_payload())

    with pytest.raises(RoutineValidationError) as exc:
        await service.update_routine(db_session, 1, routine.id, {"name": "   "})
    assert any("name" in e for e in exc.value.details["errors"])

    updated = await service.update_routine(db_session, 1, routine.id, {"name": "  Evening run "})
    assert updated.name == "Evening run"


@pytest.mark.asyncio
async def test_same_start_on_overlapping_days_conflicts(db_session, cache):
    service = RoutineService(cache)
    first = await service.create_routine(db_session, 1, routine_payload())

    with pytest.raises(ScheduleConflictError) as exc:
        await service.create_routine(db_session, 1, routine_payload(
            name="Meditate",
            schedule={"recurrence": {"kind": "weekends"}, "time_start": "07:00"},
        ))
    assert exc.value.details["conflicting_routine_id"] == first.id


@pytest.mark.asyncio
async def test_disjoint_days_or_other_users_do_not_conflict(db_session, cache):
    service = RoutineService(cache)
    await service.create_routine(db_session, 1, routine_payload(
        schedule={"recurrence": {"kind": "weekdays"}, "time_start": "07:00"},
    ))
    weekend = await service.create_routine(db_session, 1, routine_payload(
        name="Long run",
        schedule={"recurrence": {"kind": "weekends"}, "time_start": "07:00"},
    ))
    other_user = await service.create_routine(db_session, 2, routine_payload())
    shifted = await service.create_routine(db_session, 1, routine_payload(
        name="Journal",
        schedule={"recurrence": {"kind": "daily"}, "time_start": "07:01"},
    ))
    assert weekend.id and other_user.id and shifted.id


@pytest.mark.asyncio
async def test_paused_routines_do_not_block_but_reactivation_is_checked(db_session, cache):
    service = RoutineService(cache)
    first = await service.create_routine(db_session, 1, routine_payload())
    await service.set_status(db_session, 1, first.id, "paused")

    second = await service.create_routine(db_session, 1, routine_payload(name="Swim"))
    assert second.status == RoutineStatus.ACTIVE.value

    with pytest.raises(ScheduleConflictError):
        await service.set_status(db_session, 1, first.id, RoutineStatus.ACTIVE)


@pytest.mark.asyncio
async def test_update_schedule_checks_conflicts_and_excludes_self(db_session, cache):
    service = RoutineService(cache)
    first = await service.create_routine(db_session, 1, routine_payload())
    second = await service.create_routine(db_session, 1, routine_payload(
        name="Review notes",
        schedule={"recurrence": {"kind": "daily"}, "time_start": "20:00"},
    ))

    # moving onto itself is fine
    updated = await service.update_routine(db_session, 1, first.id, {
        "schedule": {"recurrence": {"kind": "weekdays"}, "time_start": "07:00"},
        "behavior": {"tolerance_minutes": 30},
    })
    assert updated.recurrence_rule == WeekdaysRecurrence()
    assert updated.tolerance_minutes == 30
    assert updated.min_session_minutes == 10

    with pytest.raises(ScheduleConflictError):
        await service.update_routine(db_session, 1, second.id, {
            "schedule": {"recurrence": {"kind": "custom", "days": ["Wed"]}, "time_start": "07:00"},
        })


@pytest.mark.asyncio
async def test_archived_is_terminal(db_session, cache):
    service = RoutineService(cache)
    routine = await service.create_routine(db_session, 1, routine_payload())
    await service.archive_routine(db_session, 1, routine.id)

    with pytest.raises(RoutineArchivedError):
        await service.set_status(db_session, 1, routine.id, "active")
    with pytest.raises(RoutineArchivedError):
        await service.update_routine(db_session, 1, routine.id, {"name": "Again"})

    listed = await RoutineService.list_routines(db_session, 1, routine.created_at.date())
    assert listed == []


@pytest.mark.asyncio
async def test_other_users_routine_is_not_found(db_session, cache):
    service = RoutineService(cache)
    routine = await service.create_routine(db_session, 1, routine_payload())
    with pytest.raises(RoutineNotFoundError):
        await service.update_routine(db_session, 2, routine.id, {"name": "Mine now"})


@pytest.mark.asyncio
async def test_invalid_status_is_rejected(db_session, cache):
    service = RoutineService(cache)
    routine = await service.create_routine(db_session, 1, routine_payload())
    with pytest.raises(RoutineValidationError):
        await service.set_status(db_session, 1, routine.id, "deleted")


@pytest.mark.asyncio
async def test_mutations_invalidate_user_cache(db_session, cache):
    service = RoutineService(cache)
    cache.set(cache.make_key("risk", 1, 14), ["stale"])
    cache.set(cache.make_key("risk", 2, 14), ["other"])

    await service.create_routine(db_session, 1, routine_payload())

    assert cache.get(cache.make_key("risk", 1, 14)) is None
    assert cache.get(cache.make_key("risk", 2, 14)) == ["other"]


@pytest.mark.asyncio
async def test_list_orders_by_order_then_start(db_session, cache):
    service = RoutineService(cache)
    late = await service.create_routine(db_session, 1, routine_payload(
        name="Sleep", schedule={"recurrence": {"kind": "daily"}, "time_start": "23:00"},
    ))
    early = await service.create_routine(db_session, 1, routine_payload(name="Wake"))
    pinned = await service.create_routine(db_session, 1, routine_payload(
        name="Pinned", order=-1, schedule={"recurrence": {"kind": "daily"}, "time_start": "12:00"},
    ))

    listed = await RoutineService.list_routines(db_session, 1, early.created_at.date())
    assert [r.id for r, _ in listed] == [pinned.id, early.id, late.id]
    assert all(log is None for _, log in listed)
