from datetime import date, datetime, time, timedelta, timezone

import pytest
from pydantic import TypeAdapter, ValidationError

from habit_engine.schemas.recurrence import (
    CustomRecurrence,
    DailyRecurrence,
    Recurrence,
    Weekday,
    WeekdaysRecurrence,
    WeekendsRecurrence,
    recurrence_from_storage,
    recurrence_to_storage,
)
from habit_engine.services.schedule import (
    as_utc,
    is_planned_for_date,
    planned_start,
    recurrences_overlap,
    utc_day,
    weekday_of,
    window_start,
)
from habit_engine.utils.timeparse import format_hhmm, parse_hhmm

MONDAY = date(2026, 10, 19)
SATURDAY = date(2026, 10, 24)


def test_weekday_of_uses_calendar_weekday():
    assert weekday_of(MONDAY) == Weekday.MON
    assert weekday_of(SATURDAY) == Weekday.SAT


def test_daily_is_planned_every_day():
    rule = DailyRecurrence()
    assert all(is_planned_for_date(rule, MONDAY + timedelta(days=i)) for i in range(7))


def test_weekdays_and_weekends_split_the_week():
    for i in range(7):
        day = MONDAY + timedelta(days=i)
        assert is_planned_for_date(WeekdaysRecurrence(), day) != is_planned_for_date(WeekendsRecurrence(), day)
    assert is_planned_for_date(WeekendsRecurrence(), SATURDAY)


def test_custom_recurrence_only_listed_days():
    rule = CustomRecurrence(days=frozenset({Weekday.MON, Weekday.THU}))
    planned = [d for d in (MONDAY + timedelta(days=i) for i in range(7)) if is_planned_for_date(rule, d)]
    assert planned == [MONDAY, MONDAY + timedelta(days=3)]


def test_custom_recurrence_requires_days():
    with pytest.raises(ValidationError):
        CustomRecurrence(days=frozenset())


def test_recurrence_is_parsed_by_kind():
    adapter = TypeAdapter(Recurrence)
    assert isinstance(adapter.validate_python({"kind": "weekends"}), WeekendsRecurrence)
    rule = adapter.validate_python({"kind": "custom", "days": ["Tue", "Sun"]})
    assert rule.weekdays() == frozenset({Weekday.TUE, Weekday.SUN})
    with pytest.raises(ValidationError):
        adapter.validate_python({"kind": "fortnightly"})


def test_recurrence_storage_keeps_custom_days_in_week_order():
    rule = CustomRecurrence(days=frozenset({Weekday.SUN, Weekday.MON}))
    kind, days = recurrence_to_storage(rule)
    assert (kind, days) == ("custom", ["Mon", "Sun"])
    assert recurrence_from_storage(kind, days) == rule
    assert recurrence_to_storage(DailyRecurrence()) == ("daily", None)


def test_recurrences_overlap():
    assert recurrences_overlap(DailyRecurrence(), WeekendsRecurrence())
    assert not recurrences_overlap(WeekdaysRecurrence(), WeekendsRecurrence())
    assert recurrences_overlap(CustomRecurrence(days=frozenset({Weekday.FRI})), WeekdaysRecurrence())


def test_utc_day_boundary():
    late_evening_in_new_york = datetime(2026, 10, 19, 23, 30, tzinfo=timezone(timedelta(hours=-4)))
    assert utc_day(late_evening_in_new_york) == date(2026, 10, 20)
    assert as_utc(datetime(2026, 10, 19, 8, 0)).tzinfo == timezone.utc


def test_planned_start_is_utc_on_log_day():
    assert planned_start(MONDAY, time(7, 0)) == datetime(2026, 10, 19, 7, 0, tzinfo=timezone.utc)


def test_window_start():
    assert window_start(MONDAY, 7) == date(2026, 10, 13)
    assert window_start(MONDAY, 1) == MONDAY


def test_parse_hhmm_is_strict():
    assert parse_hhmm("07:05") == time(7, 5)
    assert parse_hhmm("7:05") is None
    assert parse_hhmm("24:00") is None
    assert parse_hhmm("12:60") is None
    assert format_hhmm(time(18, 30)) == "18:30"
    assert format_hhmm(None) is None
