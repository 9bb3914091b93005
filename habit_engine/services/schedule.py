from __future__ import annotations
from datetime import date, datetime, time, timedelta, timezone

from ..schemas.recurrence import WEEK, Weekday, RecurrenceRule


def weekday_of(day: date) -> Weekday:
    return WEEK[day.weekday()]


def is_planned_for_date(rule: RecurrenceRule, day: date) -> bool:
    """
    Whether a routine with this recurrence is supposed to happen on `day`.

    Seeding, closing and analytics all go through this predicate; it depends
    on nothing but the recurrence and the calendar date.
    """
    return weekday_of(day) in rule.weekdays()


def recurrences_overlap(a: RecurrenceRule, b: RecurrenceRule) -> bool:
    return bool(a.weekdays() & b.weekdays())


def as_utc(moment: datetime) -> datetime:
    """Naive datetimes are taken to be UTC already."""
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)


def utc_day(moment: datetime) -> date:
    """Calendar day of `moment` with the boundary at midnight UTC."""
    return as_utc(moment).date()


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def planned_start(day: date, start: time) -> datetime:
    return datetime.combine(day, start.replace(tzinfo=None), tzinfo=timezone.utc)


def window_start(today: date, days: int) -> date:
    """First day of a trailing window of `days` days ending with `today`."""
    return today - timedelta(days=max(1, days) - 1)
