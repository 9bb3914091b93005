from __future__ import annotations
from enum import Enum
from typing import Annotated, FrozenSet, Literal, Union

from pydantic import BaseModel, ConfigDict, Field


class Weekday(str, Enum):
    MON = "Mon"
    TUE = "Tue"
    WED = "Wed"
    THU = "Thu"
    FRI = "Fri"
    SAT = "Sat"
    SUN = "Sun"


# Indexed by date.weekday() (Monday == 0)
WEEK: tuple[Weekday, ...] = tuple(Weekday)
WORKDAYS: FrozenSet[Weekday] = frozenset(WEEK[:5])
WEEKEND: FrozenSet[Weekday] = frozenset(WEEK[5:])


class RecurrenceRule(BaseModel):
    model_config = ConfigDict(frozen=True)

    def weekdays(self) -> FrozenSet[Weekday]:
        raise NotImplementedError


class DailyRecurrence(RecurrenceRule):
    kind: Literal["daily"] = "daily"

    def weekdays(self) -> FrozenSet[Weekday]:
        return frozenset(WEEK)


class WeekdaysRecurrence(RecurrenceRule):
    kind: Literal["weekdays"] = "weekdays"

    def weekdays(self) -> FrozenSet[Weekday]:
        return WORKDAYS


class WeekendsRecurrence(RecurrenceRule):
    kind: Literal["weekends"] = "weekends"

    def weekdays(self) -> FrozenSet[Weekday]:
        return WEEKEND


class CustomRecurrence(RecurrenceRule):
    kind: Literal["custom"] = "custom"
    days: FrozenSet[Weekday] = Field(min_length=1)

    def weekdays(self) -> FrozenSet[Weekday]:
        return self.days


Recurrence = Annotated[
    Union[DailyRecurrence, WeekdaysRecurrence, WeekendsRecurrence, CustomRecurrence],
    Field(discriminator="kind"),
]


def recurrence_from_storage(kind: str, days: list[str] | None) -> RecurrenceRule:
    """Rebuild the tagged recurrence from its (kind, days) column pair."""
    if kind == "daily":
        return DailyRecurrence()
    if kind == "weekdays":
        return WeekdaysRecurrence()
    if kind == "weekends":
        return WeekendsRecurrence()
    if kind == "custom":
        return CustomRecurrence(days=frozenset(Weekday(d) for d in (days or [])))
    raise ValueError(f"Unknown recurrence kind '{kind}'")


def recurrence_to_storage(rule: RecurrenceRule) -> tuple[str, list[str] | None]:
    if isinstance(rule, CustomRecurrence):
        return rule.kind, [d.value for d in WEEK if d in rule.days]
    return rule.kind, None
