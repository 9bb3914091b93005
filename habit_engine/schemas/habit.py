from __future__ import annotations
from datetime import date, datetime, time
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ..models.habit import HabitLog, HabitRoutine, RoutineStatus, RoutineType
from ..utils.timeparse import format_hhmm, parse_hhmm
from ..utils.validators import is_valid_timezone
from .recurrence import DailyRecurrence, Recurrence


def _coerce_hhmm(value: Any, field: str) -> Any:
    if value is None or isinstance(value, time):
        return value
    parsed = parse_hhmm(value)
    if parsed is None:
        raise ValueError(f"{field} must be in HH:MM format")
    return parsed


# ---------------------------------------------------------------------------
# Requests
# ---------------------------------------------------------------------------

class ScheduleIn(BaseModel):
    recurrence: Recurrence = Field(default_factory=DailyRecurrence)
    time_start: time
    time_end: Optional[time] = None
    timezone: str = "Europe/Istanbul"

    @field_validator("time_start", mode="before")
    @classmethod
    def _time_start(cls, v):
        return _coerce_hhmm(v, "time_start")

    @field_validator("time_end", mode="before")
    @classmethod
    def _time_end(cls, v):
        return _coerce_hhmm(v, "time_end")

    @field_validator("timezone")
    @classmethod
    def _timezone(cls, v: str) -> str:
        if not is_valid_timezone(v):
            raise ValueError(f"Unknown timezone '{v}'")
        return v


class BehaviorIn(BaseModel):
    tolerance_minutes: int = Field(default=15, ge=0, le=180)
    auto_complete_by_session: bool = True
    min_session_minutes: int = Field(default=10, ge=1, le=600)
    decay_protection: bool = True


class BehaviorPatch(BaseModel):
    tolerance_minutes: Optional[int] = Field(default=None, ge=0, le=180)
    auto_complete_by_session: Optional[bool] = None
    min_session_minutes: Optional[int] = Field(default=None, ge=1, le=600)
    decay_protection: Optional[bool] = None


class RoutineCreate(BaseModel):
    name: str = Field(min_length=1, max_length=80)
    type: RoutineType = RoutineType.CUSTOM
    schedule: ScheduleIn
    behavior: BehaviorIn = Field(default_factory=BehaviorIn)
    difficulty: int = Field(default=3, ge=1, le=5)
    target_consistency_percent: int = Field(default=80, ge=10, le=100)
    xp_on_complete: int = Field(default=0, ge=0)
    order: int = 0

    @field_validator("name")
    @classmethod
    def _strip_name(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("name must not be blank")
        return v


class RoutineUpdate(BaseModel):
    """Partial update; a provided schedule replaces the stored one entirely."""
    name: Optional[str] = Field(default=None, min_length=1, max_length=80)
    type: Optional[RoutineType] = None
    schedule: Optional[ScheduleIn] = None
    behavior: Optional[BehaviorPatch] = None
    difficulty: Optional[int] = Field(default=None, ge=1, le=5)
    target_consistency_percent: Optional[int] = Field(default=None, ge=10, le=100)
    xp_on_complete: Optional[int] = Field(default=None, ge=0)
    order: Optional[int] = None

    @field_validator("name")
    @classmethod
    def _strip_name(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        v = v.strip()
        if not v:
            raise ValueError("name must not be blank")
        return v


class StatusUpdate(BaseModel):
    status: RoutineStatus


class CompletionRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    action: Literal["done", "skip"]
    target_date: Optional[date] = Field(default=None, alias="date")


class SessionHookRequest(BaseModel):
    started_at: datetime
    duration_minutes: int = Field(ge=0)


# ---------------------------------------------------------------------------
# Responses
# ---------------------------------------------------------------------------

class ScheduleOut(BaseModel):
    recurrence: Recurrence
    time_start: str
    time_end: Optional[str] = None
    timezone: str


class BehaviorOut(BaseModel):
    tolerance_minutes: int
    auto_complete_by_session: bool
    min_session_minutes: int
    decay_protection: bool


class MetricsOut(BaseModel):
    difficulty: int
    target_consistency_percent: int
    current_streak: int
    longest_streak: int
    protection_used: bool
    last_log_date: Optional[date] = None


class LogRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    user_id: int
    routine_id: int
    log_date: date
    status: str
    completed_at: Optional[datetime] = None
    lateness_minutes: int
    resistance_snapshot: int
    streak_after: int
    auto_captured: bool
    source: str


class RoutineRead(BaseModel):
    id: int
    user_id: int
    name: str
    type: str
    schedule: ScheduleOut
    behavior: BehaviorOut
    metrics: MetricsOut
    xp_on_complete: int
    order: int
    status: str
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_model(cls, r: HabitRoutine) -> "RoutineRead":
        return cls(
            id=r.id,
            user_id=r.user_id,
            name=r.name,
            type=r.type,
            schedule=ScheduleOut(
                recurrence=r.recurrence_rule,
                time_start=format_hhmm(r.time_start),
                time_end=format_hhmm(r.time_end),
                timezone=r.schedule_timezone,
            ),
            behavior=BehaviorOut(
                tolerance_minutes=r.tolerance_minutes,
                auto_complete_by_session=r.auto_complete_by_session,
                min_session_minutes=r.min_session_minutes,
                decay_protection=r.decay_protection,
            ),
            metrics=MetricsOut(
                difficulty=r.difficulty,
                target_consistency_percent=r.target_consistency_percent,
                current_streak=r.current_streak,
                longest_streak=r.longest_streak,
                protection_used=r.protection_used,
                last_log_date=r.last_log_date,
            ),
            xp_on_complete=r.xp_on_complete,
            order=r.sort_order,
            status=r.status,
            created_at=r.created_at,
            updated_at=r.updated_at,
        )


class RoutineWithToday(RoutineRead):
    today_log: Optional[LogRead] = None

    @classmethod
    def build(cls, r: HabitRoutine, log: Optional[HabitLog]) -> "RoutineWithToday":
        base = RoutineRead.from_model(r)
        return cls(**base.model_dump(), today_log=LogRead.model_validate(log) if log else None)


# ---------------------------------------------------------------------------
# Analytics
# ---------------------------------------------------------------------------

class RoutineRisk(BaseModel):
    routine_id: int
    name: str
    type: str
    streak: int
    success_rate_7: float
    success_rate_14: float
    volatility: float
    resistance: int
    missed_yesterday: bool
    risk_score: float
    risk_level: Literal["low", "medium", "high"]


class HeatmapCell(BaseModel):
    key: str
    weekday: str
    hour: str
    planned: int = 0
    completed: int = 0
    late: int = 0
    missed: int = 0
    skipped: int = 0
    success_rate: float = 0.0


class Heatmap(BaseModel):
    range_days: int
    cells: list[HeatmapCell]
    weakest: list[HeatmapCell]
    strongest: list[HeatmapCell]


class OutcomeCounts(BaseModel):
    pending: int = 0
    done: int = 0
    late: int = 0
    missed: int = 0
    skipped: int = 0
    auto: int = 0
    total: int = 0


class OverviewTotals(BaseModel):
    planned: int = 0
    completed: int = 0
    late: int = 0
    missed: int = 0
    skipped: int = 0


class Overview(BaseModel):
    consistency: float
    avg_streak: int
    longest_streak: int
    active_habits: int
    totals: OverviewTotals


class TrendPoint(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    day: date = Field(alias="date")
    planned: int
    completed: int
    success_rate: float


class Trends(BaseModel):
    days: int
    series: list[TrendPoint]
