from typing import Optional, List
from datetime import datetime, date, time, timezone
from enum import Enum
from sqlmodel import SQLModel, Field, Column, JSON, UniqueConstraint
from sqlalchemy import DateTime, Index

from ..schemas.recurrence import RecurrenceRule, recurrence_from_storage, recurrence_to_storage
from ..services.schedule import is_planned_for_date


class RoutineStatus(str, Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    ARCHIVED = "archived"


class RoutineType(str, Enum):
    WAKE_UP = "wake_up"
    START_STUDY = "start_study"
    DEEP_WORK = "deep_work"
    REVIEW = "review"
    BREAK = "break"
    SLEEP = "sleep"
    EXERCISE = "exercise"
    CUSTOM = "custom"


class LogStatus(str, Enum):
    PENDING = "pending"
    DONE = "done"
    LATE = "late"
    MISSED = "missed"
    SKIPPED = "skipped"
    AUTO = "auto"


class LogSource(str, Enum):
    USER = "user"
    SYSTEM = "system"
    SESSION_HOOK = "session_hook"


# Outcomes that keep a streak alive and count as success in analytics
COUNTED_STATUSES = frozenset({LogStatus.DONE.value, LogStatus.LATE.value, LogStatus.AUTO.value})


class HabitRoutine(SQLModel, table=True):
    """
    A user's recurring habit: schedule, behavior policy and streak metrics.
    """
    __tablename__ = "habit_routines"
    __table_args__ = (
        Index("ix_habit_routines_user_status", "user_id", "status"),
        Index("ix_habit_routines_user_time_start", "user_id", "time_start"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(index=True)

    name: str = Field(max_length=80)
    type: str = Field(default=RoutineType.CUSTOM.value, max_length=20)

    # Schedule: recurrence kind plus the explicit weekday list for "custom"
    recurrence: str = Field(default="daily", max_length=20)
    days_of_week: Optional[List[str]] = Field(default=None, sa_column=Column(JSON))
    time_start: time
    time_end: Optional[time] = None
    schedule_timezone: str = Field(default="Europe/Istanbul", max_length=64)

    # Behavior
    tolerance_minutes: int = Field(default=15)
    auto_complete_by_session: bool = Field(default=True)
    min_session_minutes: int = Field(default=10)
    decay_protection: bool = Field(default=True)

    # Metrics (written by completion handler and day cycle only)
    target_consistency_percent: int = Field(default=80)
    difficulty: int = Field(default=3)
    current_streak: int = Field(default=0)
    longest_streak: int = Field(default=0)
    protection_used: bool = Field(default=False)
    last_log_date: Optional[date] = None

    xp_on_complete: int = Field(default=0)
    sort_order: int = Field(default=0)
    status: str = Field(default=RoutineStatus.ACTIVE.value, max_length=16, index=True)

    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )
    updated_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )

    @property
    def recurrence_rule(self) -> RecurrenceRule:
        return recurrence_from_storage(self.recurrence, self.days_of_week)

    def set_recurrence(self, rule: RecurrenceRule) -> None:
        self.recurrence, self.days_of_week = recurrence_to_storage(rule)

    def is_planned_for_date(self, day: date) -> bool:
        return is_planned_for_date(self.recurrence_rule, day)

    def touch(self) -> None:
        self.updated_at = datetime.now(timezone.utc)


class HabitLog(SQLModel, table=True):
    """
    Outcome of one routine on one UTC calendar day.
    """
    __tablename__ = "habit_logs"
    __table_args__ = (
        UniqueConstraint("user_id", "routine_id", "log_date", name="uq_habit_logs_user_routine_day"),
        Index("ix_habit_logs_user_date", "user_id", "log_date"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(index=True)
    routine_id: int = Field(index=True, foreign_key="habit_routines.id")

    log_date: date = Field(index=True)
    status: str = Field(default=LogStatus.PENDING.value, max_length=16)

    completed_at: Optional[datetime] = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )
    lateness_minutes: int = Field(default=0)
    resistance_snapshot: int = Field(default=0)
    streak_after: int = Field(default=0)
    auto_captured: bool = Field(default=False)
    source: str = Field(default=LogSource.USER.value, max_length=16)

    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )
    updated_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )

    @property
    def is_terminal(self) -> bool:
        return self.status != LogStatus.PENDING.value

    @property
    def counts_as_success(self) -> bool:
        return self.status in COUNTED_STATUSES

    def touch(self) -> None:
        self.updated_at = datetime.now(timezone.utc)
