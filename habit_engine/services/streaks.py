from __future__ import annotations
import math
from datetime import datetime
from typing import Optional

from ..models.habit import COUNTED_STATUSES, HabitRoutine

RESISTANCE_DECAY = 0.18
DEFAULT_DIFFICULTY = 3

# Protection reset policies
PROTECTION_NEVER_RESETS = "never"
PROTECTION_RESETS_WITH_STREAK = "on_streak_reset"


def resistance_score(difficulty: Optional[int], streak: int) -> int:
    """
    Synthetic difficulty index: 2 x difficulty, decaying exponentially as the
    streak grows, never below 1.
    """
    base = DEFAULT_DIFFICULTY if difficulty is None else difficulty
    return max(1, round(base * 2 * math.exp(-RESISTANCE_DECAY * max(0, streak))))


def lateness_minutes(now: datetime, planned: datetime) -> int:
    return max(0, round((now - planned).total_seconds() / 60))


def next_streak(current_streak: int, previous_status: Optional[str]) -> int:
    """Streak after a success, given yesterday's log status (None when absent)."""
    if previous_status in COUNTED_STATUSES:
        return (current_streak or 0) + 1
    return 1


def record_success(routine: HabitRoutine, previous_status: Optional[str]) -> int:
    """Advance streak metrics for a counted outcome and return the new streak."""
    streak = next_streak(routine.current_streak, previous_status)
    routine.current_streak = streak
    if streak > (routine.longest_streak or 0):
        routine.longest_streak = streak
    return streak


def apply_missed_day(routine: HabitRoutine, reset_policy: str = PROTECTION_NEVER_RESETS) -> bool:
    """
    Apply the decay-protection rule for one missed day.

    Returns True when the miss was forgiven (streak kept, protection consumed).
    """
    if routine.current_streak <= 0:
        return False
    if routine.decay_protection and not routine.protection_used:
        routine.protection_used = True
        return True
    routine.current_streak = 0
    if reset_policy == PROTECTION_RESETS_WITH_STREAK:
        routine.protection_used = False
    return False
