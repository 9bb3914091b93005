from __future__ import annotations
from zoneinfo import available_timezones

def is_valid_timezone(tz: str) -> bool:
    return tz in available_timezones()

def clamp_window(days: int, default: int, maximum: int) -> int:
    """Coerce a requested analytics window into [1, maximum]."""
    if not days or days < 1:
        return default
    return min(days, maximum)
