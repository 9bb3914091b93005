from __future__ import annotations
import re
from datetime import time
from typing import Optional

_HHMM = re.compile(r"^\d{2}:\d{2}$")

def parse_hhmm(s: str) -> Optional[time]:
    """Parse a strict zero-padded "HH:MM" string; None when malformed."""
    if not isinstance(s, str) or not _HHMM.match(s.strip()):
        return None
    h, m = (int(p) for p in s.strip().split(":"))
    if not (0 <= h <= 23 and 0 <= m <= 59):
        return None
    return time(hour=h, minute=m)

def format_hhmm(t: Optional[time]) -> Optional[str]:
    return t.strftime("%H:%M") if t else None
