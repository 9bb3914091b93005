from __future__ import annotations
import time
from typing import Any, Callable, Dict, Optional, Tuple
from loguru import logger


class AnalyticsCache:
    """
    Process-local, short-TTL cache for analytics results.

    Keys are "{user_id}:{operation}:{window}" so that every entry belonging to
    a user can be dropped with a single prefix invalidation. One instance is
    created per process and handed to every service that reads or mutates
    habit data.
    """

    def __init__(self, default_ttl: float = 15.0, clock: Callable[[], float] = time.monotonic):
        self.default_ttl = default_ttl
        self._clock = clock
        self._entries: Dict[str, Tuple[Any, float]] = {}

    @staticmethod
    def make_key(operation: str, user_id: int, window: int | None = None) -> str:
        return f"{user_id}:{operation}:{window if window is not None else '-'}"

    @staticmethod
    def user_prefix(user_id: int) -> str:
        return f"{user_id}:"

    def get(self, key: str) -> Optional[Any]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if self._clock() >= expires_at:
            self._entries.pop(key, None)
            return None
        return value

    def set(self, key: str, value: Any, ttl: float | None = None) -> None:
        self._entries[key] = (value, self._clock() + (self.default_ttl if ttl is None else ttl))

    def invalidate_by_prefix(self, prefix: str) -> int:
        stale = [k for k in self._entries if k.startswith(prefix)]
        for k in stale:
            del self._entries[k]
        return len(stale)

    def invalidate_user(self, user_id: int) -> int:
        dropped = self.invalidate_by_prefix(self.user_prefix(user_id))
        if dropped:
            logger.debug("Invalidated {} analytics cache entries for user {}", dropped, user_id)
        return dropped

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)
