import time
from typing import Optional
from fastapi import Depends, Request
from redis.asyncio import Redis
from loguru import logger

from ..config import settings
from ..deps import current_user_id
from ..errors import RateLimitExceededError


class RateLimit:
    """
    Per-user fixed-window request limiter backed by Redis.

    Usable as a route dependency: `Depends(RateLimit("logs", 180, 60))`.
    When Redis is unreachable the request is let through.
    """

    def __init__(self, scope: str, limit: int, window_seconds: int):
        self.scope = scope
        self.limit = limit
        self.window_seconds = window_seconds

    def key_for(self, user_id: int, now: Optional[float] = None) -> str:
        bucket = int((now if now is not None else time.time()) // self.window_seconds)
        return f"ratelimit:{self.scope}:{user_id}:{bucket}"

    async def hit(self, redis: Redis, user_id: int, now: Optional[float] = None) -> int:
        key = self.key_for(user_id, now)
        count = await redis.incr(key)
        if count == 1:
            await redis.expire(key, self.window_seconds)
        return count

    async def check(self, redis: Optional[Redis], user_id: int, now: Optional[float] = None) -> None:
        if redis is None or not settings.RATE_LIMIT_ENABLED:
            return
        try:
            count = await self.hit(redis, user_id, now)
        except Exception as e:
            logger.warning("Rate limiter unavailable for scope {}: {}", self.scope, e)
            return
        if count > self.limit:
            logger.debug("Rate limit hit for user {} on {}", user_id, self.scope)
            raise RateLimitExceededError(self.scope, self.window_seconds)

    async def __call__(self, request: Request, user_id: int = Depends(current_user_id)) -> None:
        await self.check(getattr(request.app.state, "redis", None), user_id)


routines_limit = RateLimit("routines", 120, 60)
logs_limit = RateLimit("logs", 180, 60)
summary_limit = RateLimit("habit-summary", 30, 30)
heatmap_limit = RateLimit("habit-heatmap", 30, 30)
risk_limit = RateLimit("habit-risk", 30, 30)
analytics_limit = RateLimit("analytics", 60, 30)
