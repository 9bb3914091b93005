from __future__ import annotations
from datetime import date
from typing import Any, Dict, Iterable, Optional
import httpx
from loguru import logger
from redis.asyncio import Redis

from ..models.habit import HabitLog, HabitRoutine, LogStatus

BASE_XP = 5
STREAK_BONUS_PER_DAY = 0.6
STREAK_BONUS_CAP = 30
LATE_XP_FACTOR = 0.8
STREAK_ACHIEVEMENT_THRESHOLDS = (3, 7, 14, 21, 30, 50, 75, 100)
HIGH_RISK_DEDUPE_SECONDS = 24 * 60 * 60


def completion_xp(xp_on_complete: int, streak: int, late: bool = False) -> int:
    base = float(xp_on_complete or BASE_XP)
    if late:
        base *= LATE_XP_FACTOR
    return round(base + min(streak, STREAK_BONUS_CAP) * STREAK_BONUS_PER_DAY)


def achievement_rarity(streak: int) -> str:
    if streak >= 50:
        return "epic"
    if streak >= 21:
        return "rare"
    return "common"


class CollaboratorClient:
    """
    HTTP client for the gamification and notification services.

    A collaborator whose URL is empty is treated as disabled.
    """

    def __init__(self, gamification_url: str = "", notification_url: str = "", token: str = ""):
        self.gamification_url = gamification_url.rstrip("/")
        self.notification_url = notification_url.rstrip("/")
        self.headers = {"Authorization": f"Bearer {token}"} if token else {}
        self._client = httpx.AsyncClient(timeout=10.0)

    async def _post(self, base_url: str, path: str, payload: Dict[str, Any]) -> bool:
        if not base_url:
            logger.debug("Collaborator for {} disabled; dropping payload", path)
            return False
        resp = await self._client.post(f"{base_url}{path}", json=payload, headers=self.headers)
        resp.raise_for_status()
        return True

    async def award_xp(self, user_id: int, amount: int, reason: str, meta: Dict[str, Any]) -> bool:
        payload = {"user_id": user_id, "amount": amount, "reason": reason, "meta": meta}
        return await self._post(self.gamification_url, "/xp", payload)

    async def unlock_achievement(self, user_id: int, achievement: Dict[str, Any]) -> bool:
        return await self._post(self.gamification_url, "/achievements", {"user_id": user_id, **achievement})

    async def notify(self, user_id: int, notification: Dict[str, Any]) -> bool:
        return await self._post(self.notification_url, "/notifications", {"user_id": user_id, **notification})

    async def aclose(self) -> None:
        await self._client.aclose()


class HabitSideEffects:
    """
    Fire-and-forget reactions to completions and risk snapshots.

    Nothing raised here ever reaches the caller; failures are logged.
    """

    def __init__(self, client: Optional[CollaboratorClient] = None, redis: Optional[Redis] = None):
        self.client = client
        self.redis = redis

    async def on_completion(self, routine: HabitRoutine, log: HabitLog, auto: bool = False) -> None:
        if self.client is None:
            return
        streak = routine.current_streak
        try:
            xp = completion_xp(routine.xp_on_complete, streak, late=log.status == LogStatus.LATE.value)
            if xp > 0:
                meta = {"habit_id": routine.id, "streak": streak}
                if auto:
                    meta["auto"] = True
                await self.client.award_xp(routine.user_id, xp, "habit", meta)

            if streak in STREAK_ACHIEVEMENT_THRESHOLDS:
                await self.client.unlock_achievement(routine.user_id, {
                    "title": f"Habit streak {streak}",
                    "description": f"Completed habits {streak} days in a row",
                    "category": "habit_streak",
                    "series_key": "habit_streak_generic",
                    "tier": streak,
                    "points": 10 + streak,
                    "rarity": achievement_rarity(streak),
                })
        except Exception as e:
            logger.exception("Gamification side effect failed for routine {}: {}", routine.id, e)

    async def _claim_dedupe(self, key: str) -> bool:
        if self.redis is None:
            return True
        # set(nx=True) returns True only for the first claim within the window
        return bool(await self.redis.set(key, "1", nx=True, ex=HIGH_RISK_DEDUPE_SECONDS))

    async def on_high_risk(self, user_id: int, risks: Iterable[Any], today: date) -> int:
        """Notify once per routine per day about routines at high risk."""
        if self.client is None:
            return 0
        sent = 0
        for item in risks:
            if item.risk_level != "high":
                continue
            dedupe_key = f"habit_high_risk:{item.routine_id}:{today.isoformat()}"
            try:
                if not await self._claim_dedupe(dedupe_key):
                    continue
                await self.client.notify(user_id, {
                    "category": "gamification",
                    "type": "habit_high_risk",
                    "title": f"Habit at risk: {item.name}",
                    "body": (
                        f"Success has been dropping lately. Streak: {item.streak}, "
                        f"7-day success {item.success_rate_7:.0%}"
                    ),
                    "importance": "high",
                    "dedupe_key": dedupe_key,
                    "meta": {"habit_id": item.routine_id, "risk_score": item.risk_score},
                })
                sent += 1
            except Exception as e:
                logger.exception("High-risk notification failed for routine {}: {}", item.routine_id, e)
        return sent

    async def aclose(self) -> None:
        if self.client is not None:
            await self.client.aclose()
