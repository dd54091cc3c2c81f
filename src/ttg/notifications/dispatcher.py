"""Fire-and-forget gamification events over Redis pub/sub.

Each user has a channel ``{prefix}:{user_id}``; the delivery service
(SSE/WebSocket fan-out, persistence) subscribes there. Publishing never
raises: a failed publish is logged and dropped so that it can never roll
back or block the transaction that produced the event.
"""

from __future__ import annotations

import json
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Literal

from ttg.db.models import AchievementDefinition, ChallengeDefinition

logger = logging.getLogger(__name__)

EventType = Literal["achievement_earned", "level_up", "xp_update", "challenge_joined", "challenge_completed"]


class NotificationDispatcher:
    """Publishes typed, self-contained events for one user."""

    def __init__(self, redis: Any | None, channel_prefix: str = "notifications:user") -> None:
        self.redis = redis
        self.channel_prefix = channel_prefix

    def channel_for(self, user_id: uuid.UUID) -> str:
        return f"{self.channel_prefix}:{user_id}"

    async def dispatch(self, user_id: uuid.UUID, event_type: EventType, data: dict[str, Any]) -> bool:
        """Publish one event. Returns False if it could not be delivered."""
        if self.redis is None:
            logger.debug("No Redis configured, dropping %s for %s", event_type, user_id)
            return False

        payload = {
            "type": event_type,
            "data": {**data, "timestamp": datetime.now(timezone.utc).isoformat()},
        }
        try:
            await self.redis.publish(self.channel_for(user_id), json.dumps(payload, default=str))
        except Exception:
            logger.warning("Failed to publish %s notification for %s", event_type, user_id, exc_info=True)
            return False
        return True

    async def achievement_earned(self, user_id: uuid.UUID, achievement: AchievementDefinition) -> bool:
        return await self.dispatch(user_id, "achievement_earned", {
            "achievement": {
                "id": achievement.id,
                "key": achievement.key,
                "name": achievement.name,
                "description": achievement.description,
                "points": achievement.points,
                "difficulty": achievement.difficulty,
            },
        })

    async def level_up(self, user_id: uuid.UUID, old_level: int, new_level: int) -> bool:
        return await self.dispatch(user_id, "level_up", {"old_level": old_level, "new_level": new_level})

    async def xp_update(self, user_id: uuid.UUID, update: dict[str, Any]) -> bool:
        return await self.dispatch(user_id, "xp_update", update)

    async def challenge_joined(self, user_id: uuid.UUID, challenge: ChallengeDefinition) -> bool:
        return await self.dispatch(user_id, "challenge_joined", {
            "challenge": {
                "id": challenge.id,
                "name": challenge.name,
                "description": challenge.description,
                "end_date": challenge.end_date.isoformat(),
                "reward_points": challenge.reward_points,
            },
        })

    async def challenge_completed(self, user_id: uuid.UUID, challenge: ChallengeDefinition) -> bool:
        return await self.dispatch(user_id, "challenge_completed", {
            "challenge": {
                "id": challenge.id,
                "name": challenge.name,
                "reward_points": challenge.reward_points,
            },
        })
