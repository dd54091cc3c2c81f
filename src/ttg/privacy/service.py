"""Read-only access to per-user gamification privacy preferences."""

from __future__ import annotations

import uuid
from collections.abc import Iterable
from typing import Protocol

from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ttg.db.models import GamificationPrivacy

DEFAULT_VISIBLE_METRICS = ["discipline_score", "consistency_score", "achievement_points"]


class PrivacySettings(BaseModel):
    """Visibility flags consulted before any cross-user exposure."""

    show_on_leaderboards: bool = True
    anonymous_only: bool = False
    share_achievements: bool = True
    participate_in_challenges: bool = True
    share_with_peer_group: bool = True
    visible_metrics: list[str] = Field(default_factory=lambda: list(DEFAULT_VISIBLE_METRICS))


class PrivacySettingsProvider(Protocol):
    async def get_settings(self, user_id: uuid.UUID) -> PrivacySettings: ...

    async def get_hidden_user_ids(self, user_ids: Iterable[uuid.UUID] | None = None) -> set[uuid.UUID]:
        """Users who opted out of leaderboards."""
        ...


def _from_row(row: GamificationPrivacy) -> PrivacySettings:
    return PrivacySettings(
        show_on_leaderboards=row.show_on_leaderboards,
        anonymous_only=row.anonymous_only,
        share_achievements=row.share_achievements,
        participate_in_challenges=row.participate_in_challenges,
        share_with_peer_group=row.share_with_peer_group,
        visible_metrics=row.visible_metrics if row.visible_metrics is not None else list(DEFAULT_VISIBLE_METRICS),
    )


class SqlPrivacySettingsProvider:
    """Reads the journal's gamification_privacy table. Missing rows get defaults."""

    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    async def get_settings(self, user_id: uuid.UUID) -> PrivacySettings:
        result = await self.db.execute(
            select(GamificationPrivacy).where(GamificationPrivacy.user_id == user_id)
        )
        row = result.scalar_one_or_none()
        if row is None:
            return PrivacySettings()
        return _from_row(row)

    async def get_hidden_user_ids(self, user_ids: Iterable[uuid.UUID] | None = None) -> set[uuid.UUID]:
        query = select(GamificationPrivacy.user_id).where(
            GamificationPrivacy.show_on_leaderboards.is_(False)
        )
        if user_ids is not None:
            query = query.where(GamificationPrivacy.user_id.in_(list(user_ids)))
        result = await self.db.execute(query)
        return set(result.scalars())
