"""Shared FastAPI dependencies.

Authentication happens upstream: the gateway forwards the authenticated
user in ``X-User-Id`` and their role in ``X-User-Role``.
"""

import uuid

from fastapi import Depends, Header, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from ttg.config import get_settings
from ttg.database import get_session as _get_session
from ttg.gamification.achievement_engine import AchievementEngine
from ttg.notifications.dispatcher import NotificationDispatcher
from ttg.privacy.service import SqlPrivacySettingsProvider
from ttg.redis_client import get_optional_redis
from ttg.trades.provider import SqlTradeHistoryProvider

get_db = _get_session


async def get_current_user_id(x_user_id: str | None = Header(default=None)) -> uuid.UUID:
    """The caller's user id, as forwarded by the gateway."""
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Not authenticated")
    try:
        return uuid.UUID(x_user_id)
    except ValueError as exc:
        raise HTTPException(status_code=401, detail="Invalid user id") from exc


async def require_admin(
    user_id: uuid.UUID = Depends(get_current_user_id),
    x_user_role: str | None = Header(default=None),
) -> uuid.UUID:
    if (x_user_role or "").lower() != "admin":
        raise HTTPException(status_code=403, detail="Admin access required")
    return user_id


def get_trade_provider(db: AsyncSession = Depends(get_db)) -> SqlTradeHistoryProvider:
    return SqlTradeHistoryProvider(db)


def get_privacy_provider(db: AsyncSession = Depends(get_db)) -> SqlPrivacySettingsProvider:
    return SqlPrivacySettingsProvider(db)


def get_dispatcher() -> NotificationDispatcher:
    return NotificationDispatcher(get_optional_redis(), get_settings().notification_channel_prefix)


def get_achievement_engine(
    db: AsyncSession = Depends(get_db),
    trades: SqlTradeHistoryProvider = Depends(get_trade_provider),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
) -> AchievementEngine:
    return AchievementEngine(db, trades, dispatcher, max_retries=get_settings().award_max_retries)
