"""XP totals, level derivation and the per-user stats cache.

XP is the sum of the immutable xp_ledger. ``user_gamification_stats`` is
only a cache of values derived from the ledgers; ``recompute_stats`` can
rebuild it at any time, so a crash between writes heals on the next pass.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from ttg.db.models import UserAchievement, UserChallenge, UserGamificationStats, XPLedger
from ttg.gamification.level_thresholds import compute_level, level_from_xp

logger = logging.getLogger(__name__)


async def get_or_create_stats(db: AsyncSession, user_id: uuid.UUID) -> UserGamificationStats:
    """Get or lazily create the stats row for a user."""
    result = await db.execute(
        select(UserGamificationStats).where(UserGamificationStats.user_id == user_id)
    )
    stats = result.scalar_one_or_none()
    if stats is None:
        stats = UserGamificationStats(
            user_id=user_id,
            updated_at=datetime.now(timezone.utc),
        )
        db.add(stats)
        await db.flush()
    return stats


async def get_total_xp(db: AsyncSession, user_id: uuid.UUID) -> int:
    result = await db.execute(
        select(func.coalesce(func.sum(XPLedger.amount), 0)).where(XPLedger.user_id == user_id)
    )
    return int(result.scalar() or 0)


async def has_xp_entry(db: AsyncSession, idempotency_key: str) -> bool:
    result = await db.execute(
        select(XPLedger.id).where(XPLedger.idempotency_key == idempotency_key)
    )
    return result.first() is not None


def add_xp_entry(
    db: AsyncSession,
    user_id: uuid.UUID,
    amount: int,
    source: str,
    source_id: str,
    description: str,
    idempotency_key: str,
    now: datetime,
) -> XPLedger:
    """Stage an XP credit. The unique idempotency key rejects a second credit at flush."""
    entry = XPLedger(
        user_id=user_id,
        amount=amount,
        source=source,
        source_id=source_id,
        description=description,
        idempotency_key=idempotency_key,
        created_at=now,
    )
    db.add(entry)
    return entry


async def recompute_stats(
    db: AsyncSession, user_id: uuid.UUID, now: datetime | None = None
) -> UserGamificationStats:
    """Rebuild the cached totals from the ledgers inside the current transaction."""
    now = now or datetime.now(timezone.utc)
    stats = await get_or_create_stats(db, user_id)

    total_xp = await get_total_xp(db, user_id)
    achievements = await db.execute(
        select(func.count(UserAchievement.id), func.max(UserAchievement.earned_at)).where(
            UserAchievement.user_id == user_id,
            UserAchievement.earned_at.isnot(None),
        )
    )
    achievement_count, last_earned = achievements.one()
    challenges = await db.execute(
        select(func.count(UserChallenge.id)).where(
            UserChallenge.user_id == user_id,
            UserChallenge.status == "completed",
        )
    )

    stats.total_points = total_xp
    stats.level = level_from_xp(total_xp)
    stats.achievement_count = int(achievement_count or 0)
    stats.challenge_count = int(challenges.scalar() or 0)
    stats.last_achievement_at = last_earned
    stats.updated_at = now
    await db.flush()
    return stats


async def sync_stats(db: AsyncSession, user_id: uuid.UUID) -> UserGamificationStats:
    """Recompute and commit. Exposed as the admin/user 'sync stats' operation."""
    stats = await recompute_stats(db, user_id)
    await db.commit()
    logger.info("Stats synced for %s: %d XP, level %d", user_id, stats.total_points, stats.level)
    return stats


async def get_user_stats(db: AsyncSession, user_id: uuid.UUID) -> dict:
    """Stats for display, with the level re-derived from the ledger total."""
    stats = await get_or_create_stats(db, user_id)
    total_xp = await get_total_xp(db, user_id)
    level_info = compute_level(total_xp)
    await db.commit()

    return {
        "user_id": user_id,
        "total_points": total_xp,
        "level": level_info["level"],
        "achievement_count": stats.achievement_count,
        "challenge_count": stats.challenge_count,
        "current_streak_days": stats.current_streak_days,
        "longest_streak_days": stats.longest_streak_days,
        "last_achievement_at": stats.last_achievement_at,
        "level_progress": level_info,
    }


def build_xp_update(before_xp: int, after_xp: int) -> dict:
    """Payload for the ``xp_update`` event: before/after XP, level and bounds."""
    before = compute_level(before_xp)
    after = compute_level(after_xp)
    return {
        "old_xp": before_xp,
        "new_xp": after_xp,
        "delta_xp": after_xp - before_xp,
        "old_level": before["level"],
        "new_level": after["level"],
        "current_level_min_xp_before": before["current_level_min_xp"],
        "next_level_min_xp_before": before["next_level_min_xp"],
        "current_level_min_xp_after": after["current_level_min_xp"],
        "next_level_min_xp_after": after["next_level_min_xp"],
    }
